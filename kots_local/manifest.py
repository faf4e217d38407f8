"""Representation of the documents that make up a rendered application.

This covers two kinds of objects:
  - A narrow view of a kubernetes object (`Doc`) with just enough fields to
    identify it and to inject an image pull secret into its pod template.
  - A kustomize `Kustomization` file, as written into each layer of the
    render directory.

Kustomization files are read and written with these helpers:
```python
from kots_local import manifest

ks = await manifest.read_kustomization(Path("midstream/kustomization.yaml"))
ks = dataclasses.replace(ks, resources=[*(ks.resources or []), "secret.yaml"])
await manifest.write_kustomization(Path("midstream/kustomization.yaml"), ks)
```
"""

from dataclasses import dataclass, field, fields
import logging
from pathlib import Path
from typing import Any, cast

import aiofiles
import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import InvalidFieldValue, MissingField

from .exceptions import KustomizationParseError, WriteException

__all__ = [
    "read_kustomization",
    "write_kustomization",
    "Doc",
    "Kustomization",
    "Image",
]

_LOGGER = logging.getLogger(__name__)


KUSTOMIZE_API_VERSION = "kustomize.config.k8s.io/v1beta1"
KUSTOMIZE_KIND = "Kustomization"
KUSTOMIZATION_FILENAME = "kustomization.yaml"

# Name of the secret referenced by every generated pull secret patch
PULL_SECRET_NAME = "kotsadm-replicated-registry"

# Location of the pod spec for kinds that do not keep it at spec.template.spec
POD_SPEC_PATHS: dict[str, tuple[str, ...]] = {
    "Pod": ("spec",),
    "CronJob": ("spec", "jobTemplate", "spec", "template", "spec"),
}


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    def compact_dict(self) -> dict[str, Any]:
        """Return a compact dictionary representation of the object."""
        return self.to_dict()

    def yaml(self) -> str:
        """Return a YAML string representation of compact_dict."""
        return cast(str, yaml.dump(self.compact_dict(), sort_keys=False))

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass
class Metadata(BaseManifest):
    """Object metadata, restricted to the identifying name."""

    name: str = ""


@dataclass
class PodSpec(BaseManifest):
    """The part of a pod spec that a pull secret patch touches."""

    image_pull_secrets: list[dict[str, str]] | None = field(
        metadata=field_options(alias="imagePullSecrets"), default=None
    )
    """References to secrets used to pull container images."""


@dataclass
class Template(BaseManifest):
    """A pod template."""

    spec: PodSpec = field(default_factory=PodSpec)


@dataclass
class Spec(BaseManifest):
    """Workload spec holding a pod template."""

    template: Template = field(default_factory=Template)


@dataclass
class Doc(BaseManifest):
    """A minimal view of a kubernetes object."""

    api_version: str = field(metadata=field_options(alias="apiVersion"), default="")
    """The apiVersion of the object."""

    kind: str = ""
    """The kind of the object."""

    metadata: Metadata = field(default_factory=Metadata)
    """The identifying metadata of the object."""

    spec: Spec = field(default_factory=Spec)
    """The pod template holder of the object."""

    @classmethod
    def parse_doc(cls, doc: Any) -> "Doc":
        """Parse a Doc from a raw kubernetes object.

        Missing or malformed fields are left empty rather than rejected since
        only the identifying fields are used.
        """
        if not isinstance(doc, dict):
            return cls()
        metadata = doc.get("metadata")
        name = metadata.get("name") if isinstance(metadata, dict) else None
        pull_secrets: list[dict[str, str]] | None = None
        spec = doc.get("spec")
        if (
            isinstance(spec, dict)
            and isinstance(template := spec.get("template"), dict)
            and isinstance(pod_spec := template.get("spec"), dict)
            and isinstance(secrets := pod_spec.get("imagePullSecrets"), list)
        ):
            pull_secrets = [
                {str(k): str(v) for k, v in ref.items()}
                for ref in secrets
                if isinstance(ref, dict)
            ]
        return cls(
            api_version=str(doc.get("apiVersion") or ""),
            kind=str(doc.get("kind") or ""),
            metadata=Metadata(name=str(name or "")),
            spec=Spec(template=Template(spec=PodSpec(image_pull_secrets=pull_secrets))),
        )

    @classmethod
    def parse_yaml(cls, content: str | bytes) -> "Doc":
        """Parse the first document of a YAML string."""
        try:
            doc = next(iter(yaml.safe_load_all(content)), None)
        except yaml.YAMLError as err:
            _LOGGER.debug("Unable to parse document, using empty fields: %s", err)
            return cls()
        return cls.parse_doc(doc)

    def with_pull_secret(self, secret_name: str = PULL_SECRET_NAME) -> "Doc":
        """Return a copy carrying only identity fields and a pull secret reference."""
        return Doc(
            api_version=self.api_version,
            kind=self.kind,
            metadata=Metadata(name=self.metadata.name),
            spec=Spec(
                template=Template(
                    spec=PodSpec(image_pull_secrets=[{"name": secret_name}])
                )
            ),
        )

    def pull_secret_patch(self, secret_name: str = PULL_SECRET_NAME) -> dict[str, Any]:
        """Return a strategic merge patch adding the pull secret to the pod spec.

        Pods and CronJobs keep their pod spec somewhere other than
        spec.template.spec, every other kind uses `with_pull_secret`.
        """
        if (path := POD_SPEC_PATHS.get(self.kind)) is None:
            return self.with_pull_secret(secret_name).compact_dict()
        patch: dict[str, Any] = {"imagePullSecrets": [{"name": secret_name}]}
        for key in reversed(path):
            patch = {key: patch}
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": {"name": self.metadata.name},
            **patch,
        }


@dataclass
class Image(BaseManifest):
    """A kustomize image rewrite rule, keyed by the source image name."""

    name: str
    """The image name as it appears in the source documents (without tag)."""

    new_name: str | None = field(metadata=field_options(alias="newName"), default=None)
    """Replacement image name."""

    new_tag: str | None = field(metadata=field_options(alias="newTag"), default=None)
    """Replacement tag."""

    digest: str | None = None
    """Replacement digest, takes precedence over the tag."""


@dataclass
class Kustomization(BaseManifest):
    """A kustomize Kustomization file.

    Keys that are not modeled here are kept in `extra_fields` so that a file
    read from disk can be written back without losing hand-edited settings.
    """

    api_version: str = field(
        metadata=field_options(alias="apiVersion"), default=KUSTOMIZE_API_VERSION
    )
    """The apiVersion of the Kustomization."""

    kind: str = KUSTOMIZE_KIND
    """The kind of the object."""

    bases: list[str] | None = None
    """Parent directories, relative to the Kustomization."""

    resources: list[str] | None = None
    """Resource files, relative to the Kustomization, in apply order."""

    patches_strategic_merge: list[str] | None = field(
        metadata=field_options(alias="patchesStrategicMerge"), default=None
    )
    """Strategic merge patch files."""

    images: list[Image] | None = None
    """Image rewrite rules."""

    extra_fields: dict[str, Any] | None = field(
        metadata={"serialize": "omit"}, default=None
    )
    """Top level keys of the source document that are not modeled above."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Kustomization":
        """Parse a Kustomization from a raw document."""
        known = {
            f.metadata.get("alias", f.name)
            for f in fields(cls)
            if f.name != "extra_fields"
        }
        extra = {k: v for k, v in doc.items() if k not in known}
        ks = cls.from_dict({k: v for k, v in doc.items() if k in known})
        ks.extra_fields = extra or None
        return ks

    def compact_dict(self) -> dict[str, Any]:
        """Return the document as written to disk, including unmodeled keys."""
        data = self.to_dict()
        data.update(self.extra_fields or {})
        return data


async def read_kustomization(path: Path) -> Kustomization:
    """Return the contents of a Kustomization file."""
    try:
        async with aiofiles.open(str(path)) as ks_file:
            content = await ks_file.read()
    except OSError as err:
        raise KustomizationParseError(
            f"failed to read kustomization {path}: {err}"
        ) from err
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise KustomizationParseError(
            f"failed to parse kustomization {path}: {err}"
        ) from err
    if not isinstance(doc, dict):
        raise KustomizationParseError(
            f"failed to parse kustomization {path}: expected a mapping"
        )
    try:
        return Kustomization.parse_doc(doc)
    except (InvalidFieldValue, MissingField, ValueError, TypeError) as err:
        raise KustomizationParseError(
            f"failed to parse kustomization {path}: {err}"
        ) from err


async def write_kustomization(path: Path, kustomization: Kustomization) -> None:
    """Write the specified Kustomization to disk."""
    try:
        content = kustomization.yaml()
    except yaml.YAMLError as err:
        raise WriteException(f"failed to marshal kustomization: {err}") from err
    try:
        async with aiofiles.open(str(path), mode="w") as ks_file:
            await ks_file.write(content)
    except OSError as err:
        raise WriteException(
            f"failed to write kustomization to file {path}: {err}"
        ) from err
