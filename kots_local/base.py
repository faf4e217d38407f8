"""Library for writing the base layer of a render directory.

The base layer holds the rendered application manifests as-is plus a
`kustomization.yaml` listing the ones that should be applied. It is always
regenerated from scratch, unlike the midstream layer which merges with what a
previous render left behind.

```python
from kots_local.base import Base, BaseFile, WriteOptions

base = Base(files=[BaseFile(path="deployment.yaml", content=b"...")])
await base.write_base(WriteOptions(base_dir=Path("rendered/base"), overwrite=True))
```
"""

from dataclasses import dataclass, field
import logging
import posixpath
from pathlib import Path
from shutil import rmtree
from typing import Any

import aiofiles
import aiofiles.os
import yaml

from .exceptions import AlreadyExistsError, InputException, WriteException
from .manifest import KUSTOMIZATION_FILENAME, Kustomization, write_kustomization

__all__ = [
    "Base",
    "BaseFile",
    "WriteOptions",
    "overlays_dir",
]

_LOGGER = logging.getLogger(__name__)

# Documents with these apiVersion prefixes configure the admin console and are
# never applied to the cluster.
KOTS_API_PREFIXES = (
    "kots.io/",
    "troubleshoot.replicated.com/",
    "troubleshoot.sh/",
)
APPLICATION_API_PREFIX = "app.k8s.io/"
APPLICATION_KIND = "Application"

EXCLUDE_ANNOTATION = "kots.io/exclude"
WHEN_ANNOTATION = "kots.io/when"

OVERLAYS_DIRNAME = "overlays"


def _is_kots_kind(doc: dict[str, Any]) -> bool:
    api_version = str(doc.get("apiVersion", ""))
    if api_version.startswith(KOTS_API_PREFIXES):
        return True
    return (
        api_version.startswith(APPLICATION_API_PREFIX)
        and doc.get("kind") == APPLICATION_KIND
    )


def _is_excluded(doc: dict[str, Any]) -> bool:
    """Return true if the document opts out of the render with an annotation."""
    if not isinstance(metadata := doc.get("metadata"), dict):
        return False
    if not isinstance(annotations := metadata.get("annotations"), dict):
        return False
    if str(annotations.get(EXCLUDE_ANNOTATION, "")).lower() == "true":
        return True
    return str(annotations.get(WHEN_ANNOTATION, "")).lower() == "false"


@dataclass(frozen=True)
class BaseFile:
    """A rendered file destined for the base layer."""

    path: str
    """Path of the file relative to the base directory."""

    content: bytes
    """Raw file content."""

    def _docs(self) -> list[dict[str, Any]]:
        """Return the mapping documents in the file, empty if it is not YAML."""
        try:
            docs = list(yaml.safe_load_all(self.content))
        except yaml.YAMLError:
            return []
        return [doc for doc in docs if isinstance(doc, dict)]

    def should_be_included_in_base_filesystem(self, exclude_kots_kinds: bool) -> bool:
        """Return true if the file is written into the base directory."""
        docs = self._docs()
        if any(_is_excluded(doc) for doc in docs):
            return False
        if exclude_kots_kinds and any(_is_kots_kind(doc) for doc in docs):
            return False
        return True

    def should_be_included_in_base_kustomization(
        self, exclude_kots_kinds: bool
    ) -> bool:
        """Return true if the file is listed as a resource of the base Kustomization."""
        if not self.should_be_included_in_base_filesystem(exclude_kots_kinds):
            return False
        objects = [doc for doc in self._docs() if doc.get("apiVersion") and doc.get("kind")]
        if not objects:
            return False
        return not any(_is_kots_kind(doc) for doc in objects)


@dataclass
class WriteOptions:
    """Options for writing the base layer."""

    base_dir: Path
    """Directory that receives the base layer."""

    overwrite: bool = False
    """Remove an existing base directory instead of failing."""

    exclude_kots_kinds: bool = True
    """Leave kots custom resources out of the base directory."""


def _relative_path(path: str) -> str:
    """Return the normalized path of a file inside the base directory."""
    rel_path = posixpath.normpath(posixpath.join(".", path))
    if posixpath.isabs(rel_path) or rel_path == ".." or rel_path.startswith("../"):
        raise InputException(f"File path {path} is outside of the base directory")
    return rel_path


def overlays_dir(base_dir: Path) -> Path:
    """Return the overlays directory, a sibling of the base directory."""
    return Path(posixpath.normpath(posixpath.join(str(base_dir), "..", OVERLAYS_DIRNAME)))


@dataclass
class Base:
    """The set of files that make up the base layer."""

    files: list[BaseFile] = field(default_factory=list)

    def kustomization_resources(self, exclude_kots_kinds: bool) -> list[str]:
        """Return the resource list of the base Kustomization in file order."""
        return [
            _relative_path(base_file.path)
            for base_file in self.files
            if base_file.should_be_included_in_base_kustomization(exclude_kots_kinds)
        ]

    async def write_base(self, options: WriteOptions) -> Kustomization:
        """Write the files and a fresh Kustomization into the base directory.

        An existing base directory is replaced when `overwrite` is set, otherwise
        this fails before touching anything.
        """
        render_dir = options.base_dir
        for base_file in self.files:
            _relative_path(base_file.path)
        if await aiofiles.os.path.exists(render_dir):
            if not options.overwrite:
                raise AlreadyExistsError(f"directory {render_dir} already exists")
            try:
                rmtree(render_dir)
            except OSError as err:
                raise WriteException(
                    f"failed to remove previous content in base: {err}"
                ) from err

        resources: list[str] = []
        for base_file in self.files:
            write_to_base = base_file.should_be_included_in_base_filesystem(
                options.exclude_kots_kinds
            )
            write_to_kustomization = base_file.should_be_included_in_base_kustomization(
                options.exclude_kots_kinds
            )
            _LOGGER.debug(
                "Base file %s: filesystem=%s kustomization=%s",
                base_file.path,
                write_to_base,
                write_to_kustomization,
            )
            if not write_to_base and not write_to_kustomization:
                continue

            rel_path = _relative_path(base_file.path)
            if write_to_kustomization:
                resources.append(rel_path)
            if write_to_base:
                file_render_path = render_dir / rel_path
                try:
                    await aiofiles.os.makedirs(file_render_path.parent, exist_ok=True)
                    async with aiofiles.open(str(file_render_path), mode="wb") as out:
                        await out.write(base_file.content)
                except OSError as err:
                    raise WriteException(
                        f"failed to write base file {file_render_path}: {err}"
                    ) from err

        kustomization = Kustomization(resources=resources)
        try:
            await aiofiles.os.makedirs(render_dir, exist_ok=True)
        except OSError as err:
            raise WriteException(f"failed to mkdir {render_dir}: {err}") from err
        await write_kustomization(render_dir / KUSTOMIZATION_FILENAME, kustomization)
        _LOGGER.info("Wrote base layer to %s (%d resources)", render_dir, len(resources))
        return kustomization
