"""Helper functions for working with container images.

When a private registry is configured every image referenced by the
application is rewritten to that registry with a kustomize image rule, and the
workloads using those images get the registry pull secret.
"""

import logging
import posixpath
from typing import Any

import yaml

from .config import RegistryOptions
from .exceptions import InputException
from .manifest import Doc, Image

_LOGGER = logging.getLogger(__name__)


# Object types that may have container images.
KINDS = [
    "Pod",
    "Deployment",
    "StatefulSet",
    "ReplicaSet",
    "DaemonSet",
    "CronJob",
    "Job",
    "ReplicationController",
]

IMAGE_KEY = "image"


def extract_images(doc: dict[str, Any]) -> list[str]:
    """Extract the images from a Kubernetes object in document order."""
    images: list[str] = []
    for key, value in doc.items():
        if key == IMAGE_KEY:
            if not isinstance(value, str):
                raise ValueError(
                    f"Expected string for image key '{IMAGE_KEY}', got type {type(value).__name__}: {value}"
                )
            if value not in images:
                images.append(value)
        elif isinstance(value, dict):
            images.extend(i for i in extract_images(value) if i not in images)
        elif isinstance(value, list):
            for item in value:
                if isinstance(item, dict):
                    images.extend(i for i in extract_images(item) if i not in images)
    return images


def parse_image(ref: str) -> tuple[str, str | None, str | None]:
    """Split an image reference into name, tag and digest."""
    name, digest = ref, None
    if "@" in ref:
        name, digest = ref.split("@", 1)
    tag = None
    last_slash = name.rfind("/")
    if (colon := name.rfind(":")) > last_slash:
        name, tag = name[:colon], name[colon + 1 :]
    return name, tag, digest


def rewrite_image(ref: str, registry: RegistryOptions) -> Image:
    """Return a kustomize image rule pointing the image at the registry.

    The rule only replaces the name. Kustomize applies it to every reference
    with that name and each reference keeps its own tag or digest.
    """
    name, _, _ = parse_image(ref)
    basename = posixpath.basename(name)
    new_name = "/".join(
        part for part in (registry.endpoint, registry.namespace, basename) if part
    )
    return Image(name=name, new_name=new_name)


class ImageRewriter:
    """Helper that visits documents and collects image rewrite rules.

    This tracks the rules in discovery order, one per source image name, plus the
    workloads that reference a rewritten image.
    """

    def __init__(self, registry: RegistryOptions) -> None:
        """Initialize ImageRewriter."""
        self._registry = registry
        self.images: list[Image] = []
        self.docs: list[Doc] = []

    def visit(self, name: str, doc: dict[str, Any]) -> None:
        """Record the images used by a document."""
        if not self._registry.is_configured or doc.get("kind") not in KINDS:
            return
        try:
            refs = extract_images(doc)
        except ValueError as err:
            raise InputException(
                f"Error extracting images from document '{name}' of kind '{doc.get('kind')}': {err}"
            ) from err
        if not refs:
            return
        known = {image.name for image in self.images}
        for ref in refs:
            image = rewrite_image(ref, self._registry)
            if image.name not in known:
                known.add(image.name)
                self.images.append(image)
        self.docs.append(Doc.parse_doc(doc))

    def visit_content(self, name: str, content: bytes) -> None:
        """Record the images used by every document in a file."""
        try:
            docs = list(yaml.safe_load_all(content))
        except yaml.YAMLError as err:
            _LOGGER.warning("Skipping image discovery for unparsable file %s: %s", name, err)
            return
        for doc in docs:
            if isinstance(doc, dict):
                self.visit(name, doc)
