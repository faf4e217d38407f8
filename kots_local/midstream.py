"""Library for writing the midstream layer of a render directory.

The midstream layer sits on top of the base layer and carries cross cutting
changes: image rewrites to a private registry, the registry pull secret and a
strategic merge patch adding that secret to every workload that needs it.

Midstream is written on every render while people (or earlier tooling) may have
edited its `kustomization.yaml` in between. A render therefore merges with the
Kustomization it finds on disk: existing entries are kept in place and new
entries are appended, nothing is removed or reordered.
"""

from dataclasses import dataclass, field, replace
import logging
import os
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
import yaml

from .exceptions import WriteException
from .manifest import (
    KUSTOMIZATION_FILENAME,
    PULL_SECRET_NAME,
    Doc,
    Image,
    Kustomization,
    read_kustomization,
    write_kustomization,
)

__all__ = [
    "Midstream",
    "WriteOptions",
    "merge_kustomization",
]

_LOGGER = logging.getLogger(__name__)

SECRET_FILENAME = "secret.yaml"
PATCHES_FILENAME = "pullsecrets.yaml"


@dataclass
class WriteOptions:
    """Options for writing the midstream layer."""

    midstream_dir: Path
    """Directory that receives the midstream layer."""

    base_dir: Path
    """The base layer directory referenced by the midstream Kustomization."""


def _append_new(existing: list[str] | None, new: list[str] | None) -> list[str] | None:
    """Return existing followed by the entries of new it does not contain yet."""
    if existing is None and not new:
        return None
    result = list(existing or [])
    seen = set(result)
    for value in new or ():
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def _append_new_images(
    existing: list[Image] | None, new: list[Image] | None
) -> list[Image] | None:
    """Return existing images followed by new images with an unseen name."""
    if existing is None and not new:
        return None
    result = list(existing or [])
    names = {image.name for image in result}
    for image in new or ():
        if image.name in names:
            _LOGGER.debug("Keeping existing image rule for %s", image.name)
            continue
        names.add(image.name)
        result.append(image)
    return result


def merge_kustomization(
    existing: Kustomization | None, new: Kustomization
) -> Kustomization:
    """Merge a newly computed Kustomization into a previously persisted one.

    Entries of `existing` keep their position, entries of `new` that are not
    present yet are appended. Images are matched by name so an existing rule
    wins over a new rule for the same image. With no existing Kustomization the
    new one is returned with duplicate entries removed.
    """
    if existing is None:
        existing = Kustomization(
            api_version=new.api_version,
            kind=new.kind,
            extra_fields=new.extra_fields,
        )
    return replace(
        existing,
        images=_append_new_images(existing.images, new.images),
        patches_strategic_merge=_append_new(
            existing.patches_strategic_merge, new.patches_strategic_merge
        ),
        resources=_append_new(existing.resources, new.resources),
    )


@dataclass
class Midstream:
    """The midstream layer computed for a single render."""

    kustomization: Kustomization = field(default_factory=Kustomization)
    """Kustomization computed by this render (images, resources, patches)."""

    pull_secret: dict[str, Any] | None = None
    """Registry pull secret written next to the Kustomization, if any."""

    doc_for_patches: list[Doc] = field(default_factory=list)
    """Workloads that need the pull secret added to their pod template."""

    def kustomization_filename(self, options: WriteOptions) -> Path:
        """Return the path of the midstream Kustomization file."""
        return options.midstream_dir / KUSTOMIZATION_FILENAME

    async def write_midstream(self, options: WriteOptions) -> Kustomization:
        """Write the midstream layer and return the persisted Kustomization.

        Files referenced by the Kustomization are written before the
        Kustomization itself.
        """
        existing: Kustomization | None = None
        ks_filename = self.kustomization_filename(options)
        if await aiofiles.os.path.exists(ks_filename):
            existing = await read_kustomization(ks_filename)

        try:
            await aiofiles.os.makedirs(options.midstream_dir, exist_ok=True)
        except OSError as err:
            raise WriteException(f"failed to mkdir {options.midstream_dir}: {err}") from err

        kustomization = self.kustomization
        if secret_filename := await self._write_pull_secret(options):
            kustomization = replace(
                kustomization,
                resources=[*(kustomization.resources or []), secret_filename],
            )
        if patch_filename := await self._write_objects_with_pull_secret(options):
            kustomization = replace(
                kustomization,
                patches_strategic_merge=[
                    *(kustomization.patches_strategic_merge or []),
                    patch_filename,
                ],
            )

        kustomization = merge_kustomization(existing, kustomization)
        relative_base_dir = Path(
            os.path.relpath(options.base_dir, options.midstream_dir)
        ).as_posix()
        kustomization = replace(kustomization, bases=[relative_base_dir])

        await write_kustomization(ks_filename, kustomization)
        _LOGGER.info("Wrote midstream layer to %s", options.midstream_dir)
        return kustomization

    async def _write_pull_secret(self, options: WriteOptions) -> str | None:
        """Write the pull secret file and return its name relative to midstream."""
        if self.pull_secret is None:
            return None

        filename = options.midstream_dir / SECRET_FILENAME
        try:
            content = yaml.dump(self.pull_secret, sort_keys=False)
        except yaml.YAMLError as err:
            raise WriteException(f"failed to marshal pull secret: {err}") from err
        try:
            async with aiofiles.open(str(filename), mode="w") as secret_file:
                await secret_file.write(content)
        except OSError as err:
            raise WriteException(f"failed to write pull secret file: {err}") from err
        return SECRET_FILENAME

    async def _write_objects_with_pull_secret(self, options: WriteOptions) -> str | None:
        """Write one patch document per workload and return the patch file name."""
        if not self.doc_for_patches:
            return None

        filename = options.midstream_dir / PATCHES_FILENAME
        try:
            content = "".join(
                "---\n"
                + yaml.dump(doc.pull_secret_patch(PULL_SECRET_NAME), sort_keys=False)
                for doc in self.doc_for_patches
            )
        except yaml.YAMLError as err:
            raise WriteException(f"failed to marshal object: {err}") from err
        try:
            async with aiofiles.open(str(filename), mode="w") as patch_file:
                await patch_file.write(content)
        except OSError as err:
            raise WriteException(f"failed to write patches: {err}") from err
        _LOGGER.debug(
            "Wrote %d pull secret patches to %s", len(self.doc_for_patches), filename
        )
        return PATCHES_FILENAME
