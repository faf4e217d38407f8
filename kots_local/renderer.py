"""Render an application directory into base and midstream layers.

This example renders the manifests in `upstream/` into `rendered/`:
```python
from kots_local import renderer
from kots_local.config import RenderOptions

result = await renderer.render(Path("upstream"), RenderOptions(render_dir=Path("rendered")))
print(f"Midstream resources: {result.kustomization.resources}")
```
"""

from dataclasses import dataclass
import logging
from pathlib import Path

import aiofiles

from . import base, midstream
from .config import RenderOptions
from .exceptions import InputException
from .image import ImageRewriter
from .manifest import Kustomization
from .registry import pull_secret_for_registry
from .template import StaticContext, render_template

__all__ = [
    "render",
    "read_upstream",
    "RenderResult",
]

_LOGGER = logging.getLogger(__name__)

TEMPLATE_SUFFIXES = (".yaml", ".yml")


@dataclass
class RenderResult:
    """Locations and final state of a render pass."""

    base_dir: Path
    midstream_dir: Path
    overlays_dir: Path
    kustomization: Kustomization
    """The midstream Kustomization as persisted."""


async def read_upstream(
    source_dir: Path, ctx: StaticContext | None = None
) -> list[base.BaseFile]:
    """Read the files under the source directory, evaluating YAML templates."""
    if not source_dir.is_dir():
        raise InputException(f"Source path {source_dir} is not a directory")
    if ctx is None:
        ctx = StaticContext()
    files: list[base.BaseFile] = []
    for path in sorted(p for p in source_dir.rglob("*") if p.is_file()):
        rel_path = path.relative_to(source_dir).as_posix()
        async with aiofiles.open(str(path), mode="rb") as upstream_file:
            content = await upstream_file.read()
        if path.suffix in TEMPLATE_SUFFIXES:
            _LOGGER.debug("Evaluating template %s", rel_path)
            try:
                text = content.decode()
            except UnicodeDecodeError as err:
                raise InputException(f"File {rel_path} is not valid UTF-8") from err
            content = render_template(text, ctx).encode()
        files.append(base.BaseFile(path=rel_path, content=content))
    return files


def build_midstream(
    base_files: list[base.BaseFile], options: RenderOptions
) -> midstream.Midstream:
    """Compute the midstream layer for the files of the base Kustomization."""
    rewriter = ImageRewriter(options.registry)
    for base_file in base_files:
        if base_file.should_be_included_in_base_kustomization(
            options.exclude_kots_kinds
        ):
            rewriter.visit_content(base_file.path, base_file.content)
    pull_secret = pull_secret_for_registry(options.registry, options.namespace)
    return midstream.Midstream(
        kustomization=Kustomization(images=rewriter.images or None),
        pull_secret=pull_secret,
        doc_for_patches=rewriter.docs if pull_secret is not None else [],
    )


async def render(
    source_dir: Path, options: RenderOptions, ctx: StaticContext | None = None
) -> RenderResult:
    """Render the source directory into the render directory."""
    files = await read_upstream(source_dir, ctx)
    _LOGGER.debug("Read %d files from %s", len(files), source_dir)

    await base.Base(files=files).write_base(
        base.WriteOptions(
            base_dir=options.base_dir,
            overwrite=options.overwrite,
            exclude_kots_kinds=options.exclude_kots_kinds,
        )
    )
    kustomization = await build_midstream(files, options).write_midstream(
        midstream.WriteOptions(
            midstream_dir=options.midstream_dir,
            base_dir=options.base_dir,
        )
    )
    return RenderResult(
        base_dir=options.base_dir,
        midstream_dir=options.midstream_dir,
        overlays_dir=base.overlays_dir(options.base_dir),
        kustomization=kustomization,
    )
