"""kots-local render action."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import logging
import pathlib
import sys
from typing import cast

from kots_local import renderer
from kots_local.config import RegistryOptions, RenderOptions

_LOGGER = logging.getLogger(__name__)


class RenderAction:
    """kots-local render action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "render",
                help="Render application manifests into base and midstream layers",
                description="""Evaluates the templates in an application directory and
                    writes a kustomize base layer plus a midstream layer with image
                    rewrites and pull secrets. An existing midstream Kustomization is
                    merged, never replaced.""",
            ),
        )
        args.add_argument(
            "path", type=pathlib.Path, help="Directory with the application manifests"
        )
        args.add_argument(
            "--render-dir",
            type=pathlib.Path,
            required=True,
            help="Directory that receives the base and midstream layers",
        )
        args.add_argument(
            "--overwrite",
            default=False,
            action=BooleanOptionalAction,
            help="Replace an existing base layer",
        )
        args.add_argument(
            "--exclude-kots-kinds",
            default=True,
            action=BooleanOptionalAction,
            help="Leave kots custom resources out of the base layer",
        )
        args.add_argument(
            "--namespace",
            type=str,
            default=None,
            help="Namespace of the generated pull secret",
        )
        args.add_argument(
            "--registry-endpoint",
            type=str,
            default=None,
            help="Private registry that images are rewritten to",
        )
        args.add_argument(
            "--registry-namespace",
            type=str,
            default=None,
            help="Path prefix for images in the private registry",
        )
        args.add_argument(
            "--registry-username",
            type=str,
            default=None,
            help="Username for the private registry pull secret",
        )
        args.add_argument(
            "--registry-password",
            type=str,
            default=None,
            help="Password for the private registry pull secret",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        render_dir: pathlib.Path,
        overwrite: bool,
        exclude_kots_kinds: bool,
        namespace: str | None,
        registry_endpoint: str | None,
        registry_namespace: str | None,
        registry_username: str | None,
        registry_password: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        options = RenderOptions(
            render_dir=render_dir,
            overwrite=overwrite,
            exclude_kots_kinds=exclude_kots_kinds,
            namespace=namespace,
            registry=RegistryOptions(
                endpoint=registry_endpoint,
                namespace=registry_namespace,
                username=registry_username,
                password=registry_password,
            ),
        )
        result = await renderer.render(path, options)
        _LOGGER.debug("Midstream kustomization: %s", result.kustomization)
        print(f"base: {result.base_dir}", file=sys.stdout)
        print(f"midstream: {result.midstream_dir}", file=sys.stdout)
        print(f"overlays: {result.overlays_dir}", file=sys.stdout)
