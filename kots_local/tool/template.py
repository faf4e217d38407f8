"""kots-local template action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import cast

from kots_local.exceptions import InputException
from kots_local.template import render_template

_LOGGER = logging.getLogger(__name__)


class TemplateAction:
    """kots-local template action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "template",
                help="Evaluate the template expressions in a single file",
            ),
        )
        args.add_argument("path", type=pathlib.Path, help="File to evaluate")
        args.add_argument(
            "--output-file",
            type=str,
            default="/dev/stdout",
            help="Output file for the results of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        output_file: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        try:
            content = path.read_text()
        except OSError as err:
            raise InputException(f"Unable to read {path}: {err}") from err
        with open(output_file, "w") as file:
            print(render_template(content), end="", file=file)
