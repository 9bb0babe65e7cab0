"""``bindery`` command group.

Each subcommand lives in ``bindery_cli.commands.<name>`` as a click command
of the same name and is imported the first time it is resolved, so that
``bindery --help`` does not import the engine.
"""

from __future__ import annotations

import importlib
from collections.abc import Sequence
from typing import Any

import click
import rich_click as rclick

from bindery_cli import __version__, output

rclick.rich_click.TEXT_MARKUP = "markdown"
rclick.rich_click.SHOW_ARGUMENTS = True
rclick.rich_click.GROUP_ARGUMENTS_OPTIONS = True

# Pipeline order; also the order shown in the group docstring
COMMAND_NAMES = ("validate", "build", "test", "publish", "clean")


class LazyGroup(rclick.RichGroup):
    """Rich click group resolving subcommands by module name.

    Args:
        command_names: Subcommands available without importing them.
        command_package: Package holding one module per subcommand.
    """

    def __init__(
        self,
        *args: Any,
        command_names: Sequence[str] = (),
        command_package: str = "bindery_cli.commands",
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.command_names = tuple(command_names)
        self.command_package = command_package

    def list_commands(self, ctx: click.Context) -> list[str]:
        return sorted({*super().list_commands(ctx), *self.command_names})

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        cmd = super().get_command(ctx, cmd_name)  # type: ignore[arg-type]
        if cmd is not None or cmd_name not in self.command_names:
            return cmd

        module = importlib.import_module(f"{self.command_package}.{cmd_name}")
        cmd = getattr(module, cmd_name)
        # Later lookups hit the regular command table
        self.add_command(cmd, cmd_name)
        return cmd  # type: ignore[no-any-return]


def _no_color(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    if value:
        output.configure(no_color=True)


@click.command(cls=LazyGroup, command_names=COMMAND_NAMES)
@click.version_option(version=__version__, prog_name="bindery")
@click.option(
    "--no-color",
    is_flag=True,
    default=False,
    help="Disable colored output.",
    is_eager=True,
    expose_value=False,
    callback=_no_color,
)
def cli() -> None:
    """Bindery - build, bind, package and publish a native library.

    Cross-compiles a native core library for a target matrix, generates
    language bindings, assembles per-platform bundles, runs each language's
    test suite and publishes the result.

    **Commands:**

    - `bindery validate` - Check bindery.yaml
    - `bindery build` - Compile targets, generate bindings, assemble bundles
    - `bindery test --filter offline` - Build, then run the test suites
    - `bindery publish` - Full pipeline including registry upload
    - `bindery clean` - Remove all generated and cached artifacts
    """


if __name__ == "__main__":
    cli()
