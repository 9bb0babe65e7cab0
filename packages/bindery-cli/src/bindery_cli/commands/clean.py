"""bindery clean command - remove generated and cached artifacts."""

from __future__ import annotations

import click

from bindery_cli.commands.common import config_option
from bindery_cli.errors import EXIT_SYSTEM_ERROR, CLIError, load_config
from bindery_cli.output import removed_paths


@click.command()
@config_option
def clean(config_path: str) -> None:
    """Remove the workspace, caches and generated bindings.

    Examples:

        bindery clean
    """
    from bindery_core import BinderyError
    from bindery_core import clean as clean_workspace

    config = load_config(config_path)
    try:
        removed = clean_workspace(config)
    except BinderyError as e:
        raise CLIError(e.user_message) from None
    except OSError as e:
        raise CLIError(f"Failed to clean workspace: {e}", exit_code=EXIT_SYSTEM_ERROR) from None

    removed_paths(removed)
