"""bindery validate command - check bindery.yaml without running anything."""

from __future__ import annotations

import click

from bindery_cli.commands.common import config_option
from bindery_cli.errors import load_config
from bindery_cli.output import config_summary, success


@click.command()
@config_option
def validate(config_path: str) -> None:
    """Validate bindery.yaml configuration.

    Reports validation errors with field paths, or a short summary of the
    target matrix, languages, bundles and registries.

    Examples:

        bindery validate

        bindery validate --config path/to/bindery.yaml
    """
    config = load_config(config_path)

    config_summary(config)
    success("Configuration valid")
