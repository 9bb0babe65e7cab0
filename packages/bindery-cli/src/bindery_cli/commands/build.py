"""bindery build command - compile, generate bindings and assemble bundles."""

from __future__ import annotations

import click

from bindery_cli.commands.common import PipelineOptions, pipeline_options, run_pipeline


@click.command()
@pipeline_options
def build(config_path: str, output_format: str, log_level: str, log_json: bool) -> None:
    """Build every target, generate bindings and assemble bundles.

    Stops before the test and publish stages. Bundles land under
    `<workspace>/dist/<language>/`.

    Examples:

        bindery build

        bindery build --config path/to/bindery.yaml --format json
    """
    from bindery_core import Stage

    opts = PipelineOptions(
        config_path=config_path,
        output_format=output_format,
        log_level=log_level,
        log_json=log_json,
    )
    run_pipeline(opts, stop_after=Stage.ASSEMBLE)
