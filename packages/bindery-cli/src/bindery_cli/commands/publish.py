"""bindery publish command - run the full pipeline and upload bundles."""

from __future__ import annotations

import click

from bindery_cli.commands.common import PipelineOptions, pipeline_options, run_pipeline


@click.command()
@pipeline_options
@click.option(
    "--filter",
    "test_filter",
    default=None,
    help="Named tag filter applied to the test stage",
)
def publish(
    config_path: str,
    output_format: str,
    log_level: str,
    log_json: bool,
    test_filter: str | None,
) -> None:
    """Build, test and publish every bundle.

    Nothing is uploaded unless its tests pass. With the default
    `all_green` policy a single failure anywhere blocks every upload.
    Registry credentials are read from the environment variables named
    in bindery.yaml.

    Examples:

        bindery publish

        bindery publish --filter offline --format json
    """
    from bindery_core import Stage

    opts = PipelineOptions(
        config_path=config_path,
        output_format=output_format,
        log_level=log_level,
        log_json=log_json,
    )
    run_pipeline(opts, stop_after=Stage.PUBLISH, test_filter=test_filter)
