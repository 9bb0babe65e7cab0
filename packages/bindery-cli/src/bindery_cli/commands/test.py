"""bindery test command - build, then run the language test suites."""

from __future__ import annotations

import click

from bindery_cli.commands.common import PipelineOptions, pipeline_options, run_pipeline


@click.command()
@pipeline_options
@click.option(
    "--filter",
    "test_filter",
    default=None,
    help="Named tag filter, e.g. 'offline' to skip network tests",
)
def test(
    config_path: str,
    output_format: str,
    log_level: str,
    log_json: bool,
    test_filter: str | None,
) -> None:
    """Build all bundles and run each language's test suite against them.

    Tests excluded by the filter are reported as skipped.

    Examples:

        bindery test

        bindery test --filter offline
    """
    from bindery_core import Stage

    opts = PipelineOptions(
        config_path=config_path,
        output_format=output_format,
        log_level=log_level,
        log_json=log_json,
    )
    run_pipeline(opts, stop_after=Stage.TEST, test_filter=test_filter)

