"""Options and helpers shared by the pipeline commands."""

from __future__ import annotations

import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, NoReturn, TypeVar

import click

from bindery_cli import output
from bindery_cli.errors import EXIT_CANCELLED, EXIT_SUCCESS, EXIT_USER_ERROR, CLIError, load_config

if TYPE_CHECKING:
    from bindery_core import CancellationToken, Stage

F = TypeVar("F", bound=Callable[..., Any])

DEFAULT_CONFIG_PATH = "./bindery.yaml"


@dataclass
class PipelineOptions:
    """Grouped options of the pipeline commands."""

    config_path: str
    output_format: str
    log_level: str
    log_json: bool


def config_option(func: F) -> F:
    return click.option(
        "-c",
        "--config",
        "config_path",
        type=click.Path(exists=False),
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to bindery.yaml [default: {DEFAULT_CONFIG_PATH}]",
    )(func)


def pipeline_options(func: F) -> F:
    """Attach --config, --format, --log-level and --log-json."""
    func = click.option(
        "--log-json",
        is_flag=True,
        default=False,
        help="Emit logs as JSON lines",
    )(func)
    func = click.option(
        "--log-level",
        type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
        default="WARNING",
        help="Log level [default: WARNING]",
    )(func)
    func = click.option(
        "--format",
        "output_format",
        type=click.Choice(["table", "json"]),
        default="table",
        help="Output format [default: table]",
    )(func)
    return config_option(func)


@contextmanager
def cancel_on_interrupt(token: CancellationToken) -> Iterator[None]:
    """Turn the first Ctrl-C into a pipeline cancellation.

    A second Ctrl-C falls back to the previous handler.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = signal.getsignal(signal.SIGINT)

    def handler(signum: int, frame: object) -> None:
        output.warning("Interrupted, cancelling in-flight jobs...")
        signal.signal(signal.SIGINT, previous)
        threading.Thread(target=token.cancel, name="bindery-cancel", daemon=True).start()

    signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def run_pipeline(
    opts: PipelineOptions,
    stop_after: Stage,
    test_filter: str | None = None,
) -> NoReturn:
    """Run the pipeline up to ``stop_after``, print the result and exit.

    Raises:
        SystemExit: 0 on success, 1 on failure, 130 when cancelled.
        CLIError: If the configuration cannot be loaded.
    """
    from bindery_core import BinderyError, CancellationToken, Pipeline, PipelineStatus
    from bindery_core import configure_logging
    from bindery_core.output import print_result

    configure_logging(log_level=opts.log_level, json_format=opts.log_json)
    config = load_config(opts.config_path)

    token = CancellationToken()
    try:
        with Pipeline(config, token) as pipeline, cancel_on_interrupt(token):
            result = pipeline.run(stop_after=stop_after, test_filter=test_filter)
    except BinderyError as e:
        raise CLIError(e.user_message) from None

    print_result(result, output_format=opts.output_format, console=output.console)

    if opts.output_format == "table":
        output.pipeline_outcome(result, stop_after.value)
    if result.status == PipelineStatus.SUCCEEDED:
        raise SystemExit(EXIT_SUCCESS)
    if result.status == PipelineStatus.CANCELLED:
        raise SystemExit(EXIT_CANCELLED)
    raise SystemExit(EXIT_USER_ERROR)
