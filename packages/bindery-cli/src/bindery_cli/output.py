"""Terminal messages printed by the bindery commands.

All output goes through one module-level Rich console. ``configure`` rebuilds
it when ``--no-color`` is given; NO_COLOR in the environment disables colors
as well. Values taken from bindery.yaml or the filesystem are escaped before
printing so that brackets in names are not read as Rich markup.
"""

from __future__ import annotations

import os
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from bindery_core import PipelineConfig, PipelineResult

_MARKS = {
    "success": "[green]✓[/green]",
    "error": "[red]✗[/red]",
    "warning": "[yellow]⚠[/yellow]",
}


def create_console(no_color: bool = False) -> Console:
    if no_color or "NO_COLOR" in os.environ:
        return Console(force_terminal=False, no_color=True)
    return Console()


console = create_console()


def configure(*, no_color: bool) -> None:
    """Replace the module console."""
    global console
    console = create_console(no_color=no_color)


def _marked(kind: str, message: str, **kwargs: Any) -> None:
    console.print(f"{_MARKS[kind]} {message}", **kwargs)


def success(message: str, **kwargs: Any) -> None:
    _marked("success", message, **kwargs)


def error(message: str, **kwargs: Any) -> None:
    _marked("error", message, **kwargs)


def warning(message: str, **kwargs: Any) -> None:
    _marked("warning", message, **kwargs)


def info(message: str, **kwargs: Any) -> None:
    console.print(message, **kwargs)


def config_summary(config: PipelineConfig) -> None:
    """Print the project header and one aligned row per config section.

    Example:
        >>> config_summary(config)
        bdk 1.2.0 (library bdkffi, ABI 29)
          targets:    linux-x86_64, macos-aarch64
          languages:  python, swift
          bundles:    bdkpython-linux-x86_64, BitcoinDevKit
          registries: local
    """
    info(
        f"[bold]{escape(config.name)}[/bold] {config.version} "
        f"(library {escape(config.library)}, ABI {config.abi_version})"
    )
    rows = [
        ("targets", [t.id for t in config.targets]),
        ("languages", list(config.languages)),
        ("bundles", [b.name for b in config.bundles]),
        ("registries", [r.name for r in config.registries]),
    ]
    width = max(len(label) for label, _ in rows) + 1
    for label, values in rows:
        info(f"  {label + ':':<{width}} {escape(', '.join(values)) or '-'}")


def removed_paths(paths: Sequence[Path]) -> None:
    if not paths:
        info("Nothing to clean")
        return
    for path in paths:
        info(f"  removed {escape(str(path))}")
    success(f"Removed {len(paths)} path(s)")


def pipeline_outcome(result: PipelineResult, stage: str) -> None:
    """Print the closing line of a pipeline command."""
    from bindery_core import PipelineStatus

    if result.status == PipelineStatus.SUCCEEDED:
        success(f"Pipeline {stage} stage completed for {result.version}")
    elif result.status == PipelineStatus.CANCELLED:
        error("Pipeline cancelled")
    else:
        error(f"Pipeline failed with {len(result.errors)} error(s)")
