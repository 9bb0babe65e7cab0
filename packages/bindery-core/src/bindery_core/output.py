"""Pipeline result output formatters.

Rich tables and JSON for PipelineResult.
"""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from bindery_core.models import JobStatus, PipelineResult, PipelineStatus, StageStatus

_ICONS: dict[str, str] = {
    "succeeded": "✅",
    "failed": "❌",
    "skipped": "⏭️",
    "cancelled": "🛑",
    "pending": "…",
    "running": "⏳",
}

_COLORS: dict[str, str] = {
    "succeeded": "green",
    "failed": "red",
    "skipped": "dim",
    "cancelled": "yellow",
    "pending": "dim",
    "running": "cyan",
}


def _status_icon(status: JobStatus | StageStatus | PipelineStatus) -> str:
    return _ICONS.get(status.value, "❓")


def _status_color(status: JobStatus | StageStatus | PipelineStatus) -> str:
    return _COLORS.get(status.value, "white")


def _stage_cell(status: StageStatus) -> Text:
    return Text(f"{_status_icon(status)} {status.value}", style=_status_color(status))


def format_result_table(result: PipelineResult, console: Console | None = None) -> None:
    """Format a pipeline result as Rich tables.

    Args:
        result: PipelineResult to display.
        console: Optional Rich console (creates one if not provided).
    """
    if console is None:
        console = Console()

    color = _status_color(result.status)
    header = Text()
    header.append("BINDERY PIPELINE REPORT\n\n", style="bold")
    header.append(f"Version: {result.version}\n")
    header.append(f"Status: {_status_icon(result.status)} ", style=color)
    header.append(result.status.value.upper(), style=f"bold {color}")
    succeeded = sum(1 for t in result.targets if t.status == JobStatus.SUCCEEDED)
    header.append(f"\nTargets: {succeeded}/{len(result.targets)} built")
    if result.total_duration_ms > 0:
        header.append(f"\nDuration: {result.total_duration_ms}ms")
    console.print(Panel(header, title="[bold]Pipeline Results[/bold]"))

    targets = Table(show_header=True, header_style="bold", title="Targets")
    targets.add_column("Status", width=3, justify="center")
    targets.add_column("Target", min_width=16)
    targets.add_column("ABI tag", min_width=16)
    targets.add_column("Message", min_width=30)
    targets.add_column("Duration", justify="right", width=10)
    for target in result.targets:
        targets.add_row(
            _status_icon(target.status),
            Text(target.target, style=_status_color(target.status)),
            target.abi_tag or "-",
            Text(target.message or "-", style="dim" if not target.message else ""),
            f"{target.duration_ms}ms" if target.duration_ms > 0 else "-",
        )
    console.print(targets)

    if result.languages:
        languages = Table(show_header=True, header_style="bold", title="Languages")
        languages.add_column("Language", min_width=10)
        for stage in ("Bindgen", "Assemble", "Test", "Publish"):
            languages.add_column(stage)
        languages.add_column("Bundles")
        for lang in result.languages:
            languages.add_row(
                lang.language,
                _stage_cell(lang.bindgen),
                _stage_cell(lang.assemble),
                _stage_cell(lang.test),
                _stage_cell(lang.publish),
                ", ".join(lang.bundles) or "-",
            )
        console.print(languages)

    if result.errors:
        console.print()
        console.print("[bold red]Errors:[/bold red]")
        for error in result.errors:
            subject = escape(f" [{error['subject']}]") if error.get("subject") else ""
            console.print(f"  [red]• {error['stage']}{subject}[/red]: {escape(error['message'])}")


def format_result_json(result: PipelineResult, pretty: bool = True) -> str:
    """Format a pipeline result as JSON.

    Example:
        >>> json.loads(format_result_json(result))["status"]
        'succeeded'
    """
    data = _result_to_dict(result)
    if pretty:
        return json.dumps(data, indent=2, default=str)
    return json.dumps(data, default=str)


def _result_to_dict(result: PipelineResult) -> dict[str, Any]:
    data = result.model_dump(mode="json")
    data["passed"] = result.passed
    return data


def print_result(
    result: PipelineResult,
    output_format: str = "table",
    console: Console | None = None,
) -> None:
    """Print a pipeline result as ``table`` or ``json``."""
    if console is None:
        console = Console()

    if output_format == "json":
        # Raw JSON so the output stays parseable
        json_str = format_result_json(result, pretty=True)
        if console.file is not None:
            console.file.write(json_str + "\n")
        else:
            print(json_str)
    else:
        format_result_table(result, console)
