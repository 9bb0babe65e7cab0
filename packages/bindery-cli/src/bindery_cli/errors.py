"""CLI error handling for bindery-cli.

Wraps bindery-core exceptions into user-facing messages with exit codes.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

import click
from pydantic import ValidationError as PydanticValidationError

from bindery_cli.output import error

if TYPE_CHECKING:
    from pydantic_core import ErrorDetails

    from bindery_core import PipelineConfig


# Exit codes
EXIT_SUCCESS = 0
EXIT_USER_ERROR = 1  # Pipeline failure, invalid configuration
EXIT_SYSTEM_ERROR = 2  # Missing config file, permission failure
EXIT_CANCELLED = 130  # Interrupted (128 + SIGINT)


class CLIError(click.ClickException):
    """CLI exception with exit code support.

    Attributes:
        message: User-facing error message.
        exit_code: Exit code for the CLI (default: 1).
    """

    def __init__(self, message: str, exit_code: int = EXIT_USER_ERROR) -> None:
        super().__init__(message)
        self.exit_code = exit_code

    def show(self, file: object = None) -> None:
        """Display the error message using Rich formatting."""
        error(self.format_message())


def format_pydantic_error(err: PydanticValidationError) -> str:
    """Format a Pydantic validation error as one line per field.

    Example:
        >>> format_pydantic_error(err)
        "Validation failed:\\n  - targets: List should have at least 1 item..."
    """
    errors: list[ErrorDetails] = err.errors()
    lines = ["Validation failed:"]
    for e in errors:
        loc = ".".join(str(x) for x in e["loc"]) or "(root)"
        lines.append(f"  - {loc}: {e['msg']}")
    return "\n".join(lines)


def handle_yaml_error(err: Exception, file_path: str) -> NoReturn:
    """Raise a CLIError for a YAML syntax error, with line information."""
    error_msg = str(err)
    mark = getattr(err, "problem_mark", None)
    if mark is not None:
        problem = getattr(err, "problem", None) or "syntax error"
        error_msg = f"YAML syntax error at line {mark.line + 1}, column {mark.column + 1}: {problem}"
    raise CLIError(f"Invalid YAML in {file_path}: {error_msg}")


def handle_validation_error(err: PydanticValidationError, file_path: str) -> NoReturn:
    formatted = format_pydantic_error(err)
    raise CLIError(f"Invalid configuration in {file_path}:\n{formatted}")


def handle_file_not_found(file_path: str) -> NoReturn:
    raise CLIError(
        f"File not found: {file_path}\n\nUse --config to point at your bindery.yaml.",
        exit_code=EXIT_SYSTEM_ERROR,
    )


def load_config(file_path: str) -> PipelineConfig:
    """Load bindery.yaml, converting every failure into a CLIError.

    Raises:
        CLIError: Exit code 2 if the file is missing, 1 if it is invalid.
    """
    import yaml

    from bindery_core import BinderyError, PipelineConfig

    path = Path(file_path)
    if not path.exists():
        handle_file_not_found(file_path)
    try:
        return PipelineConfig.from_yaml(path)
    except FileNotFoundError:
        handle_file_not_found(file_path)
    except yaml.YAMLError as e:
        handle_yaml_error(e, file_path)
    except PydanticValidationError as e:
        handle_validation_error(e, file_path)
    except BinderyError as e:
        raise CLIError(f"Invalid configuration in {file_path}: {e.user_message}") from None
