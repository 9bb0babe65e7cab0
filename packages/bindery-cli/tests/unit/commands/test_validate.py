"""Tests for the bindery validate command."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from click.testing import CliRunner

from bindery_cli.commands.validate import validate


def _flat(text: str) -> str:
    """Collapse Rich line wrapping."""
    return " ".join(text.split())


class TestValidateCommand:
    def test_valid_file(self, cli_runner: CliRunner, config_file: Path) -> None:
        result = cli_runner.invoke(validate, ["--config", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration valid" in result.output
        assert "linux-x86_64, macos-aarch64, macos-x86_64" in result.output
        assert "python, swift" in result.output
        assert "local" in result.output

    def test_invalid_file(self, cli_runner: CliRunner, write_config: Callable[..., Path]) -> None:
        result = cli_runner.invoke(validate, ["-c", str(write_config(concurrency=0))])

        assert result.exit_code == 1
        assert "concurrency" in result.output

    def test_missing_file(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        result = cli_runner.invoke(validate, ["--config", str(tmp_path / "nope.yaml")])

        assert result.exit_code == 2
        assert "not found" in _flat(result.output).lower()

    def test_default_path(self, isolated_runner: CliRunner) -> None:
        result = isolated_runner.invoke(validate)

        assert result.exit_code == 2
        assert "bindery.yaml" in result.output

    def test_yaml_syntax_error(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        bad = tmp_path / "bindery.yaml"
        bad.write_text("name: bdk\n  version: 1.2.0\n")

        result = cli_runner.invoke(validate, ["--config", str(bad)])

        assert result.exit_code == 1
        assert "YAML syntax error at line 2" in _flat(result.output)
