"""Shared test fixtures for bindery-cli tests.

Provides CliRunner fixtures and a bindery.yaml writer wired to the
stand-in compiler, binding generator and suite runner of bindery-core's
test fixtures.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import structlog
import yaml
from click.testing import CliRunner

BINDERY_YAML_FILENAME = "bindery.yaml"
CORE_FIXTURES = Path(__file__).parents[2] / "bindery-core" / "tests" / "fixtures"


def _tool(name: str) -> list[str]:
    return [sys.executable, str(CORE_FIXTURES / name)]


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    """Undo the logging setup performed by pipeline commands."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def isolated_runner(cli_runner: CliRunner) -> Iterator[CliRunner]:
    """CliRunner inside a temporary working directory."""
    with cli_runner.isolated_filesystem():
        yield cli_runner


@pytest.fixture
def registry_dir(tmp_path: Path) -> Path:
    return tmp_path / "registry"


@pytest.fixture
def bindery_config(registry_dir: Path) -> dict[str, Any]:
    """Contents of a valid bindery.yaml with two languages."""
    return {
        "name": "bdk",
        "version": "1.2.0",
        "library": "bdkffi",
        "abi_version": "29",
        "concurrency": 2,
        "toolchains": {
            "default": "1.84.1",
            "probe_command": [sys.executable, "-c", "print('rustc {version}')"],
            "install_command": [],
        },
        "build": {
            "command": [*_tool("fake_cc.py"), "{architecture}", "{workdir}", "{library_file}"],
            "artifact": "{workdir}/{library_file}",
        },
        "targets": [
            {"platform": "linux", "architecture": "x86_64"},
            {"platform": "macos", "architecture": "aarch64"},
            {"platform": "macos", "architecture": "x86_64"},
        ],
        "bindgen": {
            "generator": {
                "command": [
                    *_tool("fake_bindgen.py"),
                    "--library",
                    "{library}",
                    "--language",
                    "{language}",
                    "--out-dir",
                    "{out_dir}",
                ],
                "contract_version": "29",
            },
            "specs": [{"language": "python"}, {"language": "swift"}],
        },
        "bundles": [
            {
                "name": "bdkpython-linux-x86_64",
                "package": "bdkpython",
                "language": "python",
                "kind": "single",
                "targets": ["linux-x86_64"],
            },
            {
                "name": "BitcoinDevKit",
                "language": "swift",
                "kind": "slice",
                "targets": ["macos-aarch64", "macos-x86_64"],
            },
        ],
        "tests": {
            "suites": [
                {
                    "language": "python",
                    "command": [*_tool("fake_suite.py"), "{test}"],
                    "cases": [
                        {"name": "test_wallet"},
                        {"name": "test_network_sync", "tags": ["network"]},
                    ],
                },
                {
                    "language": "swift",
                    "command": [*_tool("fake_suite.py"), "{test}"],
                    "cases": [{"name": "testOfflineWallet"}],
                },
            ]
        },
        "registries": [
            {
                "name": "local",
                "type": "directory",
                "endpoint": str(registry_dir),
                "languages": ["python", "swift"],
            }
        ],
        "retry": {"max_attempts": 1, "initial_wait_seconds": 0, "max_wait_seconds": 0},
    }


@pytest.fixture
def write_config(tmp_path: Path, bindery_config: dict[str, Any]) -> Callable[..., Path]:
    """Factory writing bindery.yaml with top-level keys overridden."""

    def _write(**overrides: Any) -> Path:
        project = tmp_path / "project"
        project.mkdir(exist_ok=True)
        path = project / BINDERY_YAML_FILENAME
        path.write_text(yaml.safe_dump({**bindery_config, **overrides}, sort_keys=False))
        return path

    return _write


@pytest.fixture
def config_file(write_config: Callable[..., Path]) -> Path:
    return write_config()
