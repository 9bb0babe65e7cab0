"""Shared pytest fixtures for bindery-core tests.

The pipeline is exercised end to end with stand-in tools from
``tests/fixtures`` run through the current interpreter: a compiler, a
binding generator and a language test runner.
"""

from __future__ import annotations

import copy
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import structlog

from bindery_core import Bundle, BundleKind, BundleManifest, PipelineConfig

FIXTURES = Path(__file__).parent / "fixtures"


def tool(name: str) -> list[str]:
    """Command prefix running a fixture script with this interpreter."""
    return [sys.executable, str(FIXTURES / name)]


@pytest.fixture(autouse=True)
def configure_structlog_for_tests() -> None:
    """Send structlog output to stdout so pytest captures it."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def registry_dir(tmp_path: Path) -> Path:
    return tmp_path / "registry"


@pytest.fixture
def config_data(project_dir: Path, registry_dir: Path) -> dict[str, Any]:
    """A bindery.yaml with three targets, two languages and one registry."""
    return {
        "name": "bdk",
        "version": "1.2.0",
        "library": "bdkffi",
        "abi_version": "29",
        "concurrency": 2,
        "project_dir": str(project_dir),
        "toolchains": {
            "default": "1.84.1",
            "probe_command": [sys.executable, "-c", "print('rustc {version}')"],
            "install_command": [],
            "env": {"FAKE_TOOLCHAIN": "{version}"},
        },
        "build": {
            "command": [*tool("fake_cc.py"), "{architecture}", "{workdir}", "{library_file}"],
            "artifact": "{workdir}/{library_file}",
            "env": {},
            "timeout_seconds": 120,
        },
        "targets": [
            {"platform": "linux", "architecture": "x86_64"},
            {"platform": "macos", "architecture": "aarch64"},
            {"platform": "macos", "architecture": "x86_64"},
        ],
        "bindgen": {
            "generator": {
                "command": [
                    *tool("fake_bindgen.py"),
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
                "platform_tag": "manylinux_2_28_x86_64",
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
                    "command": [*tool("fake_suite.py"), "{test}"],
                    "cases": [
                        {"name": "test_wallet"},
                        {"name": "test_descriptor"},
                        {"name": "test_network_sync", "tags": ["network"]},
                    ],
                },
                {
                    "language": "swift",
                    "command": [*tool("fake_suite.py"), "{test}"],
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
        "retry": {
            "max_attempts": 2,
            "initial_wait_seconds": 0,
            "max_wait_seconds": 0,
            "jitter_seconds": 0,
        },
    }


@pytest.fixture
def make_config(config_data: dict[str, Any]) -> Callable[..., PipelineConfig]:
    """Factory returning a PipelineConfig with top-level keys overridden."""

    def _make(**overrides: Any) -> PipelineConfig:
        data = copy.deepcopy(config_data)
        data.update(overrides)
        return PipelineConfig.model_validate(data).rebased(Path(data["project_dir"]))

    return _make


@pytest.fixture
def config(make_config: Callable[..., PipelineConfig]) -> PipelineConfig:
    return make_config()


@pytest.fixture
def make_bundle(tmp_path: Path) -> Callable[..., Bundle]:
    """Factory for a small on-disk bundle, without running the pipeline."""

    def _make(
        language: str = "python",
        *,
        name: str | None = None,
        version: str = "1.2.0",
        manifest: bool = True,
    ) -> Bundle:
        name = name or f"bdk{language}"
        path = tmp_path / "dist" / language / f"{name}-{version}"
        (path / "native").mkdir(parents=True)
        (path / "native" / "libbdkffi.so").write_bytes(b"\x7fFAKE native library\n")
        bundle_manifest = BundleManifest(
            name=name,
            language=language,
            version=version,
            kind=BundleKind.SINGLE,
            abi_contract="29",
        )
        if manifest:
            (path / "manifest.json").write_text(bundle_manifest.model_dump_json())
        return Bundle(
            name=name,
            package=name,
            language=language,
            version=version,
            kind=BundleKind.SINGLE,
            path=path,
            manifest=bundle_manifest,
        )

    return _make
