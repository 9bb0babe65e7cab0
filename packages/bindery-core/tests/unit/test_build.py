"""Unit tests for BuildOrchestrator."""

from __future__ import annotations

import json
import os
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from bindery_core.build import ARTIFACT_METADATA, BUILD_LOG, BuildOrchestrator
from bindery_core.checksums import sha256_file
from bindery_core.config import PipelineConfig
from bindery_core.errors import CompileFailure, ConfigurationError, PipelineCancelled
from bindery_core.models import JobStatus
from bindery_core.process import CancellationToken
from bindery_core.toolchain import ToolchainManager


def _orchestrator(config: PipelineConfig, token: CancellationToken | None = None) -> BuildOrchestrator:
    toolchains = ToolchainManager(config.toolchains, config.workspace.toolchain_cache, config.retry, token)
    return BuildOrchestrator(config, toolchains, token)


def _build_env(config_data: dict[str, Any], **env: str) -> dict[str, Any]:
    return {**config_data["build"], "env": env}


class TestExpand:
    def test_one_pending_job_per_target_sorted(self, config: PipelineConfig) -> None:
        jobs = _orchestrator(config).expand(reversed(config.expand_matrix()))
        assert [j.target_id for j in jobs] == ["linux-x86_64", "macos-aarch64", "macos-x86_64"]
        assert all(j.status == JobStatus.PENDING for j in jobs)

    def test_duplicate_target_rejected(self, config: PipelineConfig) -> None:
        spec = config.expand_matrix()[0]
        with pytest.raises(ConfigurationError, match="more than once"):
            _orchestrator(config).expand([spec, spec])


class TestRun:
    def test_all_targets_succeed(self, config: PipelineConfig) -> None:
        jobs = _orchestrator(config).run(config.expand_matrix())

        assert [j.status for j in jobs] == [JobStatus.SUCCEEDED] * 3
        for job in jobs:
            artifact = job.artifact
            assert artifact is not None
            assert artifact.owner == job.target_id
            assert artifact.path == job.target.output_path
            assert artifact.checksum == sha256_file(artifact.path)
            assert artifact.size == artifact.path.stat().st_size
            assert artifact.abi_tag.contract_version == "29"
            assert artifact.abi_tag.matches(job.target)
            assert job.target.architecture in artifact.path.read_text()
            assert job.finished_at is not None
            assert job.is_terminal

    def test_artifact_metadata_written(self, config: PipelineConfig) -> None:
        (job, *_) = _orchestrator(config).run(config.expand_matrix())
        assert job.artifact is not None
        metadata = json.loads((job.artifact.path.parent / ARTIFACT_METADATA).read_text())
        assert metadata["checksum"] == job.artifact.checksum
        assert metadata["abi_tag"]["platform"] == "linux"

    def test_isolated_workdirs_and_logs(self, config: PipelineConfig) -> None:
        orchestrator = _orchestrator(config)
        jobs = orchestrator.run(config.expand_matrix())

        workdirs = {orchestrator.workdir_for(j.target) for j in jobs}
        assert len(workdirs) == 3
        for job in jobs:
            assert job.log_path == orchestrator.workdir_for(job.target) / BUILD_LOG
            assert f"for {job.target.architecture}" in job.log_path.read_text()

    def test_failure_isolated_to_one_target(
        self, make_config: Callable[..., PipelineConfig], config_data: dict[str, Any]
    ) -> None:
        config = make_config(build=_build_env(config_data, FAKE_CC_FAIL="aarch64"))

        jobs = {j.target_id: j for j in _orchestrator(config).run(config.expand_matrix())}

        failed = jobs["macos-aarch64"]
        assert failed.status == JobStatus.FAILED
        assert isinstance(failed.error, CompileFailure)
        assert failed.error.returncode == 101
        assert failed.error.subject == "macos-aarch64"
        assert failed.artifact is None
        assert failed.log_path is not None
        assert "linking failed for aarch64" in failed.log_path.read_text()
        assert jobs["linux-x86_64"].status == JobStatus.SUCCEEDED
        assert jobs["macos-x86_64"].status == JobStatus.SUCCEEDED

    def test_abi_sidecar_overrides_contract(
        self, make_config: Callable[..., PipelineConfig], config_data: dict[str, Any]
    ) -> None:
        config = make_config(build=_build_env(config_data, FAKE_CC_ABI="30"))
        jobs = _orchestrator(config).run(config.expand_matrix())
        assert {j.artifact.abi_tag.contract_version for j in jobs if j.artifact} == {"30"}

    def test_missing_artifact_is_compile_failure(
        self, make_config: Callable[..., PipelineConfig], config_data: dict[str, Any]
    ) -> None:
        build = {**config_data["build"], "artifact": "{workdir}/elsewhere/{library_file}"}
        config = make_config(build=build)

        jobs = _orchestrator(config).run(config.expand_matrix())

        assert all(j.status == JobStatus.FAILED for j in jobs)
        assert "produced no artifact" in jobs[0].error.user_message  # type: ignore[union-attr]

    def test_missing_build_tool(
        self, make_config: Callable[..., PipelineConfig], config_data: dict[str, Any]
    ) -> None:
        build = {**config_data["build"], "command": ["bindery-no-such-compiler", "{triple}"]}
        config = make_config(build=build)

        jobs = _orchestrator(config).run(config.expand_matrix())

        assert all(isinstance(j.error, CompileFailure) for j in jobs)
        assert "not found" in jobs[0].error.user_message  # type: ignore[union-attr]

    def test_unknown_placeholder_fails_job(
        self, make_config: Callable[..., PipelineConfig], config_data: dict[str, Any]
    ) -> None:
        build = {**config_data["build"], "command": ["cc", "{arch}"]}
        config = make_config(build=build)

        jobs = _orchestrator(config).run(config.expand_matrix())

        assert all(j.status == JobStatus.FAILED for j in jobs)
        assert "Unknown placeholder" in jobs[0].error.user_message  # type: ignore[union-attr]

    def test_rebuild_removes_stale_artifact(
        self, make_config: Callable[..., PipelineConfig], config_data: dict[str, Any]
    ) -> None:
        ok = make_config()
        first = {j.target_id: j for j in _orchestrator(ok).run(ok.expand_matrix())}
        stale = first["macos-aarch64"].target.output_path
        assert stale.exists()

        broken = make_config(build=_build_env(config_data, FAKE_CC_FAIL="aarch64"))
        second = {j.target_id: j for j in _orchestrator(broken).run(broken.expand_matrix())}

        assert second["macos-aarch64"].status == JobStatus.FAILED
        assert not stale.exists()
        assert second["linux-x86_64"].target.output_path.exists()


class TestCancellation:
    def test_cancelled_before_start_skips_everything(self, config: PipelineConfig) -> None:
        token = CancellationToken()
        token.cancel()

        jobs = _orchestrator(config, token).run(config.expand_matrix())

        assert [j.status for j in jobs] == [JobStatus.SKIPPED] * 3
        assert not config.workspace.artifacts_dir.exists()

    def test_cancel_mid_build(
        self, make_config: Callable[..., PipelineConfig], config_data: dict[str, Any]
    ) -> None:
        config = make_config(concurrency=1, build=_build_env(config_data, FAKE_CC_SLEEP="30"))
        token = CancellationToken()

        def cancel_once_compiling() -> None:
            deadline = time.monotonic() + 30
            while token.active_processes == 0 and time.monotonic() < deadline:
                time.sleep(0.01)
            token.cancel()

        canceller = threading.Thread(target=cancel_once_compiling)
        canceller.start()
        start = time.monotonic()
        jobs = _orchestrator(config, token).run(config.expand_matrix())
        canceller.join()

        statuses = sorted(j.status.value for j in jobs)
        assert statuses == ["cancelled", "skipped", "skipped"]
        assert time.monotonic() - start < 25
        cancelled = next(j for j in jobs if j.status == JobStatus.CANCELLED)
        assert isinstance(cancelled.error, PipelineCancelled)
        assert all(j.artifact is None for j in jobs)
        assert token.active_processes == 0

    @pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX only")
    def test_cancel_stops_compiler_children(
        self, make_config: Callable[..., PipelineConfig], config_data: dict[str, Any]
    ) -> None:
        build = {**config_data["build"], "command": ["sh", "-c", "sleep 20; true"]}
        config = make_config(concurrency=1, build=build)
        token = CancellationToken()

        def cancel_once_compiling() -> None:
            deadline = time.monotonic() + 10
            while token.active_processes == 0 and time.monotonic() < deadline:
                time.sleep(0.01)
            time.sleep(0.2)
            token.cancel()

        canceller = threading.Thread(target=cancel_once_compiling)
        canceller.start()
        start = time.monotonic()
        jobs = _orchestrator(config, token).run(config.expand_matrix())
        canceller.join()

        assert time.monotonic() - start < 10
        assert JobStatus.CANCELLED in {j.status for j in jobs}
        assert token.active_processes == 0

    def test_wait_returns_after_terminal(self, config: PipelineConfig) -> None:
        jobs = _orchestrator(config).run(config.expand_matrix())
        assert all(j.wait(timeout=0) for j in jobs)


def test_job_terminal_only_once(config: PipelineConfig) -> None:
    (job, *_) = _orchestrator(config).run(config.expand_matrix())
    with pytest.raises(RuntimeError, match="already terminal"):
        job.mark_skipped()


def test_orchestrator_workdir_layout(config: PipelineConfig, project_dir: Path) -> None:
    target = config.expand_matrix()[0]
    assert _orchestrator(config).workdir_for(target) == project_dir / ".bindery" / "jobs" / "linux-x86_64"
