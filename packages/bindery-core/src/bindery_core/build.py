"""Parallel cross-compilation of the target matrix.

BuildOrchestrator runs one isolated compilation job per TargetSpec:

- each job gets its own working directory ``<workspace>/jobs/<target-id>``
  and its own cache namespace through the build environment, so concurrent
  jobs never share mutable build state;
- jobs run on a thread pool bounded by ``concurrency``;
- one job's failure never aborts its siblings;
- on cancellation, unstarted jobs are marked skipped and in-flight build
  processes are terminated.
"""

from __future__ import annotations

import json
import os
import shutil
import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any

import structlog

from bindery_core.checksums import sha256_file
from bindery_core.config import PipelineConfig
from bindery_core.errors import (
    BinderyError,
    CompileFailure,
    ConfigurationError,
    PipelineCancelled,
)
from bindery_core.models import AbiTag, Artifact, BuildJob, JobStatus, TargetSpec
from bindery_core.process import CancellationToken, render, render_command, render_env, run_command
from bindery_core.toolchain import ToolchainHandle, ToolchainManager

logger = structlog.get_logger(__name__)

BUILD_LOG = "build.log"
ABI_SIDECAR_SUFFIX = ".abi"
ARTIFACT_METADATA = "artifact.json"

# Lines of build output kept in error details
LOG_TAIL_CHARS = 4000


class BuildOrchestrator:
    """Compile every target of a matrix.

    Attributes:
        config: Pipeline configuration.
        toolchains: Toolchain manager used to pin each job's compiler.

    Example:
        >>> orchestrator = BuildOrchestrator(config, ToolchainManager(...))
        >>> jobs = orchestrator.run(config.expand_matrix())
        >>> [job.status.value for job in jobs]
        ['succeeded', 'failed']
    """

    def __init__(
        self,
        config: PipelineConfig,
        toolchains: ToolchainManager,
        token: CancellationToken | None = None,
    ) -> None:
        self.config = config
        self.toolchains = toolchains
        self.token = token or CancellationToken()
        self._log = logger.bind(component="build_orchestrator")

    def expand(self, matrix: Iterable[TargetSpec]) -> list[BuildJob]:
        """Create one PENDING BuildJob per TargetSpec.

        Raises:
            ConfigurationError: If two specs share a target id.
        """
        jobs: dict[str, BuildJob] = {}
        for target in matrix:
            if target.id in jobs:
                raise ConfigurationError(f"Target {target.id} is declared more than once")
            jobs[target.id] = BuildJob(target=target)
        return [jobs[key] for key in sorted(jobs)]

    def run(self, matrix: Iterable[TargetSpec]) -> list[BuildJob]:
        """Build every target and return the terminal jobs, sorted by target id."""
        return self.run_jobs(self.expand(matrix))

    def run_jobs(self, jobs: list[BuildJob]) -> list[BuildJob]:
        """Run already-expanded jobs to a terminal state."""
        start = time.monotonic()
        self._log.info("build_started", targets=len(jobs), concurrency=self.config.concurrency)

        with ThreadPoolExecutor(
            max_workers=self.config.concurrency,
            thread_name_prefix="bindery-build",
        ) as pool:
            futures = [pool.submit(self._run_job, job) for job in jobs]
            for future in as_completed(futures):
                future.result()

        self._log.info(
            "build_completed",
            duration_ms=int((time.monotonic() - start) * 1000),
            succeeded=sum(1 for j in jobs if j.status == JobStatus.SUCCEEDED),
            failed=sum(1 for j in jobs if j.status == JobStatus.FAILED),
            skipped=sum(1 for j in jobs if j.status == JobStatus.SKIPPED),
            cancelled=sum(1 for j in jobs if j.status == JobStatus.CANCELLED),
        )
        return jobs

    def workdir_for(self, target: TargetSpec) -> Path:
        return self.config.workspace.jobs_dir / target.id

    def _run_job(self, job: BuildJob) -> None:
        target = job.target
        log = self._log.bind(target=target.id, toolchain=target.toolchain_version)

        if self.token.cancelled:
            job.mark_skipped()
            log.info("build_job_skipped", reason="cancelled")
            return

        job.mark_running()
        log.info("build_job_started")

        try:
            workdir = self._prepare_workdir(target)
            job.log_path = workdir / BUILD_LOG
            handle = self.toolchains.resolve(target)
            artifact = self._compile(target, handle, workdir, job.log_path)
        except PipelineCancelled as e:
            job.mark_cancelled(e)
            log.warning("build_job_cancelled")
        except BinderyError as e:
            job.mark_failed(e)
            log.error("build_job_failed", error=e.user_message, log_path=str(job.log_path))
        except Exception as e:
            job.mark_failed(
                CompileFailure(
                    target.id,
                    reason=f"unexpected {type(e).__name__}",
                    internal_details=str(e),
                )
            )
            log.error("build_job_error", error=str(e), error_type=type(e).__name__)
        else:
            job.mark_succeeded(artifact)
            log.info(
                "build_job_succeeded",
                artifact=str(artifact.path),
                size=artifact.size,
                abi_tag=str(artifact.abi_tag),
                duration_ms=job.duration_ms,
            )

    def _prepare_workdir(self, target: TargetSpec) -> Path:
        workdir = self.workdir_for(target)
        if workdir.exists():
            shutil.rmtree(workdir)
        workdir.mkdir(parents=True)

        # Never leave a previous run's artifact in place for a target being rebuilt
        if target.output_path.parent.exists():
            shutil.rmtree(target.output_path.parent)
        return workdir

    def _template_values(self, target: TargetSpec, handle: ToolchainHandle, workdir: Path) -> dict[str, Any]:
        return {
            "platform": target.platform,
            "architecture": target.architecture,
            "triple": target.triple or "",
            "workdir": workdir,
            "toolchain": handle.version,
            "library": self.config.library,
            "library_file": target.library_file,
            "project_dir": self.config.project_dir,
        }

    def _compile(
        self,
        target: TargetSpec,
        handle: ToolchainHandle,
        workdir: Path,
        log_path: Path,
    ) -> Artifact:
        values = self._template_values(target, handle, workdir)
        command = render_command(self.config.build.command, values)
        env = {**handle.env, **render_env(self.config.build.env, values)}

        try:
            result = run_command(
                command,
                cwd=self.config.project_dir,
                env=env,
                log_path=log_path,
                token=self.token,
                timeout_seconds=self.config.build.timeout_seconds,
            )
        except FileNotFoundError:
            raise CompileFailure(
                target.id,
                reason=f"build tool '{command[0]}' not found",
                log_path=str(log_path),
            ) from None

        if result.cancelled:
            raise PipelineCancelled(stage="build", subject=target.id)
        if result.returncode != 0:
            raise CompileFailure(
                target.id,
                reason=f"build exited with status {result.returncode}",
                returncode=result.returncode,
                log_path=str(log_path),
                internal_details=result.output[-LOG_TAIL_CHARS:],
            )

        built = Path(render(self.config.build.artifact, values))
        if not built.is_absolute():
            built = self.config.project_dir / built
        if not built.is_file() or built.stat().st_size == 0:
            raise CompileFailure(
                target.id,
                reason=f"build produced no artifact at {built}",
                returncode=result.returncode,
                log_path=str(log_path),
            )

        abi_tag = AbiTag(
            contract_version=self._read_contract_version(built),
            platform=target.platform,
            architecture=target.architecture,
        )
        return self._store(target, built, abi_tag)

    def _read_contract_version(self, built: Path) -> str:
        sidecar = built.with_name(built.name + ABI_SIDECAR_SUFFIX)
        if sidecar.is_file():
            value = sidecar.read_text().strip()
            if value:
                return value
        return self.config.abi_version

    def _store(self, target: TargetSpec, built: Path, abi_tag: AbiTag) -> Artifact:
        output = target.output_path
        output.parent.mkdir(parents=True, exist_ok=True)
        tmp = output.with_name(f".{output.name}.tmp")
        shutil.copy2(built, tmp)
        os.replace(tmp, output)

        artifact = Artifact(
            owner=target.id,
            path=output,
            size=output.stat().st_size,
            checksum=sha256_file(output),
            abi_tag=abi_tag,
        )
        (output.parent / ARTIFACT_METADATA).write_text(
            json.dumps(json.loads(artifact.model_dump_json()), indent=2, sort_keys=True)
        )
        return artifact
