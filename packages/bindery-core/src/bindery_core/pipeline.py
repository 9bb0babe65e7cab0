"""Pipeline orchestration.

Pipeline wires the stages together and owns the run:

    toolchain -> build -> bindgen -> assemble -> test -> publish

Every stage receives the same PipelineConfig and CancellationToken. Failures
are recorded per target and per language; one branch failing never hides
the status of the others. Publishing is gated by ``publish_policy``.
"""

from __future__ import annotations

import shutil
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

import structlog

from bindery_core.assembly import ArtifactAssembler
from bindery_core.bindgen import BindingGenerator
from bindery_core.build import BuildOrchestrator
from bindery_core.config import PipelineConfig, PublishPolicy, TagFilter
from bindery_core.errors import BinderyError, ConfigurationError, PipelineCancelled, TestFailure
from bindery_core.models import (
    BuildJob,
    Bundle,
    JobStatus,
    LanguageResult,
    PipelineResult,
    PipelineStatus,
    PublishResult,
    StageStatus,
    TargetResult,
    TestReport,
    TestStatus,
)
from bindery_core.observability import stage_span
from bindery_core.process import CancellationToken
from bindery_core.publish import Publisher
from bindery_core.suites import TestRunner
from bindery_core.toolchain import ToolchainManager

logger = structlog.get_logger(__name__)


class Stage(str, Enum):
    """Pipeline stages in execution order."""

    BUILD = "build"
    BINDGEN = "bindgen"
    ASSEMBLE = "assemble"
    TEST = "test"
    PUBLISH = "publish"

    @property
    def order(self) -> int:
        return list(Stage).index(self)


@dataclass
class _LanguageState:
    bindgen: StageStatus = StageStatus.PENDING
    assemble: StageStatus = StageStatus.PENDING
    test: StageStatus = StageStatus.PENDING
    publish: StageStatus = StageStatus.PENDING
    bindings: Path | None = None
    bundles: list[Bundle] = field(default_factory=list)
    reports: dict[str, TestReport] = field(default_factory=dict)
    published: list[PublishResult] = field(default_factory=list)

    def skip_pending(self) -> None:
        for stage in ("bindgen", "assemble", "test", "publish"):
            if getattr(self, stage) == StageStatus.PENDING:
                setattr(self, stage, StageStatus.SKIPPED)

    @property
    def green(self) -> bool:
        return (
            self.bindgen == StageStatus.SUCCEEDED
            and self.assemble == StageStatus.SUCCEEDED
            and self.test == StageStatus.SUCCEEDED
        )


def _failure_status(error: BinderyError) -> StageStatus:
    return StageStatus.CANCELLED if isinstance(error, PipelineCancelled) else StageStatus.FAILED


class Pipeline:
    """Run the full build, bindgen, assembly, test and publish chain.

    Attributes:
        config: Pipeline configuration.
        token: Cancellation token shared by every stage.

    Example:
        >>> pipeline = Pipeline(PipelineConfig.from_yaml("bindery.yaml"))
        >>> result = pipeline.run(test_filter="offline")
        >>> result.status.value
        'succeeded'
    """

    def __init__(
        self,
        config: PipelineConfig,
        token: CancellationToken | None = None,
        *,
        publisher: Publisher | None = None,
    ) -> None:
        self.config = config
        self.token = token or CancellationToken()
        self.toolchains = ToolchainManager(
            config.toolchains,
            config.workspace.toolchain_cache,
            retry=config.retry,
            token=self.token,
        )
        self.orchestrator = BuildOrchestrator(config, self.toolchains, self.token)
        self.generator = BindingGenerator(config, self.token)
        self.assembler = ArtifactAssembler(config, self.token)
        self.test_runner = TestRunner(config, self.token)
        self._owns_publisher = publisher is None
        self.publisher = publisher or Publisher(config, self.token)
        self.jobs: list[BuildJob] = []
        self.bundles: list[Bundle] = []
        self.reports: dict[str, TestReport] = {}
        self.published: list[PublishResult] = []
        self._log = logger.bind(component="pipeline", version=config.version)

    def __enter__(self) -> Pipeline:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Release registry clients held by a publisher this pipeline created."""
        if self._owns_publisher:
            self.publisher.close()

    def run(
        self,
        *,
        stop_after: Stage = Stage.PUBLISH,
        test_filter: str | TagFilter | None = None,
    ) -> PipelineResult:
        """Run the pipeline up to and including ``stop_after``.

        Args:
            stop_after: Last stage to run; later stages are reported skipped.
            test_filter: Named tag filter (e.g. ``offline``) or TagFilter.

        Returns:
            PipelineResult with per-target and per-language status.

        Raises:
            ConfigurationError: If ``test_filter`` names an unknown filter.
        """
        if isinstance(test_filter, str):
            self.config.tag_filter(test_filter)

        start = time.monotonic()
        started_at = datetime.now(UTC)
        errors: list[BinderyError] = []
        languages = {language: _LanguageState() for language in self.config.languages}
        self.jobs = self.orchestrator.expand(self.config.expand_matrix())

        self._log.info(
            "pipeline_started",
            targets=len(self.jobs),
            languages=list(languages),
            stop_after=stop_after.value,
        )

        with stage_span("pipeline", attributes={"bindery.version": self.config.version}):
            if self._resolve_toolchains(errors):
                self._build(errors)
                self._run_downstream(languages, errors, stop_after, test_filter)
            else:
                for job in self.jobs:
                    job.mark_skipped()

        for state in languages.values():
            state.skip_pending()

        if self.token.cancelled and not any(isinstance(e, PipelineCancelled) for e in errors):
            errors.append(PipelineCancelled())

        if self.token.cancelled:
            status = PipelineStatus.CANCELLED
        elif errors or any(not job.succeeded for job in self.jobs):
            status = PipelineStatus.FAILED
        else:
            status = PipelineStatus.SUCCEEDED

        result = PipelineResult(
            version=self.config.version,
            status=status,
            targets=[self._target_result(job) for job in self.jobs],
            languages=[
                LanguageResult(
                    language=language,
                    bindgen=state.bindgen,
                    assemble=state.assemble,
                    test=state.test,
                    publish=state.publish,
                    bundles=[b.name for b in state.bundles],
                    published=[f"{p.registry}:{p.package}@{p.version}" for p in state.published],
                )
                for language, state in languages.items()
            ],
            errors=[e.to_dict() for e in errors],
            started_at=started_at,
            finished_at=datetime.now(UTC),
            total_duration_ms=int((time.monotonic() - start) * 1000),
        )
        self._log.info(
            "pipeline_completed",
            status=result.status.value,
            errors=len(result.errors),
            total_duration_ms=result.total_duration_ms,
        )
        return result

    def _resolve_toolchains(self, errors: list[BinderyError]) -> bool:
        with stage_span("toolchain"):
            try:
                self.toolchains.resolve_all(job.target for job in self.jobs)
            except BinderyError as e:
                self._log.error("toolchain_resolution_failed", error=e.user_message)
                errors.append(e)
                return False
        return True

    def _build(self, errors: list[BinderyError]) -> None:
        with stage_span("build", attributes={"bindery.targets": len(self.jobs)}):
            self.orchestrator.run_jobs(self.jobs)
        for job in self.jobs:
            if job.status == JobStatus.FAILED and job.error is not None:
                errors.append(job.error)

    def _run_downstream(
        self,
        languages: dict[str, _LanguageState],
        errors: list[BinderyError],
        stop_after: Stage,
        test_filter: str | TagFilter | None,
    ) -> None:
        steps = [
            (Stage.BINDGEN, self._bindgen),
            (Stage.ASSEMBLE, self._assemble),
            (Stage.TEST, lambda langs, errs: self._test(langs, errs, test_filter)),
            (Stage.PUBLISH, self._publish),
        ]
        for stage, step in steps:
            if stage.order > stop_after.order or self.token.cancelled:
                return
            with stage_span(stage.value):
                step(languages, errors)

    def _bindgen(self, languages: dict[str, _LanguageState], errors: list[BinderyError]) -> None:
        outcomes = self.generator.generate_all(self.jobs)
        for language, outcome in outcomes.items():
            state = languages[language]
            if isinstance(outcome, BinderyError):
                state.bindgen = _failure_status(outcome)
                errors.append(outcome)
            else:
                state.bindgen = StageStatus.SUCCEEDED
                spec = self.config.binding_spec(language)
                if spec is not None:
                    state.bindings = self.config.bindings_output(spec)

    def _assemble(self, languages: dict[str, _LanguageState], errors: list[BinderyError]) -> None:
        self.bundles = []
        for group in self.config.bundles:
            state = languages[group.language]
            if state.bindgen != StageStatus.SUCCEEDED or state.assemble in (
                StageStatus.FAILED,
                StageStatus.CANCELLED,
            ):
                continue
            try:
                bundle = self.assembler.assemble(group, self.jobs, state.bindings)
            except BinderyError as e:
                state.assemble = _failure_status(e)
                state.bundles = []
                errors.append(e)
                continue
            state.bundles.append(bundle)

        for state in languages.values():
            if state.assemble == StageStatus.PENDING and state.bundles:
                state.assemble = StageStatus.SUCCEEDED
                self.bundles.extend(state.bundles)

    def _test(
        self,
        languages: dict[str, _LanguageState],
        errors: list[BinderyError],
        test_filter: str | TagFilter | None,
    ) -> None:
        ready = [
            bundle
            for language, state in languages.items()
            if state.assemble == StageStatus.SUCCEEDED and self.config.suite_for(language)
            for bundle in state.bundles
        ]
        self.reports = self.test_runner.run_all(ready, test_filter)

        for language, state in languages.items():
            if state.assemble != StageStatus.SUCCEEDED or self.config.suite_for(language) is None:
                continue
            reports = [self.reports[b.name] for b in state.bundles]
            state.reports = {b.name: self.reports[b.name] for b in state.bundles}
            failed = sorted({name for r in reports for name in r.failed_tests})
            if failed:
                state.test = StageStatus.FAILED
                errors.append(TestFailure(language, failed))
            elif any(r.status == TestStatus.SKIPPED for r in reports):
                if self.token.cancelled:
                    state.test = StageStatus.CANCELLED
                else:
                    state.test = StageStatus.FAILED
                    errors.append(
                        TestFailure(language, [], internal_details="filter selected no test to run")
                    )
            else:
                state.test = StageStatus.SUCCEEDED

    def _publish(self, languages: dict[str, _LanguageState], errors: list[BinderyError]) -> None:
        policy = self.config.publish_policy
        self.published = []

        for language, state in languages.items():
            if state.bundles and state.test == StageStatus.PENDING:
                state.publish = StageStatus.FAILED
                errors.append(
                    TestFailure(language, [], internal_details="no test suite configured")
                )

        all_green = not errors and all(job.succeeded for job in self.jobs)
        eligible = {
            language: state for language, state in languages.items() if state.bundles and state.green
        }
        if policy == PublishPolicy.ALL_GREEN:
            if not all_green:
                for language in eligible:
                    self._log.warning("publish_blocked", language=language, policy=policy.value)
                return
            if not self._check_release_free(eligible, errors):
                return

        for language, state in eligible.items():
            try:
                for bundle in state.bundles:
                    state.published.extend(
                        self.publisher.publish_bundle(bundle, state.reports.get(bundle.name))
                    )
            except BinderyError as e:
                state.publish = _failure_status(e)
                errors.append(e)
            else:
                state.publish = StageStatus.SUCCEEDED
            self.published.extend(state.published)

    def _check_release_free(
        self, eligible: dict[str, _LanguageState], errors: list[BinderyError]
    ) -> bool:
        """Look for an existing release in every registry before the first upload."""
        bundles = [bundle for state in eligible.values() for bundle in state.bundles]
        try:
            conflicts = self.publisher.find_conflicts(bundles)
        except BinderyError as e:
            for state in eligible.values():
                state.publish = _failure_status(e)
            errors.append(e)
            return False
        if not conflicts:
            return True

        conflicted = {conflict.subject for conflict in conflicts}
        for language, state in eligible.items():
            if language in conflicted:
                state.publish = StageStatus.FAILED
        errors.extend(conflicts)
        self._log.warning("publish_blocked", reason="conflict", languages=sorted(conflicted))
        return False

    def _target_result(self, job: BuildJob) -> TargetResult:
        artifact = job.artifact
        return TargetResult(
            target=job.target_id,
            status=job.status,
            artifact=str(artifact.path) if artifact else None,
            abi_tag=str(artifact.abi_tag) if artifact else None,
            duration_ms=job.duration_ms,
            log_path=str(job.log_path) if job.log_path else None,
            message=job.error.user_message if job.error else "",
        )


def clean(config: PipelineConfig) -> list[Path]:
    """Remove every generated and cached artifact of a project.

    Removes the workspace (jobs, artifacts, bindings, dist, caches), a custom
    toolchain cache directory and custom binding output directories.

    Returns:
        Paths that were removed.

    Raises:
        ConfigurationError: If a path to remove contains the project directory.
    """
    log = logger.bind(component="clean")
    candidates = [config.workspace.root]
    if config.workspace.cache_dir is not None:
        candidates.append(config.workspace.cache_dir)
    for spec in config.bindgen.specs:
        if spec.output_dir is not None:
            candidates.append(config.bindings_output(spec))

    project = config.project_dir.resolve()
    removed: list[Path] = []
    for path in candidates:
        resolved = path.resolve()
        if resolved == project or resolved in project.parents:
            raise ConfigurationError(
                f"Refusing to remove {path}: it contains the project directory"
            )
        if resolved.exists():
            shutil.rmtree(resolved)
            removed.append(path)
            log.info("path_removed", path=str(path))
    return removed
