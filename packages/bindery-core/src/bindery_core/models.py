"""Pipeline data models.

Typed values handed from stage to stage:
TargetSpec -> BuildJob -> Artifact -> Bundle -> TestReport -> PublishResult,
aggregated into a PipelineResult at the end of a run.

Immutable values are frozen Pydantic models. BuildJob is the one mutable
record; only the BuildOrchestrator changes it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from bindery_core.errors import BinderyError


class AbiTag(BaseModel):
    """ABI tag stamped on every native artifact.

    Attributes:
        contract_version: FFI contract version the library exports.
        platform: Platform the library was built for.
        architecture: CPU architecture the library was built for.

    Example:
        >>> str(AbiTag(contract_version="29", platform="linux", architecture="x86_64"))
        '29:linux-x86_64'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    contract_version: str = Field(..., min_length=1, description="FFI contract version")
    platform: str = Field(..., min_length=1, description="Target platform")
    architecture: str = Field(..., min_length=1, description="Target architecture")

    def __str__(self) -> str:
        return f"{self.contract_version}:{self.platform}-{self.architecture}"

    def matches(self, target: TargetSpec) -> bool:
        """Check that the tag was produced for the given target."""
        return self.platform == target.platform and self.architecture == target.architecture


class TargetSpec(BaseModel):
    """One declared build unit.

    Attributes:
        platform: Operating system / platform family (linux, macos, windows, ...).
        architecture: CPU architecture (x86_64, aarch64, ...).
        toolchain_version: Pinned compiler toolchain version.
        output_path: Where the finished per-target artifact is kept.
        triple: Compiler target triple, if the toolchain needs one.
        library_file: File name of the native library for this platform.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    platform: str = Field(..., min_length=1)
    architecture: str = Field(..., min_length=1)
    toolchain_version: str = Field(..., min_length=1)
    output_path: Path
    triple: str | None = None
    library_file: str = Field(..., min_length=1)

    @property
    def id(self) -> str:
        """Unique identifier of the build unit."""
        return f"{self.platform}-{self.architecture}"


class JobStatus(str, Enum):
    """BuildJob lifecycle status.

    PENDING and RUNNING are transient; every other status is terminal.
    SKIPPED marks jobs that never started because the run was cancelled;
    CANCELLED marks jobs whose build process was terminated by cancellation.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


class Artifact(BaseModel):
    """A native library produced by a build or merge step.

    Attributes:
        owner: Target id of the producing BuildJob, or merge-group name.
        path: File location.
        size: Size in bytes.
        checksum: SHA-256 hex digest of the content.
        abi_tag: ABI tag of the content.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    owner: str = Field(..., min_length=1)
    path: Path
    size: int = Field(..., ge=0)
    checksum: str = Field(..., min_length=64, max_length=64)
    abi_tag: AbiTag

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


@dataclass
class BuildJob:
    """Execution record for one TargetSpec.

    Created in PENDING state when the matrix is expanded and moved to a
    terminal state exactly once. ``wait()`` is the barrier used by the
    assembler: it returns once the job is terminal.
    """

    target: TargetSpec
    status: JobStatus = JobStatus.PENDING
    artifact: Artifact | None = None
    log_path: Path | None = None
    error: BinderyError | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    _done: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def target_id(self) -> str:
        return self.target.id

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> int:
        if self.started_at is None or self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def mark_running(self) -> None:
        self.status = JobStatus.RUNNING
        self.started_at = datetime.now(UTC)

    def mark_succeeded(self, artifact: Artifact) -> None:
        self.artifact = artifact
        self._finish(JobStatus.SUCCEEDED)

    def mark_failed(self, error: BinderyError) -> None:
        self.error = error
        self._finish(JobStatus.FAILED)

    def mark_skipped(self) -> None:
        self._finish(JobStatus.SKIPPED)

    def mark_cancelled(self, error: BinderyError | None = None) -> None:
        self.error = error
        self._finish(JobStatus.CANCELLED)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the job reaches a terminal status.

        Returns:
            True if the job is terminal, False on timeout.
        """
        return self._done.wait(timeout)

    def _finish(self, status: JobStatus) -> None:
        if self.is_terminal:
            msg = f"BuildJob {self.target_id} is already terminal ({self.status.value})"
            raise RuntimeError(msg)
        self.status = status
        self.finished_at = datetime.now(UTC)
        self._done.set()


class BundleKind(str, Enum):
    """How per-architecture artifacts are combined into a bundle.

    Attributes:
        SLICE: One multi-architecture container with a slice table.
        RESOURCE_TREE: Directory tree keyed by platform/architecture.
        SINGLE: Exactly one native library for one platform tag.
    """

    SLICE = "slice"
    RESOURCE_TREE = "resource_tree"
    SINGLE = "single"


class SliceEntry(BaseModel):
    """Slice table row of a multi-architecture container."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    architecture: str
    offset: int = Field(..., ge=0)
    length: int = Field(..., ge=0)
    checksum: str


class BundleManifest(BaseModel):
    """Checksum manifest written as manifest.json at the bundle root."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    language: str
    version: str
    kind: BundleKind
    abi_contract: str
    platform_tag: str | None = None
    files: dict[str, str] = Field(default_factory=dict, description="Relative path -> sha256")
    slices: list[SliceEntry] = Field(default_factory=list)


class Bundle(BaseModel):
    """A finished, version-stamped package ready for testing and publishing."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    package: str
    language: str
    version: str
    kind: BundleKind
    path: Path
    artifacts: list[Artifact] = Field(default_factory=list)
    manifest: BundleManifest

    @property
    def key(self) -> tuple[str, str]:
        """Idempotency key (language, version)."""
        return (self.language, self.version)


class TestStatus(str, Enum):
    """State of a test case or suite: queued -> running -> passed/failed/skipped."""

    __test__ = False

    QUEUED = "queued"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TestCaseResult(BaseModel):
    """Outcome of one test in a language suite."""

    __test__ = False
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    status: TestStatus
    tags: list[str] = Field(default_factory=list)
    duration_ms: int = Field(default=0, ge=0)
    message: str = ""


class TestReport(BaseModel):
    """Result of running one language suite against one bundle.

    Example:
        >>> report = TestReport(language="python", bundle="bdkpython", filter="offline")
        >>> report.passed
        True
    """

    __test__ = False
    model_config = ConfigDict(frozen=True, extra="forbid")

    language: str
    bundle: str
    filter: str | None = None
    results: list[TestCaseResult] = Field(default_factory=list)
    status: TestStatus = TestStatus.PASSED

    @property
    def passed(self) -> bool:
        """True when no test failed; skipped tests do not count as failures."""
        return self.status == TestStatus.PASSED

    @property
    def failed_tests(self) -> list[str]:
        return [r.name for r in self.results if r.status == TestStatus.FAILED]

    def count(self, status: TestStatus) -> int:
        return sum(1 for r in self.results if r.status == status)


class PublishResult(BaseModel):
    """Outcome of publishing one bundle to one registry."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    language: str
    version: str
    package: str
    registry: str
    location: str
    staged: bool = False
    released: bool = True
    published_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class StageStatus(str, Enum):
    """Status of a pipeline stage for one target or language."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class PipelineStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TargetResult(BaseModel):
    """Per-target line of the pipeline report."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    target: str
    status: JobStatus
    artifact: str | None = None
    abi_tag: str | None = None
    duration_ms: int = 0
    log_path: str | None = None
    message: str = ""


class LanguageResult(BaseModel):
    """Per-language line of the pipeline report."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    language: str
    bindgen: StageStatus = StageStatus.PENDING
    assemble: StageStatus = StageStatus.PENDING
    test: StageStatus = StageStatus.PENDING
    publish: StageStatus = StageStatus.PENDING
    bundles: list[str] = Field(default_factory=list)
    published: list[str] = Field(default_factory=list)


class PipelineResult(BaseModel):
    """Aggregated outcome of one pipeline run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str
    status: PipelineStatus
    targets: list[TargetResult] = Field(default_factory=list)
    languages: list[LanguageResult] = Field(default_factory=list)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    total_duration_ms: int = Field(default=0, ge=0)

    @property
    def passed(self) -> bool:
        return self.status == PipelineStatus.SUCCEEDED

    def language(self, name: str) -> LanguageResult | None:
        return next((lang for lang in self.languages if lang.language == name), None)

    def target(self, target_id: str) -> TargetResult | None:
        return next((t for t in self.targets if t.target == target_id), None)
