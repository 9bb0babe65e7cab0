"""Custom exception hierarchy for bindery-core.

This module defines the exception classes raised by the pipeline stages:
- BinderyError: Base exception for all bindery errors
- ConfigurationError: bindery.yaml could not be loaded or is inconsistent
- ToolchainUnavailable: A pinned toolchain version cannot be obtained
- CompileFailure: A single target failed to compile
- BindingGenerationMismatch: Generator and artifact disagree on the ABI contract
- GeneratorFailure: The binding generator could not run or exited non-zero
- AssemblyError / MissingArchitecture: A bundle could not be assembled
- TestFailure: A language test suite did not fully pass
- PublishConflict: The (language, version) already exists in a registry
- TransientNetworkError: Retryable network failure
- PipelineCancelled: The run was cancelled

Every error carries the stage that raised it and the subject it concerns
(a target id such as ``linux-x86_64`` or a language such as ``python``), so
the pipeline can report per-target and per-language failures side by side.

User-facing messages are safe to display; technical details (command lines,
paths, raw tool output) are logged internally via structlog.
"""

from __future__ import annotations

import structlog

logger = structlog.get_logger(__name__)


class BinderyError(Exception):
    """Base exception for bindery.

    Args:
        user_message: Safe message to display to the user.
        stage: Pipeline stage that raised the error (e.g. "build").
        subject: Target id or language the error concerns.
        internal_details: Technical details for logging only.

    Example:
        >>> raise BinderyError(
        ...     "Build failed",
        ...     stage="build",
        ...     subject="linux-x86_64",
        ...     internal_details="cargo exited with status 101",
        ... )
    """

    stage: str = "pipeline"

    def __init__(
        self,
        user_message: str,
        *,
        stage: str | None = None,
        subject: str | None = None,
        internal_details: str | None = None,
    ) -> None:
        """Initialize BinderyError with user message and context.

        Args:
            user_message: Safe message to display to the user.
            stage: Pipeline stage, defaults to the class-level stage.
            subject: Target id or language.
            internal_details: Technical details for internal logging only.
        """
        super().__init__(user_message)
        self.user_message = user_message
        if stage is not None:
            self.stage = stage
        self.subject = subject
        self.internal_details = internal_details

        if internal_details:
            logger.error(
                "bindery_error",
                error_type=self.__class__.__name__,
                stage=self.stage,
                subject=subject,
                user_message=user_message,
                internal_details=internal_details,
            )

    def to_dict(self) -> dict[str, str | None]:
        """Structured form used in pipeline results."""
        return {
            "error_type": self.__class__.__name__,
            "stage": self.stage,
            "subject": self.subject,
            "message": self.user_message,
        }


class ConfigurationError(BinderyError):
    """Raised when bindery.yaml cannot be loaded or is inconsistent.

    Attributes:
        file_path: Path to the configuration file (if known).
        field_path: Dot-separated path to the invalid field.
    """

    stage = "config"

    def __init__(
        self,
        user_message: str,
        *,
        file_path: str | None = None,
        field_path: str | None = None,
        internal_details: str | None = None,
    ) -> None:
        """Initialize ConfigurationError with file and field context.

        Args:
            user_message: Safe message to display to the user.
            file_path: Path to the configuration file.
            field_path: Dot-separated path to the field.
            internal_details: Technical details for internal logging only.
        """
        context_parts: list[str] = []
        if file_path:
            context_parts.append(f"in {file_path}")
        if field_path:
            context_parts.append(f"field '{field_path}'")

        if context_parts:
            full_message = f"{user_message} ({', '.join(context_parts)})"
        else:
            full_message = user_message

        super().__init__(full_message, internal_details=internal_details)
        self.file_path = file_path
        self.field_path = field_path


class ToolchainUnavailable(BinderyError):
    """Raised when a pinned toolchain version cannot be obtained.

    Fatal: the pipeline aborts before any build starts.

    Attributes:
        version: The pinned toolchain version.
    """

    stage = "toolchain"

    def __init__(
        self,
        version: str,
        *,
        reason: str = "could not be installed",
        subject: str | None = None,
        internal_details: str | None = None,
    ) -> None:
        super().__init__(
            f"Toolchain {version} is unavailable: {reason}",
            subject=subject,
            internal_details=internal_details,
        )
        self.version = version


class CompileFailure(BinderyError):
    """Raised when one target fails to compile.

    Fatal for that target only. Not retried.

    Attributes:
        target_id: The failing target.
        returncode: Exit status of the build command, if it ran.
        log_path: Location of the captured build log.
    """

    stage = "build"

    def __init__(
        self,
        target_id: str,
        *,
        reason: str,
        returncode: int | None = None,
        log_path: str | None = None,
        internal_details: str | None = None,
    ) -> None:
        super().__init__(
            f"Compilation failed for {target_id}: {reason}",
            subject=target_id,
            internal_details=internal_details,
        )
        self.target_id = target_id
        self.returncode = returncode
        self.log_path = log_path


class BindingGenerationMismatch(BinderyError):
    """Raised when the generator and the artifact disagree on the ABI contract.

    Also raised when regenerated bindings differ from a previous run with the
    same inputs.

    Attributes:
        language: Binding language.
        expected: Contract version the artifact was built against.
        actual: Contract version reported by the generator or its output.
    """

    stage = "bindgen"

    def __init__(
        self,
        language: str,
        *,
        expected: str | None = None,
        actual: str | None = None,
        reason: str | None = None,
        internal_details: str | None = None,
    ) -> None:
        if reason is None:
            reason = f"artifact ABI contract {expected} does not match generator contract {actual}"
        super().__init__(
            f"Binding generation for {language} failed: {reason}",
            subject=language,
            internal_details=internal_details,
        )
        self.language = language
        self.expected = expected
        self.actual = actual


class GeneratorFailure(BinderyError):
    """Raised when the binding generator itself fails (missing tool, non-zero exit)."""

    stage = "bindgen"

    def __init__(self, language: str, *, reason: str, internal_details: str | None = None) -> None:
        super().__init__(
            f"Binding generation for {language} failed: {reason}",
            subject=language,
            internal_details=internal_details,
        )
        self.language = language


class AssemblyError(BinderyError):
    """Raised when a bundle cannot be assembled.

    No bundle directory is left behind when this is raised.
    """

    stage = "assemble"


class MissingArchitecture(AssemblyError):
    """Raised when a declared architecture has no successful build.

    Attributes:
        group: Merge group name.
        missing: Architectures without a succeeded BuildJob.
    """

    def __init__(
        self,
        group: str,
        missing: list[str],
        *,
        subject: str | None = None,
        internal_details: str | None = None,
    ) -> None:
        super().__init__(
            f"Bundle '{group}' is missing architectures: {', '.join(sorted(missing))}",
            subject=subject or group,
            internal_details=internal_details,
        )
        self.group = group
        self.missing = sorted(missing)


class TestFailure(BinderyError):
    """Raised when a language test suite has failing tests.

    Blocks publishing; already-built artifacts are untouched.

    Attributes:
        language: Suite language.
        failed_tests: Names of the failed tests.
    """

    __test__ = False
    stage = "test"

    def __init__(
        self,
        language: str,
        failed_tests: list[str],
        *,
        internal_details: str | None = None,
    ) -> None:
        if failed_tests:
            detail = f"{len(failed_tests)} failed ({', '.join(failed_tests)})"
        else:
            detail = "suite did not pass"
        super().__init__(
            f"Tests for {language} did not pass: {detail}",
            subject=language,
            internal_details=internal_details,
        )
        self.language = language
        self.failed_tests = failed_tests


class PublishConflict(BinderyError):
    """Raised when (language, version) already exists in a registry.

    Existing registry content is never overwritten.
    """

    stage = "publish"

    def __init__(
        self,
        language: str,
        version: str,
        registry: str,
        *,
        internal_details: str | None = None,
    ) -> None:
        super().__init__(
            f"Version {version} of the {language} package already exists in registry '{registry}'",
            subject=language,
            internal_details=internal_details,
        )
        self.language = language
        self.version = version
        self.registry = registry


class TransientNetworkError(BinderyError):
    """Retryable network failure (connection errors, 5xx responses).

    Escalates to fatal once the retry budget is spent.
    """

    stage = "network"


class PipelineCancelled(BinderyError):
    """Raised when a stage observes that the run was cancelled."""

    stage = "pipeline"

    def __init__(self, user_message: str = "Pipeline was cancelled", **kwargs: str | None) -> None:
        super().__init__(user_message, **kwargs)
