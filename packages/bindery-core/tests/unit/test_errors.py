"""Unit tests for the bindery-core exception hierarchy."""

from __future__ import annotations

import pytest

from bindery_core.errors import (
    AssemblyError,
    BinderyError,
    BindingGenerationMismatch,
    CompileFailure,
    ConfigurationError,
    GeneratorFailure,
    MissingArchitecture,
    PipelineCancelled,
    PublishConflict,
    TestFailure,
    ToolchainUnavailable,
    TransientNetworkError,
)


class TestBinderyError:
    """Tests for the base BinderyError."""

    def test_stores_user_message(self) -> None:
        error = BinderyError("Something went wrong")
        assert error.user_message == "Something went wrong"
        assert str(error) == "Something went wrong"

    def test_default_stage(self) -> None:
        assert BinderyError("x").stage == "pipeline"

    def test_stage_and_subject_override(self) -> None:
        error = BinderyError("x", stage="publish", subject="python")
        assert error.stage == "publish"
        assert error.subject == "python"

    def test_to_dict(self) -> None:
        error = BinderyError("boom", stage="build", subject="linux-x86_64", internal_details="secret")
        assert error.to_dict() == {
            "error_type": "BinderyError",
            "stage": "build",
            "subject": "linux-x86_64",
            "message": "boom",
        }

    def test_internal_details_not_in_message(self) -> None:
        error = BinderyError("Build failed", internal_details="/home/ci/.cargo/bin/cargo")
        assert "/home/ci" not in str(error)
        assert error.internal_details == "/home/ci/.cargo/bin/cargo"


class TestConfigurationError:
    def test_message_includes_file_and_field(self) -> None:
        error = ConfigurationError("Bad value", file_path="bindery.yaml", field_path="targets.0")
        assert error.user_message == "Bad value (in bindery.yaml, field 'targets.0')"
        assert error.stage == "config"

    def test_plain_message(self) -> None:
        assert ConfigurationError("Bad value").user_message == "Bad value"


class TestStageErrors:
    """Each error reports its stage and subject."""

    def test_toolchain_unavailable(self) -> None:
        error = ToolchainUnavailable("1.84.1", reason="offline")
        assert error.stage == "toolchain"
        assert error.version == "1.84.1"
        assert "1.84.1" in error.user_message
        assert "offline" in error.user_message

    def test_compile_failure(self) -> None:
        error = CompileFailure("linux-aarch64", reason="exit 101", returncode=101, log_path="/tmp/log")
        assert error.stage == "build"
        assert error.subject == "linux-aarch64"
        assert error.returncode == 101
        assert error.log_path == "/tmp/log"

    def test_binding_mismatch_default_reason(self) -> None:
        error = BindingGenerationMismatch("python", expected="29", actual="30")
        assert error.stage == "bindgen"
        assert error.subject == "python"
        assert "29" in error.user_message
        assert "30" in error.user_message

    def test_generator_failure(self) -> None:
        error = GeneratorFailure("swift", reason="generator exited with status 3")
        assert error.stage == "bindgen"
        assert error.language == "swift"

    def test_missing_architecture_sorted(self) -> None:
        error = MissingArchitecture("BitcoinDevKit", ["macos-x86_64", "macos-aarch64"], subject="swift")
        assert isinstance(error, AssemblyError)
        assert error.stage == "assemble"
        assert error.subject == "swift"
        assert error.missing == ["macos-aarch64", "macos-x86_64"]
        assert "macos-aarch64, macos-x86_64" in error.user_message

    def test_missing_architecture_subject_defaults_to_group(self) -> None:
        assert MissingArchitecture("bundle", ["a"]).subject == "bundle"

    def test_test_failure_lists_tests(self) -> None:
        error = TestFailure("python", ["test_a", "test_b"])
        assert error.stage == "test"
        assert error.failed_tests == ["test_a", "test_b"]
        assert "2 failed (test_a, test_b)" in error.user_message

    def test_test_failure_without_tests(self) -> None:
        assert "suite did not pass" in TestFailure("python", []).user_message

    def test_publish_conflict(self) -> None:
        error = PublishConflict("python", "1.2.0", "pypi")
        assert error.stage == "publish"
        assert error.registry == "pypi"
        assert "1.2.0" in error.user_message

    def test_transient_network_error_stage(self) -> None:
        assert TransientNetworkError("timeout").stage == "network"

    def test_pipeline_cancelled_defaults(self) -> None:
        error = PipelineCancelled()
        assert error.user_message == "Pipeline was cancelled"
        assert error.stage == "pipeline"

    def test_pipeline_cancelled_stage(self) -> None:
        error = PipelineCancelled(stage="build", subject="linux-x86_64")
        assert error.stage == "build"
        assert error.subject == "linux-x86_64"

    @pytest.mark.parametrize(
        "error",
        [
            ConfigurationError("x"),
            ToolchainUnavailable("1"),
            CompileFailure("t", reason="r"),
            BindingGenerationMismatch("python", reason="r"),
            GeneratorFailure("python", reason="r"),
            AssemblyError("x"),
            TestFailure("python", []),
            PublishConflict("python", "1.0.0", "r"),
            TransientNetworkError("x"),
            PipelineCancelled(),
        ],
    )
    def test_all_errors_are_bindery_errors(self, error: BinderyError) -> None:
        assert isinstance(error, BinderyError)
