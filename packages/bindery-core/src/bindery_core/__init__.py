"""bindery-core: build, bind, assemble, test and publish native libraries.

This package provides:
- PipelineConfig: Pydantic schema for bindery.yaml
- ToolchainManager, BuildOrchestrator, BindingGenerator, ArtifactAssembler,
  TestRunner, Publisher: the pipeline stages
- Pipeline: runs the stages and reports per-target / per-language status
"""

from __future__ import annotations

__version__ = "0.1.0"

# Stages
from bindery_core.assembly import ArtifactAssembler
from bindery_core.bindgen import BindingGenerator
from bindery_core.build import BuildOrchestrator

# Configuration
from bindery_core.config import (
    DEFAULT_CONFIG_FILE,
    BindingSpec,
    MergeGroupConfig,
    PipelineConfig,
    PublishPolicy,
    RegistryConfig,
    RetryConfig,
    TagFilter,
)

# Error types
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

# Data models
from bindery_core.models import (
    AbiTag,
    Artifact,
    BuildJob,
    Bundle,
    BundleKind,
    BundleManifest,
    JobStatus,
    PipelineResult,
    PipelineStatus,
    PublishResult,
    StageStatus,
    TargetSpec,
    TestReport,
    TestStatus,
)
from bindery_core.observability import configure_logging
from bindery_core.pipeline import Pipeline, Stage, clean
from bindery_core.process import CancellationToken
from bindery_core.publish import DirectoryRegistry, HttpRegistry, Publisher, Registry
from bindery_core.suites import TestRunner
from bindery_core.toolchain import ToolchainHandle, ToolchainManager

__all__ = [
    "__version__",
    # Pipeline
    "Pipeline",
    "Stage",
    "clean",
    "CancellationToken",
    "configure_logging",
    # Stages
    "ToolchainManager",
    "ToolchainHandle",
    "BuildOrchestrator",
    "BindingGenerator",
    "ArtifactAssembler",
    "TestRunner",
    "Publisher",
    "Registry",
    "DirectoryRegistry",
    "HttpRegistry",
    # Configuration
    "DEFAULT_CONFIG_FILE",
    "PipelineConfig",
    "BindingSpec",
    "MergeGroupConfig",
    "RegistryConfig",
    "RetryConfig",
    "TagFilter",
    "PublishPolicy",
    # Errors
    "BinderyError",
    "ConfigurationError",
    "ToolchainUnavailable",
    "CompileFailure",
    "BindingGenerationMismatch",
    "GeneratorFailure",
    "AssemblyError",
    "MissingArchitecture",
    "TestFailure",
    "PublishConflict",
    "TransientNetworkError",
    "PipelineCancelled",
    # Models
    "AbiTag",
    "Artifact",
    "BuildJob",
    "Bundle",
    "BundleKind",
    "BundleManifest",
    "JobStatus",
    "PipelineResult",
    "PipelineStatus",
    "PublishResult",
    "StageStatus",
    "TargetSpec",
    "TestReport",
    "TestStatus",
]
