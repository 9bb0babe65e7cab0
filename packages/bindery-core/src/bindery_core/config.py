"""Pipeline configuration models.

``bindery.yaml`` is parsed into a PipelineConfig: one explicit object passed
into each stage at construction instead of ambient environment variables.
Recognized options are enumerated by the models below; unknown keys are
rejected.

Example bindery.yaml:

    name: bdk
    version: 1.2.0
    library: bdkffi
    abi_version: "29"
    concurrency: 4
    toolchains:
      default: 1.84.1
    build:
      command: [cargo, build, --profile, release-smaller, --target, "{triple}"]
      artifact: "{workdir}/{triple}/release-smaller/{library_file}"
    targets:
      - {platform: linux, architecture: x86_64, triple: x86_64-unknown-linux-gnu}
      - {platform: macos, architecture: aarch64, triple: aarch64-apple-darwin}
      - {platform: macos, architecture: x86_64, triple: x86_64-apple-darwin}
    bindgen:
      generator:
        command: [uniffi-bindgen, generate, --library, "{library}",
                  --language, "{language}", --out-dir, "{out_dir}"]
        contract_version: "29"
      specs:
        - {language: python, flags: [--no-format]}
        - {language: swift}
    bundles:
      - {name: bdkpython-linux-x86_64, language: python, kind: single,
         targets: [linux-x86_64], platform_tag: manylinux_2_28_x86_64}
      - {name: BitcoinDevKit, language: swift, kind: slice,
         targets: [macos-aarch64, macos-x86_64]}
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from bindery_core.errors import ConfigurationError
from bindery_core.models import BundleKind, TargetSpec

# semver with optional pre-release / build suffix
VERSION_PATTERN = r"^\d+\.\d+\.\d+([-+][0-9A-Za-z.-]+)?$"

NAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9_.-]*$"

DEFAULT_CONFIG_FILE = "bindery.yaml"

# Native library file name per platform family
LIBRARY_FILE_TEMPLATES: dict[str, str] = {
    "linux": "lib{library}.so",
    "android": "lib{library}.so",
    "macos": "lib{library}.dylib",
    "ios": "lib{library}.a",
    "windows": "{library}.dll",
}

DEFAULT_ABI_PATTERN = r"contract_version\D{0,32}?(\d+)"


class RetryConfig(BaseModel):
    """Retry policy for toolchain fetches and registry calls.

    Attributes:
        max_attempts: Maximum attempts including the first (1-10, default 3).
        initial_wait_seconds: Initial backoff wait.
        max_wait_seconds: Maximum backoff cap.
        jitter_seconds: Random jitter range.

    Example:
        >>> RetryConfig(max_attempts=5).max_attempts
        5
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=10, description="Maximum attempts")
    initial_wait_seconds: float = Field(default=1.0, ge=0.0, le=30.0)
    max_wait_seconds: float = Field(default=30.0, ge=0.0, le=300.0)
    jitter_seconds: float = Field(default=1.0, ge=0.0, le=10.0)

    @field_validator("max_wait_seconds")
    @classmethod
    def max_wait_must_exceed_initial(cls, v: float, info: object) -> float:
        """Validate that max_wait_seconds >= initial_wait_seconds."""
        data = getattr(info, "data", {})
        initial = data.get("initial_wait_seconds", 1.0)
        if v < initial:
            msg = f"max_wait_seconds ({v}) must be >= initial_wait_seconds ({initial})"
            raise ValueError(msg)
        return v


class WorkspaceConfig(BaseModel):
    """Where jobs, bundles and caches live.

    Attributes:
        root: Workspace root, relative to the project directory.
        cache_dir: Toolchain cache; defaults to ``<root>/cache``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    root: Path = Field(default=Path(".bindery"))
    cache_dir: Path | None = None

    @property
    def jobs_dir(self) -> Path:
        return self.root / "jobs"

    @property
    def artifacts_dir(self) -> Path:
        return self.root / "artifacts"

    @property
    def bindings_dir(self) -> Path:
        return self.root / "bindings"

    @property
    def dist_dir(self) -> Path:
        return self.root / "dist"

    @property
    def toolchain_cache(self) -> Path:
        return self.cache_dir or self.root / "cache" / "toolchains"

    @property
    def bindings_cache(self) -> Path:
        return self.root / "cache" / "bindings"


class ToolchainConfig(BaseModel):
    """Pinned compiler toolchain versions.

    Attributes:
        default: Version used for every target without an override.
        overrides: Target id -> version.
        probe_command: Exits 0 when the version is installed.
        install_command: Fetches and installs the version.
        env: Environment that pins the version for build subprocesses.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    default: str = Field(..., min_length=1, description="Default toolchain version")
    overrides: dict[str, str] = Field(default_factory=dict)
    probe_command: list[str] = Field(
        default_factory=lambda: ["rustup", "run", "{version}", "rustc", "--version"]
    )
    install_command: list[str] = Field(
        default_factory=lambda: ["rustup", "toolchain", "install", "{version}", "--profile", "minimal"]
    )
    env: dict[str, str] = Field(default_factory=lambda: {"RUSTUP_TOOLCHAIN": "{version}"})
    timeout_seconds: int = Field(default=1800, ge=1)

    def version_for(self, target_id: str) -> str:
        return self.overrides.get(target_id, self.default)


class BuildConfig(BaseModel):
    """How one target is compiled.

    ``command`` and ``artifact`` are templates. Placeholders: ``{platform}``,
    ``{architecture}``, ``{triple}``, ``{workdir}``, ``{toolchain}``,
    ``{library}``, ``{library_file}``, ``{project_dir}``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: list[str] = Field(..., min_length=1)
    artifact: str = Field(default="{workdir}/{library_file}")
    env: dict[str, str] = Field(
        default_factory=lambda: {"CARGO_TARGET_DIR": "{workdir}"},
        description="Extra environment; isolates per-job caches",
    )
    timeout_seconds: int = Field(default=3600, ge=1)


class TargetConfig(BaseModel):
    """A declared (platform, architecture) build target."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    platform: str = Field(..., pattern=NAME_PATTERN)
    architecture: str = Field(..., pattern=NAME_PATTERN)
    triple: str | None = None
    library_file: str | None = None

    @property
    def id(self) -> str:
        return f"{self.platform}-{self.architecture}"


class GeneratorConfig(BaseModel):
    """Binding generation tool.

    Attributes:
        command: Template; placeholders ``{library}``, ``{language}``,
            ``{out_dir}``. Flags from the BindingSpec are appended.
        version_command: Prints the generator version; part of the cache key.
        version: Fixed generator version when no version command is set.
        contract_version: ABI contract version the generator speaks.
        abi_pattern: Regex whose first group is the contract version
            embedded in generated sources.
        verify_determinism: Regenerate and compare output byte-for-byte.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: list[str] = Field(..., min_length=1)
    version_command: list[str] | None = None
    version: str = Field(default="unknown")
    contract_version: str = Field(..., min_length=1)
    abi_pattern: str = Field(default=DEFAULT_ABI_PATTERN)
    verify_determinism: bool = False
    timeout_seconds: int = Field(default=600, ge=1)

    @field_validator("abi_pattern")
    @classmethod
    def pattern_must_compile(cls, v: str) -> str:
        try:
            compiled = re.compile(v)
        except re.error as e:
            msg = f"abi_pattern is not a valid regular expression: {e}"
            raise ValueError(msg) from e
        if compiled.groups < 1:
            msg = "abi_pattern must contain a capture group for the version"
            raise ValueError(msg)
        return v


class BindingSpec(BaseModel):
    """One binding generation request.

    Attributes:
        language: Target language (python, kotlin, swift, ...).
        flags: Extra generator flags.
        output_dir: Where bindings land; defaults to ``<workspace>/bindings/<language>``.
        source_target: Target id whose artifact is used as representative.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    language: str = Field(..., pattern=NAME_PATTERN)
    flags: list[str] = Field(default_factory=list)
    output_dir: Path | None = None
    source_target: str | None = None


class BindgenConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    generator: GeneratorConfig
    specs: list[BindingSpec] = Field(default_factory=list)

    @field_validator("specs")
    @classmethod
    def languages_unique(cls, v: list[BindingSpec]) -> list[BindingSpec]:
        seen: set[str] = set()
        for spec in v:
            if spec.language in seen:
                msg = f"Duplicate binding language: {spec.language}"
                raise ValueError(msg)
            seen.add(spec.language)
        return v


class MergeGroupConfig(BaseModel):
    """A bundle to assemble from a group of targets.

    Attributes:
        name: Bundle name, also the default registry package name.
        language: Bindings language included in the bundle.
        kind: slice, resource_tree or single.
        targets: Constituent target ids. For ``slice`` these define the
            exact architecture set; ``single`` takes exactly one.
        package: Registry package name (defaults to ``name``).
        key_template: Resource-tree directory key template.
        resource_keys: Target id -> explicit resource-tree key.
        platform_tag: Platform tag for ``single`` bundles (e.g. a wheel tag).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., pattern=NAME_PATTERN)
    language: str = Field(..., pattern=NAME_PATTERN)
    kind: BundleKind
    targets: list[str] = Field(..., min_length=1)
    package: str | None = None
    key_template: str = "{platform}-{architecture}"
    resource_keys: dict[str, str] = Field(default_factory=dict)
    platform_tag: str | None = None

    @model_validator(mode="after")
    def validate_kind_constraints(self) -> MergeGroupConfig:
        if len(set(self.targets)) != len(self.targets):
            msg = f"Bundle '{self.name}' lists a target more than once"
            raise ValueError(msg)
        if self.kind == BundleKind.SINGLE and len(self.targets) != 1:
            msg = f"Bundle '{self.name}' of kind 'single' needs exactly one target"
            raise ValueError(msg)
        return self

    @property
    def package_name(self) -> str:
        return self.package or self.name


class TagFilter(BaseModel):
    """Selects test cases by tag.

    A case is selected when it carries every ``include`` tag (if any) and no
    ``exclude`` tag.

    Example:
        >>> TagFilter(exclude=["network"]).selects(["network"])
        False
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)

    def selects(self, tags: list[str]) -> bool:
        tag_set = set(tags)
        if self.include and not set(self.include) <= tag_set:
            return False
        return not tag_set & set(self.exclude)


class TestCaseSpec(BaseModel):
    __test__ = False
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)


class SuiteConfig(BaseModel):
    """A language test suite run against generated bindings.

    ``command`` runs one test case. Placeholders: ``{test}``, ``{bundle}``,
    ``{language}``, ``{project_dir}``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    language: str = Field(..., pattern=NAME_PATTERN)
    command: list[str] = Field(..., min_length=1)
    cwd: Path | None = None
    cases: list[TestCaseSpec] = Field(default_factory=list)
    parallel: bool = False
    timeout_seconds: int = Field(default=900, ge=1)
    env: dict[str, str] = Field(default_factory=dict)


def _default_filters() -> dict[str, TagFilter]:
    return {"offline": TagFilter(exclude=["network"]), "full": TagFilter()}


class TestsConfig(BaseModel):
    __test__ = False
    model_config = ConfigDict(frozen=True, extra="forbid")

    suites: list[SuiteConfig] = Field(default_factory=list)
    filters: dict[str, TagFilter] = Field(default_factory=_default_filters)


class CredentialRef(BaseModel):
    """Reference to a registry credential held outside bindery.

    Only the environment variable name is configured; the value is read
    at publish time.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    env: str = Field(..., pattern=r"^[A-Z_][A-Z0-9_]*$")

    def resolve(self, environ: dict[str, str]) -> SecretStr:
        value = environ.get(self.env)
        if not value:
            raise ConfigurationError(
                f"Registry credential not found in environment variable {self.env}"
            )
        return SecretStr(value)


class RegistryConfig(BaseModel):
    """A package registry endpoint.

    Attributes:
        name: Registry name used in reports.
        type: ``directory`` (local or mounted path) or ``http``.
        endpoint: Directory path or base URL.
        languages: Languages whose bundles go to this registry.
        credential: Credential reference for uploads.
        staged: Upload to staging first, then release.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., pattern=NAME_PATTERN)
    type: Literal["directory", "http"] = "directory"
    endpoint: str = Field(..., min_length=1)
    languages: list[str] = Field(..., min_length=1)
    credential: CredentialRef | None = None
    staged: bool = False
    timeout_seconds: int = Field(default=60, ge=1)

    @model_validator(mode="after")
    def validate_endpoint(self) -> RegistryConfig:
        if self.type == "http" and not self.endpoint.startswith(("http://", "https://")):
            msg = f"HTTP registry endpoint must start with http:// or https://, got: {self.endpoint}"
            raise ValueError(msg)
        return self


class PublishPolicy(str, Enum):
    """When bundles may be published.

    ALL_GREEN: nothing is published unless every target, bundle and suite
        of the run succeeded.
    PER_LANGUAGE: a language publishes when its own chain succeeded.
    """

    ALL_GREEN = "all_green"
    PER_LANGUAGE = "per_language"


class PipelineConfig(BaseModel):
    """Root configuration model for bindery.yaml."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., pattern=NAME_PATTERN)
    version: str = Field(..., pattern=VERSION_PATTERN, description="Version stamped on every bundle")
    library: str = Field(..., pattern=NAME_PATTERN, description="Native library base name")
    abi_version: str = Field(..., min_length=1, description="FFI contract version")
    concurrency: int = Field(default=2, ge=1, le=64)
    project_dir: Path = Field(default=Path("."))
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    toolchains: ToolchainConfig
    build: BuildConfig
    targets: list[TargetConfig] = Field(..., min_length=1)
    bindgen: BindgenConfig
    bundles: list[MergeGroupConfig] = Field(default_factory=list)
    tests: TestsConfig = Field(default_factory=TestsConfig)
    registries: list[RegistryConfig] = Field(default_factory=list)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    publish_policy: PublishPolicy = PublishPolicy.ALL_GREEN

    @model_validator(mode="after")
    def validate_references(self) -> PipelineConfig:
        target_ids = [t.id for t in self.targets]
        duplicates = sorted({t for t in target_ids if target_ids.count(t) > 1})
        if duplicates:
            msg = f"Duplicate targets: {', '.join(duplicates)}"
            raise ValueError(msg)

        known = set(target_ids)
        for override in self.toolchains.overrides:
            if override not in known:
                msg = f"Toolchain override for unknown target '{override}'"
                raise ValueError(msg)

        languages = {spec.language for spec in self.bindgen.specs}
        for spec in self.bindgen.specs:
            if spec.source_target and spec.source_target not in known:
                msg = f"Binding source target '{spec.source_target}' is not declared"
                raise ValueError(msg)

        bundle_names: set[str] = set()
        for group in self.bundles:
            if group.name in bundle_names:
                msg = f"Duplicate bundle name: {group.name}"
                raise ValueError(msg)
            bundle_names.add(group.name)
            if group.language not in languages:
                msg = f"Bundle '{group.name}' uses language '{group.language}' with no binding spec"
                raise ValueError(msg)
            unknown = [t for t in group.targets if t not in known]
            if unknown:
                msg = f"Bundle '{group.name}' references unknown targets: {', '.join(unknown)}"
                raise ValueError(msg)
            if group.kind == BundleKind.SLICE:
                by_id = {t.id: t for t in self.targets}
                platforms = {by_id[t].platform for t in group.targets}
                if len(platforms) != 1:
                    msg = f"Slice bundle '{group.name}' must target a single platform"
                    raise ValueError(msg)

        for suite in self.tests.suites:
            if suite.language not in languages:
                msg = f"Test suite for '{suite.language}' has no binding spec"
                raise ValueError(msg)
        return self

    @classmethod
    def from_yaml(cls, path: str | Path) -> PipelineConfig:
        """Load and validate PipelineConfig from a YAML file.

        Relative ``project_dir`` and workspace paths are resolved against the
        directory holding the file.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            yaml.YAMLError: If YAML syntax is invalid.
            pydantic.ValidationError: If schema validation fails.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")

        with path.open("r") as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}

        config = cls.model_validate(data)
        return config.rebased(path.parent.resolve())

    def rebased(self, base_dir: Path) -> PipelineConfig:
        """Return a copy with relative paths anchored at ``base_dir``."""
        project_dir = self.project_dir
        if not project_dir.is_absolute():
            project_dir = base_dir / project_dir

        workspace = self.workspace
        root = workspace.root if workspace.root.is_absolute() else project_dir / workspace.root
        cache_dir = workspace.cache_dir
        if cache_dir is not None and not cache_dir.is_absolute():
            cache_dir = project_dir / cache_dir

        return self.model_copy(
            update={
                "project_dir": project_dir,
                "workspace": workspace.model_copy(update={"root": root, "cache_dir": cache_dir}),
            }
        )

    def expand_matrix(self) -> list[TargetSpec]:
        """Expand declared targets into immutable TargetSpecs."""
        specs: list[TargetSpec] = []
        for target in self.targets:
            library_file = target.library_file or LIBRARY_FILE_TEMPLATES.get(
                target.platform, "lib{library}.so"
            ).format(library=self.library)
            specs.append(
                TargetSpec(
                    platform=target.platform,
                    architecture=target.architecture,
                    toolchain_version=self.toolchains.version_for(target.id),
                    output_path=self.workspace.artifacts_dir / target.id / library_file,
                    triple=target.triple,
                    library_file=library_file,
                )
            )
        return specs

    def binding_spec(self, language: str) -> BindingSpec | None:
        return next((s for s in self.bindgen.specs if s.language == language), None)

    def bindings_output(self, spec: BindingSpec) -> Path:
        if spec.output_dir is None:
            return self.workspace.bindings_dir / spec.language
        if spec.output_dir.is_absolute():
            return spec.output_dir
        return self.project_dir / spec.output_dir

    def suite_for(self, language: str) -> SuiteConfig | None:
        return next((s for s in self.tests.suites if s.language == language), None)

    def registries_for(self, language: str) -> list[RegistryConfig]:
        return [r for r in self.registries if language in r.languages]

    def tag_filter(self, name: str | None) -> TagFilter:
        """Look up a named tag filter; ``None`` selects every test."""
        if name is None:
            return TagFilter()
        try:
            return self.tests.filters[name]
        except KeyError:
            available = ", ".join(sorted(self.tests.filters)) or "none"
            raise ConfigurationError(
                f"Unknown test filter '{name}'. Available: {available}",
                field_path="tests.filters",
            ) from None

    @property
    def languages(self) -> list[str]:
        return [spec.language for spec in self.bindgen.specs]
