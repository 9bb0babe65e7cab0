"""Deterministic binding generation.

BindingGenerator runs the configured generator tool against one
representative native artifact per language. Output is keyed by a digest of
(artifact checksum, generator version, language, flags) and cached, so a
second run with identical inputs reuses byte-identical sources.

ABI compatibility is checked twice and never assumed:

1. before invoking the tool, the artifact's contract version must equal the
   generator's configured contract version;
2. after invoking it, every contract reference embedded in the generated
   sources must equal the artifact's contract version.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import threading
import uuid
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import structlog

from bindery_core.checksums import tree_checksums
from bindery_core.config import BindingSpec, PipelineConfig
from bindery_core.errors import (
    BinderyError,
    BindingGenerationMismatch,
    GeneratorFailure,
    PipelineCancelled,
)
from bindery_core.models import Artifact, BuildJob
from bindery_core.process import CancellationToken, render_command, run_command

logger = structlog.get_logger(__name__)

CACHE_METADATA = ".bindery-cache.json"

BindingOutcome = list[Path] | BinderyError


def select_representative(jobs: Iterable[BuildJob], spec: BindingSpec) -> Artifact | None:
    """Pick the artifact bindings for ``spec`` are generated from.

    Uses ``BindingSpec.source_target`` when set, else the first succeeded job
    by target id.
    """
    succeeded = sorted((j for j in jobs if j.succeeded), key=lambda j: j.target_id)
    if spec.source_target:
        job = next((j for j in succeeded if j.target_id == spec.source_target), None)
        return job.artifact if job else None
    return succeeded[0].artifact if succeeded else None


class BindingGenerator:
    """Generate language bindings from a native artifact.

    Example:
        >>> generator = BindingGenerator(config)
        >>> files = generator.generate(artifact, config.binding_spec("python"))
        >>> [f.name for f in files]
        ['bdk.py']
    """

    def __init__(self, config: PipelineConfig, token: CancellationToken | None = None) -> None:
        self.config = config
        self.generator = config.bindgen.generator
        self.token = token or CancellationToken()
        self._abi_pattern = re.compile(self.generator.abi_pattern)
        self._version: str | None = None
        self._version_lock = threading.Lock()
        self._log = logger.bind(component="binding_generator")

    def generator_version(self) -> str:
        """Version of the generator tool, queried once per run."""
        with self._version_lock:
            if self._version is None:
                self._version = self._query_version()
            return self._version

    def _query_version(self) -> str:
        if not self.generator.version_command:
            return self.generator.version
        command = render_command(self.generator.version_command, {})
        try:
            result = run_command(command, token=self.token, timeout_seconds=60)
        except FileNotFoundError:
            raise GeneratorFailure(
                "*", reason=f"version command '{command[0]}' not found"
            ) from None
        if not result.ok:
            raise GeneratorFailure(
                "*",
                reason=f"version command exited with status {result.returncode}",
                internal_details=result.output,
            )
        return result.output.strip() or self.generator.version

    def cache_key(self, artifact: Artifact, spec: BindingSpec) -> str:
        payload = json.dumps(
            {
                "artifact": artifact.checksum,
                "generator": self.generator_version(),
                "language": spec.language,
                "flags": spec.flags,
            },
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode()).hexdigest()

    def generate(self, artifact: Artifact, spec: BindingSpec) -> list[Path]:
        """Generate bindings for one language.

        Args:
            artifact: Representative native artifact.
            spec: Binding request.

        Returns:
            Generated files in the output directory, sorted.

        Raises:
            BindingGenerationMismatch: ABI contract disagreement or
                non-deterministic output.
            GeneratorFailure: The generator could not run.
            PipelineCancelled: The run was cancelled.
        """
        log = self._log.bind(language=spec.language, artifact=artifact.owner)
        self.token.raise_if_cancelled("bindgen", spec.language)

        artifact_contract = artifact.abi_tag.contract_version
        if artifact_contract != self.generator.contract_version:
            raise BindingGenerationMismatch(
                spec.language,
                expected=artifact_contract,
                actual=self.generator.contract_version,
            )

        key = self.cache_key(artifact, spec)
        cache_entry = self.config.workspace.bindings_cache / key

        if (cache_entry / CACHE_METADATA).is_file():
            log.info("bindings_cache_hit", cache_key=key[:12])
            if self.generator.verify_determinism:
                self._verify_against(cache_entry, artifact, spec)
        else:
            staging = self._generate_staged(artifact, spec)
            try:
                if self.generator.verify_determinism:
                    self._verify_against(staging, artifact, spec)
                self._write_cache_metadata(staging, artifact, spec, key)
                self._promote(staging, cache_entry)
            finally:
                shutil.rmtree(staging, ignore_errors=True)
            log.info("bindings_generated", cache_key=key[:12])

        output = self.config.bindings_output(spec)
        self._install(cache_entry, output)
        files = sorted(p for p in output.rglob("*") if p.is_file())
        log.info("bindings_ready", output=str(output), files=len(files))
        return files

    def generate_all(self, jobs: list[BuildJob]) -> dict[str, BindingOutcome]:
        """Generate every configured language in parallel.

        Returns:
            Language -> generated files, or the error that stopped it.
            A language failing never hides the outcome of the others.
            Languages with no successful build to generate from are omitted.
        """
        specs = self.config.bindgen.specs
        if not specs:
            return {}

        def run_one(spec: BindingSpec) -> BindingOutcome | None:
            artifact = select_representative(jobs, spec)
            if artifact is None:
                self._log.warning(
                    "bindings_skipped",
                    language=spec.language,
                    reason=f"no successful build for {spec.source_target or 'any target'}",
                )
                return None
            try:
                return self.generate(artifact, spec)
            except BinderyError as e:
                self._log.error(
                    "bindings_failed",
                    language=spec.language,
                    error=e.user_message,
                    error_type=type(e).__name__,
                )
                return e

        with ThreadPoolExecutor(
            max_workers=len(specs), thread_name_prefix="bindery-bindgen"
        ) as pool:
            outcomes = list(pool.map(run_one, specs))
        return {
            spec.language: outcome
            for spec, outcome in zip(specs, outcomes, strict=True)
            if outcome is not None
        }

    def _generate_staged(self, artifact: Artifact, spec: BindingSpec) -> Path:
        staging = self.config.workspace.bindings_cache / f".staging-{uuid.uuid4().hex}"
        staging.mkdir(parents=True)
        try:
            self._run_tool(artifact, spec, staging)
            self._check_embedded_contract(staging, artifact, spec)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        return staging

    def _run_tool(self, artifact: Artifact, spec: BindingSpec, out_dir: Path) -> None:
        values = {
            "library": artifact.path,
            "language": spec.language,
            "out_dir": out_dir,
        }
        command = render_command(self.generator.command, values) + list(spec.flags)
        try:
            result = run_command(
                command,
                cwd=self.config.project_dir,
                token=self.token,
                timeout_seconds=self.generator.timeout_seconds,
            )
        except FileNotFoundError:
            raise GeneratorFailure(
                spec.language, reason=f"generator '{command[0]}' not found"
            ) from None
        if result.cancelled:
            raise PipelineCancelled(stage="bindgen", subject=spec.language)
        if result.returncode != 0:
            raise GeneratorFailure(
                spec.language,
                reason=f"generator exited with status {result.returncode}",
                internal_details=result.output[-4000:],
            )
        if not any(p.is_file() for p in out_dir.rglob("*")):
            raise GeneratorFailure(spec.language, reason="generator produced no files")

    def _check_embedded_contract(self, out_dir: Path, artifact: Artifact, spec: BindingSpec) -> None:
        expected = artifact.abi_tag.contract_version
        found: set[str] = set()
        for path in sorted(p for p in out_dir.rglob("*") if p.is_file()):
            text = path.read_bytes().decode("utf-8", errors="ignore")
            found.update(m.group(1) for m in self._abi_pattern.finditer(text))

        if not found:
            raise BindingGenerationMismatch(
                spec.language,
                expected=expected,
                reason="generated bindings carry no ABI contract reference",
            )
        mismatched = sorted(found - {expected})
        if mismatched:
            raise BindingGenerationMismatch(
                spec.language,
                expected=expected,
                actual=", ".join(mismatched),
            )

    def _verify_against(self, reference: Path, artifact: Artifact, spec: BindingSpec) -> None:
        """Regenerate and require byte-identical output."""
        again = self._generate_staged(artifact, spec)
        try:
            expected = _content_checksums(reference)
            actual = _content_checksums(again)
        finally:
            shutil.rmtree(again, ignore_errors=True)

        if expected != actual:
            drift = sorted(
                path
                for path in set(expected) | set(actual)
                if expected.get(path) != actual.get(path)
            )
            raise BindingGenerationMismatch(
                spec.language,
                reason=f"regenerated bindings differ from previous output: {', '.join(drift)}",
            )
        self._log.debug("bindings_deterministic", language=spec.language)

    def _write_cache_metadata(
        self, staging: Path, artifact: Artifact, spec: BindingSpec, key: str
    ) -> None:
        metadata = {
            "cache_key": key,
            "artifact_checksum": artifact.checksum,
            "generator_version": self.generator_version(),
            "language": spec.language,
            "flags": spec.flags,
            "contract_version": artifact.abi_tag.contract_version,
        }
        (staging / CACHE_METADATA).write_text(json.dumps(metadata, indent=2, sort_keys=True))

    def _promote(self, staging: Path, cache_entry: Path) -> None:
        cache_entry.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.replace(staging, cache_entry)
        except OSError:
            # Another run filled the same key; keep the existing entry
            if not (cache_entry / CACHE_METADATA).is_file():
                raise

    def _install(self, cache_entry: Path, output: Path) -> None:
        """Copy a cache entry into the output directory, replacing it atomically."""
        output.parent.mkdir(parents=True, exist_ok=True)
        staging = output.with_name(f".{output.name}.staging-{uuid.uuid4().hex}")
        shutil.copytree(cache_entry, staging, ignore=shutil.ignore_patterns(CACHE_METADATA))
        try:
            if output.exists():
                shutil.rmtree(output)
            os.replace(staging, output)
        finally:
            shutil.rmtree(staging, ignore_errors=True)


def _content_checksums(root: Path) -> dict[str, str]:
    checksums = tree_checksums(root)
    checksums.pop(CACHE_METADATA, None)
    return checksums
