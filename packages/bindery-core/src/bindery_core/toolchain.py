"""Toolchain resolution and pinning.

ToolchainManager turns the pinned version of a TargetSpec into a
ToolchainHandle: the environment that makes build subprocesses use exactly
that version. Resolved versions are recorded in a local cache, one entry per
version string. Reads of the cache are shared; writes for one version are
serialized by a per-version lock.
"""

from __future__ import annotations

import json
import os
import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import structlog

from bindery_core.config import RetryConfig, ToolchainConfig
from bindery_core.errors import PipelineCancelled, ToolchainUnavailable, TransientNetworkError
from bindery_core.models import TargetSpec
from bindery_core.process import CancellationToken, render_command, render_env, run_command
from bindery_core.retry import call_with_retry

logger = structlog.get_logger(__name__)

CACHE_MARKER = "toolchain.json"


@dataclass(frozen=True)
class ToolchainHandle:
    """A resolved, pinned toolchain.

    Attributes:
        version: Pinned version string.
        cache_entry: Cache directory for this version.
        env: Environment variables pinning the version for subprocesses.
    """

    version: str
    cache_entry: Path
    env: dict[str, str] = field(default_factory=dict)


def _cache_key(version: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", version)


class ToolchainManager:
    """Resolve and pin compiler toolchains.

    Example:
        >>> manager = ToolchainManager(config.toolchains, cache_dir, config.retry)
        >>> handle = manager.resolve(target)
        >>> handle.env
        {'RUSTUP_TOOLCHAIN': '1.84.1'}
    """

    def __init__(
        self,
        config: ToolchainConfig,
        cache_dir: Path,
        retry: RetryConfig | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self.config = config
        self.cache_dir = cache_dir
        self.retry = retry or RetryConfig()
        self.token = token
        self._handles: dict[str, ToolchainHandle] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._log = logger.bind(component="toolchain_manager")

    def resolve(self, target: TargetSpec) -> ToolchainHandle:
        """Resolve the pinned toolchain for one target.

        Raises:
            ToolchainUnavailable: If the pinned version cannot be obtained.
        """
        return self.resolve_version(target.toolchain_version, subject=target.id)

    def resolve_all(self, matrix: Iterable[TargetSpec]) -> dict[str, ToolchainHandle]:
        """Resolve every distinct version used by a matrix.

        Called before any build starts so that an unavailable toolchain aborts
        the run up front.

        Returns:
            Version -> handle.
        """
        versions = sorted({target.toolchain_version for target in matrix})
        return {version: self.resolve_version(version) for version in versions}

    def resolve_version(self, version: str, *, subject: str | None = None) -> ToolchainHandle:
        handle = self._handles.get(version)
        if handle is not None:
            return handle

        with self._lock_for(version):
            handle = self._handles.get(version)
            if handle is not None:
                return handle

            handle = self._load_cached(version)
            if handle is None:
                handle = self._obtain(version, subject)
            self._handles[version] = handle
            return handle

    def _lock_for(self, version: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(version)
            if lock is None:
                lock = threading.Lock()
                self._locks[version] = lock
            return lock

    def _entry(self, version: str) -> Path:
        return self.cache_dir / _cache_key(version)

    def _handle(self, version: str) -> ToolchainHandle:
        values = {"version": version}
        return ToolchainHandle(
            version=version,
            cache_entry=self._entry(version),
            env=render_env(self.config.env, values),
        )

    def _load_cached(self, version: str) -> ToolchainHandle | None:
        marker = self._entry(version) / CACHE_MARKER
        if not marker.exists():
            return None
        try:
            data = json.loads(marker.read_text())
        except (OSError, json.JSONDecodeError):
            self._log.warning("toolchain_cache_corrupt", version=version, marker=str(marker))
            return None
        if data.get("version") != version:
            return None
        self._log.debug("toolchain_cache_hit", version=version)
        return self._handle(version)

    def _obtain(self, version: str, subject: str | None) -> ToolchainHandle:
        log = self._log.bind(version=version)

        probe = self._probe(version)
        if probe is None:
            if not self.config.install_command:
                raise ToolchainUnavailable(
                    version, reason="not installed and no install command configured", subject=subject
                )
            log.info("toolchain_install_started")
            try:
                call_with_retry(
                    lambda: self._install(version, subject),
                    self.retry,
                    retry_exceptions=(TransientNetworkError,),
                    operation=f"toolchain_install:{version}",
                )
            except TransientNetworkError as e:
                raise ToolchainUnavailable(
                    version,
                    reason=f"fetch failed after {self.retry.max_attempts} attempts",
                    subject=subject,
                    internal_details=e.internal_details,
                ) from e

            probe = self._probe(version)
            if probe is None:
                raise ToolchainUnavailable(
                    version,
                    reason="installed toolchain does not respond to probe",
                    subject=subject,
                )

        self._write_marker(version, probe)
        log.info("toolchain_resolved")
        return self._handle(version)

    def _probe(self, version: str) -> str | None:
        if not self.config.probe_command:
            return ""
        command = render_command(self.config.probe_command, {"version": version})
        try:
            result = run_command(
                command,
                token=self.token,
                timeout_seconds=self.config.timeout_seconds,
            )
        except FileNotFoundError:
            return None
        if result.cancelled:
            raise PipelineCancelled(stage="toolchain", subject=version)
        return result.output.strip() if result.ok else None

    def _install(self, version: str, subject: str | None) -> None:
        command = render_command(self.config.install_command, {"version": version})
        try:
            result = run_command(
                command,
                token=self.token,
                timeout_seconds=self.config.timeout_seconds,
            )
        except FileNotFoundError:
            raise ToolchainUnavailable(
                version,
                reason=f"installer '{command[0]}' not found",
                subject=subject,
            ) from None
        if result.cancelled:
            raise PipelineCancelled(stage="toolchain", subject=version)
        if not result.ok:
            raise TransientNetworkError(
                f"Fetching toolchain {version} failed with exit status {result.returncode}",
                stage="toolchain",
                subject=subject,
                internal_details=result.output[-4000:],
            )

    def _write_marker(self, version: str, probe_output: str) -> None:
        entry = self._entry(version)
        entry.mkdir(parents=True, exist_ok=True)
        marker = entry / CACHE_MARKER
        tmp = entry / f".{CACHE_MARKER}.{os.getpid()}.{threading.get_ident()}"
        tmp.write_text(
            json.dumps(
                {
                    "version": version,
                    "probe": probe_output,
                    "resolved_at": datetime.now(UTC).isoformat(),
                },
                indent=2,
            )
        )
        os.replace(tmp, marker)
