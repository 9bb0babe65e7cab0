"""Publish gating and registry uploads.

Publisher refuses any bundle whose TestReport did not pass, rejects a
(language, version) that already exists in the registry, retries transient
network failures with bounded backoff, and serializes publishes to the same
registry endpoint. ``find_conflicts`` checks a whole release up front so
that a conflict in one registry blocks every upload.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Iterable, Mapping

import structlog
from pydantic import SecretStr

from bindery_core.config import PipelineConfig, RegistryConfig
from bindery_core.errors import BinderyError, ConfigurationError, PublishConflict, TestFailure
from bindery_core.models import Bundle, PublishResult, TestReport
from bindery_core.process import CancellationToken
from bindery_core.publish.registry import Registry, create_registry
from bindery_core.retry import call_with_retry

logger = structlog.get_logger(__name__)

_endpoint_locks: dict[str, threading.Lock] = {}
_endpoint_locks_guard = threading.Lock()


def endpoint_lock(endpoint: str) -> threading.Lock:
    """Process-wide lock serializing publishes to one registry endpoint."""
    with _endpoint_locks_guard:
        lock = _endpoint_locks.get(endpoint)
        if lock is None:
            lock = threading.Lock()
            _endpoint_locks[endpoint] = lock
        return lock


class Publisher:
    """Upload tested bundles to their registries.

    Args:
        config: Pipeline configuration.
        token: Cancellation token of the run.
        registries: Registry clients by name; built from ``config.registries``
            when omitted.
        environ: Environment used to resolve credentials.

    Example:
        >>> publisher = Publisher(config)
        >>> result = publisher.publish(bundle, "pypi-local", report)
        >>> result.version
        '1.2.0'
    """

    def __init__(
        self,
        config: PipelineConfig,
        token: CancellationToken | None = None,
        registries: Mapping[str, Registry] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        self.token = token or CancellationToken()
        self.environ = environ if environ is not None else os.environ
        self._owns_registries = registries is None
        if registries is None:
            registries = {
                r.name: create_registry(r, base_dir=config.project_dir) for r in config.registries
            }
        self.registries = dict(registries)
        self._log = logger.bind(component="publisher")

    def __enter__(self) -> Publisher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the registry clients this publisher created."""
        if not self._owns_registries:
            return
        for registry in self.registries.values():
            registry.close()

    def registry(self, name: str) -> Registry:
        try:
            return self.registries[name]
        except KeyError:
            raise ConfigurationError(f"Unknown registry '{name}'", field_path="registries") from None

    def registries_for(self, language: str) -> list[Registry]:
        return [r for r in self.registries.values() if language in r.config.languages]

    def publish(
        self,
        bundle: Bundle,
        registry: str | Registry,
        report: TestReport | None,
    ) -> PublishResult:
        """Publish one bundle to one registry.

        Raises:
            TestFailure: The bundle has no passing TestReport.
            PublishConflict: (language, version) already exists in the registry.
            TransientNetworkError: Retries were exhausted.
            PipelineCancelled: The run was cancelled.
        """
        target = self.registry(registry) if isinstance(registry, str) else registry
        self._check_gate(bundle, report)
        if bundle.version != self.config.version:
            raise BinderyError(
                f"Bundle {bundle.name} carries version {bundle.version}, "
                f"expected {self.config.version}",
                stage="publish",
                subject=bundle.language,
            )

        log = self._log.bind(
            bundle=bundle.name,
            language=bundle.language,
            version=bundle.version,
            registry=target.name,
        )
        credential = self._credential(target.config)

        with endpoint_lock(target.endpoint):
            self.token.raise_if_cancelled("publish", bundle.language)

            exists = call_with_retry(
                lambda: target.exists(bundle.package, bundle.version, credential),
                self.config.retry,
                operation=f"registry_exists:{target.name}",
            )
            if exists:
                log.error("publish_conflict")
                raise PublishConflict(bundle.language, bundle.version, target.name)

            location = call_with_retry(
                lambda: target.upload(bundle, credential),
                self.config.retry,
                operation=f"registry_upload:{target.name}",
            )
            if target.staged:
                self.token.raise_if_cancelled("publish", bundle.language)
                location = call_with_retry(
                    lambda: target.release(bundle.package, bundle.version, credential),
                    self.config.retry,
                    operation=f"registry_release:{target.name}",
                )

        log.info("bundle_published", location=location, staged=target.staged)
        return PublishResult(
            language=bundle.language,
            version=bundle.version,
            package=bundle.package,
            registry=target.name,
            location=location,
            staged=target.staged,
            released=True,
        )

    def publish_bundle(self, bundle: Bundle, report: TestReport | None) -> list[PublishResult]:
        """Publish a bundle to every registry serving its language."""
        targets = self.registries_for(bundle.language)
        if not targets:
            raise ConfigurationError(
                f"No registry configured for {bundle.language}", field_path="registries"
            )
        return [self.publish(bundle, target, report) for target in targets]

    def find_conflicts(self, bundles: Iterable[Bundle]) -> list[PublishConflict]:
        """Check every (bundle, registry) pair before anything is uploaded.

        Returns:
            One PublishConflict per pair whose version already exists.

        Raises:
            ConfigurationError: A bundle's language has no registry.
            TransientNetworkError: Retries were exhausted.
            PipelineCancelled: The run was cancelled.
        """
        conflicts: list[PublishConflict] = []
        for bundle in bundles:
            targets = self.registries_for(bundle.language)
            if not targets:
                raise ConfigurationError(
                    f"No registry configured for {bundle.language}", field_path="registries"
                )
            for target in targets:
                self.token.raise_if_cancelled("publish", bundle.language)
                credential = self._credential(target.config)
                exists = call_with_retry(
                    lambda: target.exists(bundle.package, bundle.version, credential),
                    self.config.retry,
                    operation=f"registry_exists:{target.name}",
                )
                if exists:
                    self._log.warning(
                        "publish_conflict_found",
                        bundle=bundle.name,
                        version=bundle.version,
                        registry=target.name,
                    )
                    conflicts.append(PublishConflict(bundle.language, bundle.version, target.name))
        return conflicts

    def _check_gate(self, bundle: Bundle, report: TestReport | None) -> None:
        if report is None:
            raise TestFailure(bundle.language, [], internal_details="no test report")
        if report.language != bundle.language or report.bundle != bundle.name:
            raise TestFailure(
                bundle.language,
                [],
                internal_details=f"report belongs to {report.language}/{report.bundle}",
            )
        if not report.passed:
            raise TestFailure(bundle.language, report.failed_tests)

    def _credential(self, config: RegistryConfig) -> SecretStr | None:
        if config.credential is None:
            return None
        return config.credential.resolve(dict(self.environ))
