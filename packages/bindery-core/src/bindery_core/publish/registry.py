"""Package registry clients.

Two registry types are supported:

- DirectoryRegistry: a local or mounted directory, ``<root>/<package>/<version>``.
  Uploads are copied to a temporary sibling and renamed into place.
- HttpRegistry: ``HEAD``/``PUT {endpoint}/{package}/{version}`` with a single
  deterministic tar.gz body, plus ``POST .../release`` for staged registries.

Connection errors and 5xx responses raise TransientNetworkError so the
Publisher can retry them; a 409 on upload is a PublishConflict.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

import httpx
import structlog
from pydantic import SecretStr

from bindery_core.config import RegistryConfig
from bindery_core.errors import BinderyError, PublishConflict, TransientNetworkError
from bindery_core.models import Bundle
from bindery_core.publish.archive import build_archive

logger = structlog.get_logger(__name__)

STAGING_DIR = ".staging"


class Registry(ABC):
    """A package registry endpoint."""

    def __init__(self, config: RegistryConfig) -> None:
        self.config = config
        self._log = logger.bind(component="registry", registry=config.name)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def staged(self) -> bool:
        return self.config.staged

    @property
    def endpoint(self) -> str:
        """Key used to serialize publishes to the same endpoint."""
        return self.config.endpoint

    @abstractmethod
    def exists(self, package: str, version: str, credential: SecretStr | None = None) -> bool:
        """Check whether (package, version) is already published."""

    @abstractmethod
    def upload(self, bundle: Bundle, credential: SecretStr | None = None) -> str:
        """Upload a bundle atomically.

        For staged registries the upload lands in staging and is not visible
        until ``release`` is called.

        Returns:
            Location of the uploaded package.
        """

    @abstractmethod
    def release(self, package: str, version: str, credential: SecretStr | None = None) -> str:
        """Promote a staged upload. Returns the released location."""

    def close(self) -> None:
        """Release client resources held by the registry."""


class DirectoryRegistry(Registry):
    """Registry backed by a directory tree."""

    def __init__(self, config: RegistryConfig, base_dir: Path | None = None) -> None:
        super().__init__(config)
        root = Path(config.endpoint)
        if not root.is_absolute() and base_dir is not None:
            root = base_dir / root
        self.root = root

    @property
    def endpoint(self) -> str:
        return str(self.root.resolve())

    def location(self, package: str, version: str) -> Path:
        return self.root / package / version

    def staging_location(self, package: str, version: str) -> Path:
        return self.root / STAGING_DIR / package / version

    def exists(self, package: str, version: str, credential: SecretStr | None = None) -> bool:
        return (
            self.location(package, version).exists()
            or self.staging_location(package, version).exists()
        )

    def upload(self, bundle: Bundle, credential: SecretStr | None = None) -> str:
        final = (
            self.staging_location(bundle.package, bundle.version)
            if self.staged
            else self.location(bundle.package, bundle.version)
        )
        final.parent.mkdir(parents=True, exist_ok=True)
        tmp = final.parent / f".tmp-{bundle.version}-{uuid.uuid4().hex}"
        try:
            shutil.copytree(bundle.path, tmp)
            self._rename_new(tmp, final, bundle.language, bundle.version)
        finally:
            shutil.rmtree(tmp, ignore_errors=True)
        self._log.info("registry_upload_completed", location=str(final), staged=self.staged)
        return str(final)

    def release(self, package: str, version: str, credential: SecretStr | None = None) -> str:
        staged = self.staging_location(package, version)
        final = self.location(package, version)
        if not staged.exists():
            raise BinderyError(
                f"No staged upload of {package} {version} in registry '{self.name}'",
                stage="publish",
                subject=package,
            )
        final.parent.mkdir(parents=True, exist_ok=True)
        self._rename_new(staged, final, package, version)
        self._log.info("registry_release_completed", location=str(final))
        return str(final)

    def _rename_new(self, source: Path, final: Path, subject: str, version: str) -> None:
        if final.exists():
            raise PublishConflict(subject, version, self.name)
        try:
            os.rename(source, final)
        except OSError as e:
            if final.exists():
                raise PublishConflict(subject, version, self.name) from e
            raise


class HttpRegistry(Registry):
    """Registry reached over HTTP(S).

    Args:
        config: Registry configuration.
        transport: Optional httpx transport (e.g. ``httpx.MockTransport``).
    """

    def __init__(
        self,
        config: RegistryConfig,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(config)
        self._client = httpx.Client(
            timeout=config.timeout_seconds,
            transport=transport,
            follow_redirects=True,
        )

    def close(self) -> None:
        self._client.close()

    def url(self, package: str, version: str) -> str:
        return f"{self.config.endpoint.rstrip('/')}/{package}/{version}"

    def exists(self, package: str, version: str, credential: SecretStr | None = None) -> bool:
        response = self._request("HEAD", self.url(package, version), package, credential)
        if response.status_code == 404:
            return False
        if response.is_success:
            return True
        raise self._unexpected(response, package)

    def upload(self, bundle: Bundle, credential: SecretStr | None = None) -> str:
        body = build_archive(bundle.path, f"{bundle.package}-{bundle.version}")
        url = self.url(bundle.package, bundle.version)
        headers = {
            "Content-Type": "application/gzip",
            "X-Checksum-Sha256": hashlib.sha256(body).hexdigest(),
            "X-Bindery-Language": bundle.language,
        }
        params = {"staged": "true"} if self.staged else None
        response = self._request(
            "PUT", url, bundle.package, credential, content=body, headers=headers, params=params
        )
        if response.status_code == 409:
            raise PublishConflict(bundle.language, bundle.version, self.name)
        if not response.is_success:
            raise self._unexpected(response, bundle.package)

        location = response.headers.get("Location", url)
        self._log.info(
            "registry_upload_completed", location=location, size=len(body), staged=self.staged
        )
        return location

    def release(self, package: str, version: str, credential: SecretStr | None = None) -> str:
        url = f"{self.url(package, version)}/release"
        response = self._request("POST", url, package, credential)
        if not response.is_success:
            raise self._unexpected(response, package)
        self._log.info("registry_release_completed", package=package, version=version)
        return self.url(package, version)

    def _request(
        self,
        method: str,
        url: str,
        package: str,
        credential: SecretStr | None,
        *,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        headers = dict(headers or {})
        if credential is not None:
            headers["Authorization"] = f"Bearer {credential.get_secret_value()}"
        try:
            response = self._client.request(
                method, url, content=content, headers=headers, params=params
            )
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"Registry '{self.name}' is unreachable",
                stage="publish",
                subject=package,
                internal_details=f"{method} {url}: {e}",
            ) from e
        if response.status_code >= 500:
            raise TransientNetworkError(
                f"Registry '{self.name}' returned {response.status_code}",
                stage="publish",
                subject=package,
                internal_details=f"{method} {url}: {response.text[:200]}",
            )
        return response

    def _unexpected(self, response: httpx.Response, package: str) -> BinderyError:
        return BinderyError(
            f"Registry '{self.name}' rejected the request with status {response.status_code}",
            stage="publish",
            subject=package,
            internal_details=response.text[:200],
        )


def create_registry(config: RegistryConfig, base_dir: Path | None = None) -> Registry:
    """Build the registry client for a RegistryConfig."""
    if config.type == "http":
        return HttpRegistry(config)
    return DirectoryRegistry(config, base_dir=base_dir)
