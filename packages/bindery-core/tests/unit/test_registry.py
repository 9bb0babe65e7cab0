"""Unit tests for registry clients and bundle archives."""

from __future__ import annotations

import gzip
import hashlib
import io
import tarfile
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
from pydantic import SecretStr

from bindery_core.config import RegistryConfig
from bindery_core.errors import BinderyError, PublishConflict, TransientNetworkError
from bindery_core.models import Bundle
from bindery_core.publish import DirectoryRegistry, HttpRegistry, build_archive, create_registry

BundleFactory = Callable[..., Bundle]

ENDPOINT = "https://registry.example.com/api"


def _directory(root: Path, *, staged: bool = False) -> DirectoryRegistry:
    return DirectoryRegistry(
        RegistryConfig(name="local", endpoint=str(root), languages=["python"], staged=staged)
    )


def _http(handler: Callable[[httpx.Request], httpx.Response], *, staged: bool = False) -> HttpRegistry:
    config = RegistryConfig(
        name="remote", type="http", endpoint=ENDPOINT, languages=["python"], staged=staged
    )
    return HttpRegistry(config, transport=httpx.MockTransport(handler))


class TestBuildArchive:
    def test_reproducible(self, make_bundle: BundleFactory) -> None:
        bundle = make_bundle()
        assert build_archive(bundle.path, "bdkpython-1.2.0") == build_archive(bundle.path, "bdkpython-1.2.0")

    def test_contents(self, make_bundle: BundleFactory) -> None:
        bundle = make_bundle()
        data = build_archive(bundle.path, "bdkpython-1.2.0")

        with tarfile.open(fileobj=io.BytesIO(gzip.decompress(data))) as tar:
            members = {m.name: m for m in tar.getmembers()}
            assert sorted(members) == [
                "bdkpython-1.2.0/manifest.json",
                "bdkpython-1.2.0/native",
                "bdkpython-1.2.0/native/libbdkffi.so",
            ]
            library = members["bdkpython-1.2.0/native/libbdkffi.so"]
            assert library.mtime == 0
            assert library.uid == 0
            assert library.mode == 0o644
            extracted = tar.extractfile(library)
            assert extracted is not None
            assert extracted.read() == (bundle.path / "native" / "libbdkffi.so").read_bytes()


class TestDirectoryRegistry:
    def test_upload(self, tmp_path: Path, make_bundle: BundleFactory) -> None:
        registry = _directory(tmp_path / "registry")
        bundle = make_bundle()

        assert registry.exists("bdkpython", "1.2.0") is False
        location = registry.upload(bundle)

        assert Path(location) == tmp_path / "registry" / "bdkpython" / "1.2.0"
        assert (Path(location) / "native" / "libbdkffi.so").is_file()
        assert registry.exists("bdkpython", "1.2.0") is True
        assert sorted(p.name for p in (tmp_path / "registry" / "bdkpython").iterdir()) == ["1.2.0"]

    def test_existing_version_never_overwritten(self, tmp_path: Path, make_bundle: BundleFactory) -> None:
        registry = _directory(tmp_path / "registry")
        bundle = make_bundle()
        location = Path(registry.upload(bundle))
        (location / "marker").write_text("first upload")

        with pytest.raises(PublishConflict):
            registry.upload(bundle)

        assert (location / "marker").read_text() == "first upload"
        assert sorted(p.name for p in location.parent.iterdir()) == ["1.2.0"]

    def test_staged_upload_then_release(self, tmp_path: Path, make_bundle: BundleFactory) -> None:
        registry = _directory(tmp_path / "registry", staged=True)
        bundle = make_bundle()

        staged = Path(registry.upload(bundle))
        assert staged == tmp_path / "registry" / ".staging" / "bdkpython" / "1.2.0"
        assert not registry.location("bdkpython", "1.2.0").exists()
        assert registry.exists("bdkpython", "1.2.0") is True

        released = Path(registry.release("bdkpython", "1.2.0"))

        assert released == registry.location("bdkpython", "1.2.0")
        assert (released / "manifest.json").is_file()
        assert not staged.exists()

    def test_release_without_upload(self, tmp_path: Path) -> None:
        registry = _directory(tmp_path / "registry", staged=True)
        with pytest.raises(BinderyError, match="No staged upload"):
            registry.release("bdkpython", "1.2.0")

    def test_relative_endpoint(self, tmp_path: Path) -> None:
        config = RegistryConfig(name="local", endpoint="registry", languages=["python"])
        registry = create_registry(config, base_dir=tmp_path)
        assert isinstance(registry, DirectoryRegistry)
        assert registry.root == tmp_path / "registry"
        assert registry.endpoint == str((tmp_path / "registry").resolve())


class TestHttpRegistry:
    def test_exists(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "HEAD"
            if request.url.path.endswith("/1.2.0"):
                return httpx.Response(200)
            return httpx.Response(404)

        registry = _http(handler)
        assert registry.exists("bdkpython", "1.2.0") is True
        assert registry.exists("bdkpython", "1.3.0") is False

    def test_exists_unexpected_status(self) -> None:
        registry = _http(lambda request: httpx.Response(403))
        with pytest.raises(BinderyError, match="status 403"):
            registry.exists("bdkpython", "1.2.0")

    def test_upload(self, make_bundle: BundleFactory) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, headers={"Location": f"{ENDPOINT}/bdkpython/1.2.0/files"})

        registry = _http(handler)
        bundle = make_bundle()

        location = registry.upload(bundle, SecretStr("s3cret"))

        assert location == f"{ENDPOINT}/bdkpython/1.2.0/files"
        (request,) = seen
        assert request.method == "PUT"
        assert str(request.url) == f"{ENDPOINT}/bdkpython/1.2.0"
        assert request.headers["Authorization"] == "Bearer s3cret"
        assert request.headers["X-Bindery-Language"] == "python"
        assert request.headers["X-Checksum-Sha256"] == hashlib.sha256(request.content).hexdigest()
        assert request.content == build_archive(bundle.path, "bdkpython-1.2.0")

    def test_upload_without_location_header(self, make_bundle: BundleFactory) -> None:
        registry = _http(lambda request: httpx.Response(200))
        assert registry.upload(make_bundle()) == f"{ENDPOINT}/bdkpython/1.2.0"

    def test_upload_conflict(self, make_bundle: BundleFactory) -> None:
        registry = _http(lambda request: httpx.Response(409))
        with pytest.raises(PublishConflict):
            registry.upload(make_bundle())

    def test_server_error_is_transient(self, make_bundle: BundleFactory) -> None:
        registry = _http(lambda request: httpx.Response(503, text="maintenance"))
        with pytest.raises(TransientNetworkError, match="returned 503"):
            registry.upload(make_bundle())

    def test_connection_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        registry = _http(handler)
        with pytest.raises(TransientNetworkError, match="unreachable"):
            registry.exists("bdkpython", "1.2.0")

    def test_staged_upload_and_release(self, make_bundle: BundleFactory) -> None:
        seen: list[tuple[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, str(request.url)))
            return httpx.Response(200)

        registry = _http(handler, staged=True)
        registry.upload(make_bundle())
        location = registry.release("bdkpython", "1.2.0")

        assert seen == [
            ("PUT", f"{ENDPOINT}/bdkpython/1.2.0?staged=true"),
            ("POST", f"{ENDPOINT}/bdkpython/1.2.0/release"),
        ]
        assert location == f"{ENDPOINT}/bdkpython/1.2.0"

    def test_create_registry_http(self) -> None:
        config = RegistryConfig(name="remote", type="http", endpoint=ENDPOINT, languages=["python"])
        registry = create_registry(config)
        assert isinstance(registry, HttpRegistry)
        assert registry.url("bdkpython", "1.2.0") == f"{ENDPOINT}/bdkpython/1.2.0"
        registry.close()
