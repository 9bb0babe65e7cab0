"""Registry publishing.

Gated uploads of tested bundles to directory and HTTP registries.
"""

from __future__ import annotations

from bindery_core.publish.archive import build_archive
from bindery_core.publish.publisher import Publisher
from bindery_core.publish.registry import (
    DirectoryRegistry,
    HttpRegistry,
    Registry,
    create_registry,
)

__all__ = [
    "DirectoryRegistry",
    "HttpRegistry",
    "Publisher",
    "Registry",
    "build_archive",
    "create_registry",
]
