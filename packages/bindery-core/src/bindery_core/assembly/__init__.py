"""Bundle assembly.

Merges per-architecture artifacts into consumer-facing bundles: slice
containers, resource trees and single-library packages.
"""

from __future__ import annotations

from bindery_core.assembly.assembler import MANIFEST_FILE, ArtifactAssembler
from bindery_core.assembly.slices import (
    MAGIC,
    extract_slice,
    read_slice_table,
    write_container,
)

__all__ = [
    "MAGIC",
    "MANIFEST_FILE",
    "ArtifactAssembler",
    "extract_slice",
    "read_slice_table",
    "write_container",
]
