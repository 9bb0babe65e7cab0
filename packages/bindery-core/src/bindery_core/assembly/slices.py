"""Multi-architecture slice container.

Layout (little endian)::

    magic        8 bytes   b"BNDYFAT1"
    count        uint32
    table        count x (architecture: 32 bytes NUL-padded UTF-8,
                          offset: uint64, length: uint64,
                          sha256: 32 bytes)
    payloads     each starting on a 16-byte boundary

Slices are written in architecture order so identical inputs always produce
an identical container.
"""

from __future__ import annotations

import struct
from pathlib import Path

from bindery_core.checksums import sha256_bytes
from bindery_core.errors import AssemblyError
from bindery_core.models import SliceEntry

MAGIC = b"BNDYFAT1"
ALIGNMENT = 16
ARCH_FIELD_SIZE = 32

_HEADER = struct.Struct("<8sI")
_ENTRY = struct.Struct(f"<{ARCH_FIELD_SIZE}sQQ32s")


def _align(offset: int) -> int:
    return (offset + ALIGNMENT - 1) // ALIGNMENT * ALIGNMENT


def write_container(path: Path, slices: dict[str, bytes]) -> list[SliceEntry]:
    """Write a slice container.

    Args:
        path: Destination file.
        slices: Architecture -> native library bytes.

    Returns:
        The slice table, in file order.

    Raises:
        AssemblyError: If there are no slices or an architecture name does
            not fit the table.
    """
    if not slices:
        raise AssemblyError("Cannot write a slice container without slices")

    architectures = sorted(slices)
    for arch in architectures:
        if len(arch.encode()) > ARCH_FIELD_SIZE:
            raise AssemblyError(f"Architecture name too long for slice table: {arch}")

    offset = _align(_HEADER.size + _ENTRY.size * len(architectures))
    entries: list[SliceEntry] = []
    for arch in architectures:
        data = slices[arch]
        entries.append(
            SliceEntry(
                architecture=arch,
                offset=offset,
                length=len(data),
                checksum=sha256_bytes(data),
            )
        )
        offset = _align(offset + len(data))

    with path.open("wb") as f:
        f.write(_HEADER.pack(MAGIC, len(entries)))
        for entry in entries:
            f.write(
                _ENTRY.pack(
                    entry.architecture.encode(),
                    entry.offset,
                    entry.length,
                    bytes.fromhex(entry.checksum),
                )
            )
        for entry in entries:
            f.write(b"\0" * (entry.offset - f.tell()))
            f.write(slices[entry.architecture])
    return entries


def read_slice_table(path: Path) -> list[SliceEntry]:
    """Read the slice table of a container.

    Raises:
        AssemblyError: If the file is not a slice container.
    """
    with path.open("rb") as f:
        header = f.read(_HEADER.size)
        if len(header) != _HEADER.size:
            raise AssemblyError(f"{path} is too short to be a slice container")
        magic, count = _HEADER.unpack(header)
        if magic != MAGIC:
            raise AssemblyError(f"{path} is not a slice container")

        entries: list[SliceEntry] = []
        for _ in range(count):
            raw = f.read(_ENTRY.size)
            if len(raw) != _ENTRY.size:
                raise AssemblyError(f"{path} has a truncated slice table")
            arch, offset, length, digest = _ENTRY.unpack(raw)
            entries.append(
                SliceEntry(
                    architecture=arch.rstrip(b"\0").decode(),
                    offset=offset,
                    length=length,
                    checksum=digest.hex(),
                )
            )
    return entries


def extract_slice(path: Path, architecture: str) -> bytes:
    """Return one architecture's payload, verified against its checksum.

    Raises:
        AssemblyError: If the architecture is absent or its payload is corrupt.
    """
    entry = next((e for e in read_slice_table(path) if e.architecture == architecture), None)
    if entry is None:
        raise AssemblyError(f"{path} has no slice for {architecture}")
    with path.open("rb") as f:
        f.seek(entry.offset)
        data = f.read(entry.length)
    if sha256_bytes(data) != entry.checksum:
        raise AssemblyError(f"Slice {architecture} in {path} is corrupt")
    return data
