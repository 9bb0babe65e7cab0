"""Deterministic bundle archives.

The same bundle directory always yields byte-identical ``.tar.gz`` output:
entries are sorted and ownership and timestamps are zeroed.
"""

from __future__ import annotations

import gzip
import io
import tarfile
from pathlib import Path


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.mode = 0o755 if info.isdir() else 0o644
    return info


def build_archive(root: Path, prefix: str) -> bytes:
    """Pack a directory into a reproducible tar.gz.

    Args:
        root: Directory to pack.
        prefix: Top-level directory name inside the archive.

    Returns:
        Archive bytes.
    """
    buffer = io.BytesIO()
    with gzip.GzipFile(fileobj=buffer, mode="wb", mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for path in sorted(root.rglob("*")):
                arcname = f"{prefix}/{path.relative_to(root).as_posix()}"
                info = _normalize(tar.gettarinfo(str(path), arcname))
                if path.is_file():
                    with path.open("rb") as f:
                        tar.addfile(info, f)
                else:
                    tar.addfile(info)
    return buffer.getvalue()
