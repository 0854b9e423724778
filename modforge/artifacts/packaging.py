from __future__ import annotations

import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Tuple

from ..utils.fs import iter_files
from ..utils.hashing import sha256_file

# Stable timestamps and permissions so the same tree always zips to the same bytes.
FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True)
class ZipEntry:
    arcname: str
    source_path: Path


def _zipinfo(name: str) -> zipfile.ZipInfo:
    zi = zipfile.ZipInfo(filename=name, date_time=FIXED_DATE_TIME)
    zi.compress_type = zipfile.ZIP_DEFLATED
    zi.create_system = 3
    zi.external_attr = (0o644 & 0xFFFF) << 16
    return zi


def entries_for_tree(root: Path, prefix: str = "") -> List[ZipEntry]:
    pre = prefix.strip("/")
    out: List[ZipEntry] = []
    for p in iter_files(root):
        rel = p.relative_to(root).as_posix()
        out.append(ZipEntry(arcname=f"{pre}/{rel}" if pre else rel, source_path=p))
    return out


def create_zip(*, zip_path: Path, entries: Iterable[ZipEntry]) -> Tuple[str, int]:
    """Create a ZIP archive deterministically.

    Entries are written sorted by arcname with fixed timestamps.

    Returns:
        (sha256, bytes_size)
    """
    zip_path.parent.mkdir(parents=True, exist_ok=True)
    ordered = sorted(entries, key=lambda e: e.arcname)

    if zip_path.exists():
        zip_path.unlink()

    with zipfile.ZipFile(zip_path, mode="w") as zf:
        for e in ordered:
            src = e.source_path
            if not src.exists():
                raise FileNotFoundError(f"ZIP entry source not found: {src}")
            zf.writestr(_zipinfo(e.arcname), src.read_bytes())

    digest = sha256_file(zip_path)
    size = int(zip_path.stat().st_size)
    return digest, size


def zip_tree(*, zip_path: Path, root: Path) -> Tuple[str, int]:
    """Zip every file under ``root`` (paths relative to ``root``)."""
    return create_zip(zip_path=zip_path, entries=entries_for_tree(root))
