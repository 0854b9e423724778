from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write bytes atomically so a crashed run never leaves a partial file."""
    ensure_dir(path.parent)
    fd, tmp = tempfile.mkstemp(prefix=path.name, dir=str(path.parent))
    tmp_path = Path(tmp)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.replace(path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def atomic_write_text(path: Path, text: str, encoding: str = "utf-8") -> None:
    atomic_write_bytes(path, text.encode(encoding))


def copytree_merge(src: Path, dst: Path, *, ignore_dirs: Optional[Iterable[str]] = None, ignore_files: Optional[Iterable[str]] = None) -> List[Path]:
    """Copy ``src`` into ``dst`` keeping files already present in ``dst``.

    Same-named files are overwritten. Returns the destination files written.
    """
    skip_dirs = {str(d).lower() for d in (ignore_dirs or [])}
    skip_files = {str(f).lower() for f in (ignore_files or [])}
    written: List[Path] = []
    ensure_dir(dst)
    for cur, dirs, files in os.walk(src):
        dirs[:] = sorted(d for d in dirs if d.lower() not in skip_dirs)
        rel = Path(cur).relative_to(src)
        target_dir = ensure_dir(dst / rel)
        for name in sorted(files):
            if name.lower() in skip_files:
                continue
            target = target_dir / name
            shutil.copy2(Path(cur) / name, target)
            written.append(target)
    return written


def clear_dir(path: Path) -> None:
    """Delete the contents of ``path`` but keep the directory itself."""
    if not path.exists():
        ensure_dir(path)
        return
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def iter_files(root: Path) -> List[Path]:
    """All files under ``root`` sorted by their posix relative path."""
    out = [p for p in root.rglob("*") if p.is_file()]
    return sorted(out, key=lambda p: p.relative_to(root).as_posix())
