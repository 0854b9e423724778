from __future__ import annotations

import codecs
import fnmatch
import os
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from ..models import FormattingSegment

_BOM = codecs.BOM_UTF8


def matching_files(root: Path, patterns: Sequence[str], exclude_dirs: Sequence[str] = ()) -> List[Path]:
    """Files under ``root`` whose name matches one of ``patterns`` (case-insensitive)."""
    skip = {d.lower() for d in exclude_dirs}
    pats = [p.lower() for p in patterns]
    out: List[Path] = []
    for cur, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d.lower() not in skip)
        for name in sorted(files):
            if any(fnmatch.fnmatchcase(name.lower(), p) for p in pats):
                out.append(Path(cur) / name)
    return out


def decode_text(raw: bytes) -> Optional[Tuple[str, bool]]:
    """Return (text, had_bom), or None for content that is not UTF-8."""
    had_bom = raw.startswith(_BOM)
    try:
        text = raw[len(_BOM):].decode("utf-8") if had_bom else raw.decode("utf-8")
    except UnicodeDecodeError:
        return None
    return text, had_bom


def normalize_text(text: str, *, line_ending: str, trim_trailing_whitespace: bool) -> str:
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    if trim_trailing_whitespace:
        lines = [ln.rstrip(" \t") for ln in lines]
    eol = "\r\n" if line_ending == "CRLF" else "\n"
    return eol.join(lines)


class TextFormatter:
    """Normalise encoding, line endings and trailing whitespace of script files."""

    def format_tree(self, root: Path, settings: FormattingSegment, *, exclude_dirs: Tuple[str, ...] = ()) -> Tuple[int, int]:
        files = matching_files(root, settings.include, exclude_dirs)
        changed = 0
        for path in files:
            raw = path.read_bytes()
            decoded = decode_text(raw)
            if decoded is None:
                print(f"[format][WARN] skipping non UTF-8 file {path}")
                continue
            text, _ = decoded
            body = normalize_text(
                text,
                line_ending=settings.line_ending,
                trim_trailing_whitespace=settings.trim_trailing_whitespace,
            ).encode("utf-8")
            out = (_BOM + body) if settings.encoding == "UTF8BOM" else body
            if out != raw:
                path.write_bytes(out)
                changed += 1
        return len(files), changed
