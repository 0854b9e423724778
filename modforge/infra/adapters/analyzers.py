from __future__ import annotations

import re
from pathlib import Path
from typing import List, Tuple

from ..contracts import ManifestEditor
from ..models import (
    CompatibilityScan,
    CompatibilitySegment,
    ConsistencyScan,
    FileConsistencySegment,
    ModuleCheck,
    ValidationSegment,
)
from .text_formatter import decode_text, matching_files

# Constructs that only work on Windows PowerShell (Desktop).
CORE_INCOMPATIBLE_PATTERNS: Tuple[str, ...] = (
    r"\bGet-WmiObject\b",
    r"\bAdd-PSSnapin\b",
    r"\bNew-WebServiceProxy\b",
    r"\[System\.Web\.",
)

# Syntax introduced in PowerShell 7 that Windows PowerShell cannot parse.
DESKTOP_INCOMPATIBLE_PATTERNS: Tuple[str, ...] = (
    r"\?\?=",
    r"\s\?\?\s",
    r"\$\{?\w+\}?\?\.",
    r"\bForEach-Object\s+-Parallel\b",
)


class EncodingConsistencyAnalyzer:
    """Reports files whose encoding or line endings differ from the required ones."""

    def scan(self, root: Path, settings: FileConsistencySegment) -> ConsistencyScan:
        files = matching_files(root, settings.include, settings.exclude_directories)
        issues: List[Tuple[str, str]] = []
        for path in files:
            rel = path.relative_to(root).as_posix()
            raw = path.read_bytes()
            decoded = decode_text(raw)
            if decoded is None:
                issues.append((rel, "not UTF-8"))
                continue
            text, had_bom = decoded
            problems: List[str] = []
            if settings.required_encoding == "UTF8BOM" and not had_bom:
                problems.append("missing UTF-8 BOM")
            elif settings.required_encoding == "UTF8" and had_bom:
                problems.append("unexpected UTF-8 BOM")

            crlf = text.count("\r\n")
            lf = text.count("\n") - crlf
            if crlf and lf:
                problems.append("mixed line endings")
            elif settings.required_line_ending == "CRLF" and lf:
                problems.append("LF line endings")
            elif settings.required_line_ending == "LF" and crlf:
                problems.append("CRLF line endings")
            if problems:
                issues.append((rel, ", ".join(problems)))
        return ConsistencyScan(total_files=len(files), files_with_issues=tuple(issues))


class PatternCompatibilityAnalyzer:
    """Pattern-based edition compatibility scan of script files.

    Non-ASCII content without a BOM is misread by Windows PowerShell, so it is
    reported as Desktop-incompatible. ``incompatible_patterns`` from the
    settings are treated as Core-incompatible.
    """

    def __init__(self, editions: Tuple[str, ...] = ("Desktop", "Core"), include: Tuple[str, ...] = ("*.ps1", "*.psm1")):
        self.editions = editions
        self.include = include

    def scan(self, root: Path, settings: CompatibilitySegment) -> CompatibilityScan:
        files = matching_files(root, self.include)
        core = [re.compile(p) for p in CORE_INCOMPATIBLE_PATTERNS + tuple(settings.incompatible_patterns)]
        desktop = [re.compile(p) for p in DESKTOP_INCOMPATIBLE_PATTERNS]
        found: List[Tuple[str, str, str]] = []
        for path in files:
            rel = path.relative_to(root).as_posix()
            raw = path.read_bytes()
            decoded = decode_text(raw)
            if decoded is None:
                continue
            text, had_bom = decoded
            if "Desktop" in self.editions:
                if not had_bom and any(ord(ch) > 127 for ch in text):
                    found.append((rel, "Desktop", "non-ASCII content without BOM"))
                for rx in desktop:
                    if rx.search(text):
                        found.append((rel, "Desktop", f"matches {rx.pattern}"))
            if "Core" in self.editions:
                for rx in core:
                    if rx.search(text):
                        found.append((rel, "Core", f"matches {rx.pattern}"))
        return CompatibilityScan(total_files=len(files), incompatible=tuple(found), editions=self.editions)


class ManifestModuleValidator:
    """Checks the staged manifest: required fields, version and export list."""

    def __init__(self, manifest_editor: ManifestEditor):
        self.manifest_editor = manifest_editor

    def validate(
        self,
        staging_path: Path,
        manifest_path: Path,
        *,
        expected_version: str,
        export_set: Tuple[str, ...],
        settings: ValidationSegment,
    ) -> List[ModuleCheck]:
        if not manifest_path.exists():
            return [ModuleCheck("Manifest", "Fail", f"manifest not found: {manifest_path}")]
        meta = self.manifest_editor.read_metadata(manifest_path)
        checks: List[ModuleCheck] = [ModuleCheck("Manifest", "Pass")]

        if (meta.version or "") == expected_version:
            checks.append(ModuleCheck("Version", "Pass", expected_version))
        else:
            checks.append(ModuleCheck("Version", "Fail", f"manifest has {meta.version!r}, expected {expected_version!r}"))

        if settings.check_manifest_fields:
            missing = [f for f in settings.required_manifest_fields if not str(meta.values.get(f) or "").strip()]
            if missing:
                checks.append(ModuleCheck("ManifestFields", "Warning", "missing: " + ", ".join(missing)))
            else:
                checks.append(ModuleCheck("ManifestFields", "Pass"))

        if settings.check_exports:
            declared = {f.lower() for f in meta.functions_to_export}
            expected = {f.lower() for f in export_set}
            if declared == expected:
                checks.append(ModuleCheck("Exports", "Pass", f"{len(expected)} function(s)"))
            else:
                extra = sorted(declared - expected)
                missing_exports = sorted(expected - declared)
                checks.append(
                    ModuleCheck("Exports", "Fail", f"not exported: {missing_exports}; unknown: {extra}")
                )
        return checks
