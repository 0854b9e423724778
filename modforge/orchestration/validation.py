from __future__ import annotations

from typing import Sequence

from ..infra.models import (
    CompatibilityScan,
    CompatibilitySegment,
    ConsistencyScan,
    FileConsistencySegment,
    ModuleCheck,
    ValidationReport,
    ValidationSegment,
)

_RANK = {"Pass": 0, "Warning": 1, "Fail": 2}


def apply_severity(status: str, severity: str) -> str:
    """Map a raw finding status through the configured severity.

    Off never reports; Warning caps at Warning; Error keeps Fail.
    """
    if severity == "Off":
        return "Pass"
    if severity == "Warning" and status == "Fail":
        return "Warning"
    return status


def is_stage_fatal(report: ValidationReport) -> bool:
    return report.status == "Fail" and report.severity == "Error"


def _percentage(part: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(100.0 * part / total, 2)


def evaluate_file_consistency(scan: ConsistencyScan, settings: FileConsistencySegment, name: str = "FileConsistency") -> ValidationReport:
    issues = len(scan.files_with_issues)
    pct = _percentage(issues, scan.total_files)
    if issues == 0:
        raw = "Pass"
    elif pct <= settings.max_inconsistency_percentage:
        raw = "Warning"
    else:
        raw = "Fail"
    status = apply_severity(raw, settings.severity)
    message = f"{issues} of {scan.total_files} file(s) inconsistent ({pct}%, max {settings.max_inconsistency_percentage}%)"
    return ValidationReport(
        name=name,
        status=status,
        severity=settings.severity,
        total=scan.total_files,
        issues=issues,
        percentage=pct,
        message=message,
        details=tuple(f"{path}: {problem}" for path, problem in scan.files_with_issues),
    )


def evaluate_compatibility(scan: CompatibilityScan, settings: CompatibilitySegment) -> ValidationReport:
    bad_files = sorted({path for path, _, _ in scan.incompatible})
    compatible = scan.total_files - len(bad_files)
    pct = 100.0 if scan.total_files <= 0 else _percentage(compatible, scan.total_files)

    cross_ok = True
    if settings.require_cross_compatibility:
        cross_ok = not scan.incompatible

    if pct >= settings.minimum_compatibility_percentage and cross_ok:
        raw = "Warning" if bad_files else "Pass"
    else:
        raw = "Fail"
    status = apply_severity(raw, settings.severity)
    message = (
        f"{compatible} of {scan.total_files} file(s) compatible with {', '.join(scan.editions)} "
        f"({pct}%, min {settings.minimum_compatibility_percentage}%)"
    )
    return ValidationReport(
        name="Compatibility",
        status=status,
        severity=settings.severity,
        total=scan.total_files,
        issues=len(bad_files),
        percentage=pct,
        message=message,
        details=tuple(f"{path} [{edition}]: {reason}" for path, edition, reason in scan.incompatible),
    )


def evaluate_module_checks(checks: Sequence[ModuleCheck], settings: ValidationSegment) -> ValidationReport:
    worst = "Pass"
    for c in checks:
        if _RANK.get(c.status, 0) > _RANK[worst]:
            worst = c.status
    failing = [c for c in checks if c.status != "Pass"]
    return ValidationReport(
        name="ModuleValidation",
        status=apply_severity(worst, settings.severity),
        severity=settings.severity,
        total=len(checks),
        issues=len(failing),
        percentage=_percentage(len(failing), len(checks)),
        message=f"{len(failing)} of {len(checks)} check(s) not passing",
        details=tuple(f"{c.name}: {c.status} {c.message}".rstrip() for c in checks),
    )
