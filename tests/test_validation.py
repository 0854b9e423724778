from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from _testutil import ensure_repo_on_path


class TestValidationEvaluation(unittest.TestCase):
    def test_file_consistency_thresholds_and_severity(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import ConsistencyScan, FileConsistencySegment
        from modforge.orchestration.validation import evaluate_file_consistency, is_stage_fatal

        scan = ConsistencyScan(total_files=10, files_with_issues=(("a.ps1", "LF line endings"),))
        warn = evaluate_file_consistency(scan, FileConsistencySegment(severity="Error", max_inconsistency_percentage=20))
        self.assertEqual(warn.status, "Warning")
        self.assertEqual(warn.percentage, 10.0)
        self.assertEqual(warn.details, ("a.ps1: LF line endings",))

        fatal = evaluate_file_consistency(scan, FileConsistencySegment(severity="Error", max_inconsistency_percentage=5))
        self.assertEqual(fatal.status, "Fail")
        self.assertTrue(is_stage_fatal(fatal))

        capped = evaluate_file_consistency(scan, FileConsistencySegment(severity="Warning", max_inconsistency_percentage=5), name="FileConsistency (project)")
        self.assertEqual(capped.status, "Warning")
        self.assertEqual(capped.name, "FileConsistency (project)")
        self.assertFalse(is_stage_fatal(capped))

        off = evaluate_file_consistency(scan, FileConsistencySegment(severity="Off", max_inconsistency_percentage=0))
        self.assertEqual(off.status, "Pass")

    def test_compatibility_percentage_and_cross_rule(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import CompatibilityScan, CompatibilitySegment
        from modforge.orchestration.validation import evaluate_compatibility

        clean = CompatibilityScan(total_files=4)
        self.assertEqual(evaluate_compatibility(clean, CompatibilitySegment(severity="Error")).status, "Pass")

        scan = CompatibilityScan(
            total_files=20,
            incompatible=(("a.ps1", "Core", "matches x"), ("a.ps1", "Desktop", "matches y")),
        )
        report = evaluate_compatibility(scan, CompatibilitySegment(severity="Error", minimum_compatibility_percentage=90))
        self.assertEqual(report.status, "Warning")
        self.assertEqual(report.issues, 1)
        self.assertEqual(report.percentage, 95.0)

        strict = evaluate_compatibility(
            scan, CompatibilitySegment(severity="Error", minimum_compatibility_percentage=90, require_cross_compatibility=True)
        )
        self.assertEqual(strict.status, "Fail")

    def test_module_checks_take_the_worst_status(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import ModuleCheck, ValidationSegment
        from modforge.orchestration.validation import evaluate_module_checks

        checks = [ModuleCheck("Manifest", "Pass"), ModuleCheck("ManifestFields", "Warning", "missing: author")]
        self.assertEqual(evaluate_module_checks(checks, ValidationSegment(severity="Error")).status, "Warning")

        checks.append(ModuleCheck("Exports", "Fail", "not exported"))
        report = evaluate_module_checks(checks, ValidationSegment(severity="Error"))
        self.assertEqual(report.status, "Fail")
        self.assertEqual(report.issues, 2)


class TestAnalyzers(unittest.TestCase):
    def test_encoding_consistency_scan(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.analyzers import EncodingConsistencyAnalyzer
        from modforge.infra.models import FileConsistencySegment

        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "good.ps1").write_bytes(b"\xef\xbb\xbfline\r\nline\r\n")
            (root / "nobom.ps1").write_bytes(b"line\r\n")
            (root / "mixed.psm1").write_bytes(b"\xef\xbb\xbfa\r\nb\n")
            (root / "latin.ps1").write_bytes(b"caf\xe9\r\n")
            (root / "skip.txt").write_bytes(b"x\n")
            (root / ".git").mkdir()
            (root / ".git" / "hook.ps1").write_bytes(b"x\n")

            scan = EncodingConsistencyAnalyzer().scan(root, FileConsistencySegment())
            self.assertEqual(scan.total_files, 4)
            issues = dict(scan.files_with_issues)
            self.assertNotIn("good.ps1", issues)
            self.assertEqual(issues["nobom.ps1"], "missing UTF-8 BOM")
            self.assertEqual(issues["mixed.psm1"], "mixed line endings")
            self.assertEqual(issues["latin.ps1"], "not UTF-8")

    def test_pattern_compatibility_scan(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.analyzers import PatternCompatibilityAnalyzer
        from modforge.infra.models import CompatibilitySegment

        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "wmi.ps1").write_text("Get-WmiObject Win32_OS\n", encoding="utf-8")
            (root / "modern.ps1").write_text("$x ??= 1\n", encoding="utf-8")
            (root / "fine.psm1").write_text("Get-ChildItem\n", encoding="utf-8")
            (root / "custom.ps1").write_text("Invoke-Legacy\n", encoding="utf-8")

            scan = PatternCompatibilityAnalyzer().scan(root, CompatibilitySegment(incompatible_patterns=(r"Invoke-Legacy",)))
            self.assertEqual(scan.total_files, 4)
            found = {(path, edition) for path, edition, _ in scan.incompatible}
            self.assertEqual(found, {("wmi.ps1", "Core"), ("modern.ps1", "Desktop"), ("custom.ps1", "Core")})

    def test_manifest_module_validator(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.analyzers import ManifestModuleValidator
        from modforge.infra.adapters.manifest_yaml import YamlManifestEditor
        from modforge.infra.models import ValidationSegment

        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            manifest = root / "module.yml"
            manifest.write_text(
                "version: 1.2.3\nauthor: Ops\nfunctionsToExport:\n- Get-Thing\n",
                encoding="utf-8",
            )
            validator = ManifestModuleValidator(YamlManifestEditor())

            checks = validator.validate(root, manifest, expected_version="1.2.3", export_set=("Get-Thing",), settings=ValidationSegment())
            by_name = {c.name: c for c in checks}
            self.assertEqual(by_name["Version"].status, "Pass")
            self.assertEqual(by_name["ManifestFields"].status, "Warning")
            self.assertIn("description", by_name["ManifestFields"].message)
            self.assertEqual(by_name["Exports"].status, "Pass")

            checks = validator.validate(root, manifest, expected_version="2.0.0", export_set=("Get-Thing", "Set-Thing"), settings=ValidationSegment())
            by_name = {c.name: c for c in checks}
            self.assertEqual(by_name["Version"].status, "Fail")
            self.assertEqual(by_name["Exports"].status, "Fail")

            missing = validator.validate(root, root / "nope.yml", expected_version="1.0", export_set=(), settings=ValidationSegment())
            self.assertEqual([(c.name, c.status) for c in missing], [("Manifest", "Fail")])


class TestTextFormatter(unittest.TestCase):
    def test_format_tree_normalises_and_reports_changes(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.text_formatter import TextFormatter
        from modforge.infra.models import FormattingSegment

        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "a.ps1").write_bytes(b"line  \nnext\t\n")
            (root / "b.ps1").write_bytes(b"\xef\xbb\xbfok\r\n")
            (root / "Artefacts").mkdir()
            (root / "Artefacts" / "c.ps1").write_bytes(b"x  \n")

            settings = FormattingSegment(enable=True)
            total, changed = TextFormatter().format_tree(root, settings, exclude_dirs=("Artefacts",))
            self.assertEqual((total, changed), (2, 1))
            self.assertEqual((root / "a.ps1").read_bytes(), b"\xef\xbb\xbfline\r\nnext\r\n")
            self.assertEqual((root / "Artefacts" / "c.ps1").read_bytes(), b"x  \n")

            # Idempotent.
            self.assertEqual(TextFormatter().format_tree(root, settings, exclude_dirs=("Artefacts",)), (2, 0))

            lf = FormattingSegment(enable=True, line_ending="LF", encoding="UTF8", trim_trailing_whitespace=False)
            TextFormatter().format_tree(root, lf)
            self.assertEqual((root / "b.ps1").read_bytes(), b"ok\n")


if __name__ == "__main__":
    unittest.main()
