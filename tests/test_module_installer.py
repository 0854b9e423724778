from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from _testutil import ensure_repo_on_path


def _staging(root: Path) -> Path:
    staging = root / "staging"
    staging.mkdir(parents=True)
    (staging / "Demo.psm1").write_text("function Get-Thing {}\n", encoding="utf-8")
    (staging / "module.yml").write_text("name: Demo\nversion: 1.2.3\n", encoding="utf-8")
    (staging / ".modforge-run.lock").write_text("{}", encoding="utf-8")
    return staging


def _existing(module_root: Path, *versions: str) -> None:
    for v in versions:
        (module_root / v).mkdir(parents=True)
        (module_root / v / "Demo.psm1").write_text(f"# {v}", encoding="utf-8")


class TestInstallVersionResolution(unittest.TestCase):
    def test_auto_revision(self) -> None:
        ensure_repo_on_path()

        from modforge.orchestration.installer import resolve_install_version

        with tempfile.TemporaryDirectory() as td:
            r1 = Path(td) / "r1"
            r2 = Path(td) / "r2"
            self.assertEqual(resolve_install_version("1.2.3", [r1, r2], "Demo", "AutoRevision"), "1.2.3")

            _existing(r1 / "Demo", "1.2.3", "1.2.3.1")
            _existing(r2 / "Demo", "1.2.3.4", "1.2.30")
            self.assertEqual(resolve_install_version("1.2.3", [r1, r2], "Demo", "AutoRevision"), "1.2.3.5")
            self.assertEqual(resolve_install_version("1.2.3", [r1, r2], "Demo", "Exact"), "1.2.3")
            self.assertEqual(resolve_install_version("1.2.3.4", [r1, r2], "Demo", "AutoRevision"), "1.2.3.4")

    def test_plan_prune(self) -> None:
        ensure_repo_on_path()

        from modforge.orchestration.installer import plan_prune

        kept, delete = plan_prune(["1.0", "1.1", "1.2", "1.10"], "1.10", 2, {"1.0"})
        self.assertEqual(kept, ["1.10", "1.2"])
        self.assertEqual(delete, ["1.1"])


class TestModuleInstaller(unittest.TestCase):
    def test_auto_revision_keeps_three_of_five_and_honours_preserve(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.manifest_yaml import YamlManifestEditor
        from modforge.infra.models import InstallSpec
        from modforge.orchestration.installer import ModuleInstaller

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            staging = _staging(tmp)
            root = tmp / "Modules"
            _existing(root / "Demo", "1.2.2", "1.2.3", "1.2.3.1", "1.2.3.2", "1.2.3.3")
            policy = InstallSpec(strategy="AutoRevision", keep_versions=3, roots=(str(root),), preserve_versions=("1.2.2",))

            res = ModuleInstaller(YamlManifestEditor()).install(staging, "module.yml", "Demo", "1.2.3", policy)

            self.assertEqual(res.version, "1.2.3.4")
            rr = res.roots[0]
            self.assertEqual(rr.pruned, ("1.2.3.1", "1.2.3"))
            self.assertEqual(rr.preserved, ("1.2.2",))
            remaining = sorted(p.name for p in (root / "Demo").iterdir())
            self.assertEqual(remaining, ["1.2.2", "1.2.3.2", "1.2.3.3", "1.2.3.4"])

            installed = root / "Demo" / "1.2.3.4"
            self.assertFalse((installed / ".modforge-run.lock").exists())
            meta = YamlManifestEditor().read_metadata(installed / "module.yml")
            self.assertEqual(meta.version, "1.2.3.4")
            # Staging itself is untouched.
            self.assertEqual(YamlManifestEditor().read_metadata(staging / "module.yml").version, "1.2.3")

    def test_exact_replaces_same_version_and_keeps_one(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.manifest_yaml import YamlManifestEditor
        from modforge.infra.models import InstallSpec
        from modforge.orchestration.installer import ModuleInstaller

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            staging = _staging(tmp)
            r1 = tmp / "a"
            r2 = tmp / "b"
            _existing(r1 / "Demo", "1.2.3", "1.0.0")
            policy = InstallSpec(strategy="Exact", keep_versions=5, roots=(str(r1), str(r2)))

            res = ModuleInstaller(YamlManifestEditor()).install(staging, None, "Demo", "1.2.3", policy)
            self.assertEqual(res.version, "1.2.3")
            self.assertEqual(len(res.roots), 2)
            self.assertEqual(sorted(p.name for p in (r1 / "Demo").iterdir()), ["1.2.3"])
            self.assertIn("function Get-Thing", (r1 / "Demo" / "1.2.3" / "Demo.psm1").read_text(encoding="utf-8"))
            self.assertTrue((r2 / "Demo" / "1.2.3" / "Demo.psm1").exists())

    def test_legacy_flat_install_handling(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.manifest_yaml import YamlManifestEditor
        from modforge.infra.models import InstallSpec
        from modforge.orchestration.installer import ModuleInstaller

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            staging = _staging(tmp)
            root = tmp / "Modules"
            flat = root / "Demo"
            flat.mkdir(parents=True)
            (flat / "Demo.psm1").write_text("# flat", encoding="utf-8")
            (flat / "module.yml").write_text("version: '0.9.0'\n", encoding="utf-8")
            (flat / "Private").mkdir()

            policy = InstallSpec(strategy="Exact", roots=(str(root),), legacy_flat_handling="Convert")
            res = ModuleInstaller(YamlManifestEditor()).install(staging, "module.yml", "Demo", "1.2.3", policy)

            rr = res.roots[0]
            self.assertTrue(rr.legacy_flat_detected)
            self.assertEqual(rr.legacy_flat_action, "Converted")
            self.assertEqual(rr.legacy_version, "0.9.0")
            self.assertEqual(rr.preserved, ("0.9.0",))
            self.assertTrue((flat / "0.9.0" / "Demo.psm1").exists())
            self.assertTrue((flat / "0.9.0" / "Private").is_dir())
            self.assertFalse((flat / "Demo.psm1").exists())

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            staging = _staging(tmp)
            root = tmp / "Modules"
            (root / "Demo").mkdir(parents=True)
            (root / "Demo" / "Demo.psm1").write_text("# flat", encoding="utf-8")

            policy = InstallSpec(strategy="Exact", roots=(str(root),))
            rr = ModuleInstaller(YamlManifestEditor()).install(staging, "module.yml", "Demo", "1.2.3", policy).roots[0]
            self.assertEqual(rr.legacy_flat_action, "Warned")
            self.assertTrue((root / "Demo" / "Demo.psm1").exists())

    def test_converted_legacy_install_of_the_same_version_survives(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.manifest_yaml import YamlManifestEditor
        from modforge.infra.errors import StageError
        from modforge.infra.models import InstallSpec
        from modforge.orchestration.installer import ModuleInstaller

        def flat_install(root: Path) -> Path:
            flat = root / "Demo"
            flat.mkdir(parents=True)
            (flat / "Demo.psm1").write_text("# flat", encoding="utf-8")
            (flat / "module.yml").write_text("version: 1.2.3\n", encoding="utf-8")
            (flat / "user-data.json").write_text("{}", encoding="utf-8")
            return flat

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            staging = _staging(tmp)
            root = tmp / "Modules"
            flat = flat_install(root)

            policy = InstallSpec(strategy="AutoRevision", roots=(str(root),), legacy_flat_handling="Convert")
            res = ModuleInstaller(YamlManifestEditor()).install(staging, "module.yml", "Demo", "1.2.3", policy)

            self.assertEqual(res.version, "1.2.3.1")
            rr = res.roots[0]
            self.assertEqual(rr.legacy_version, "1.2.3")
            self.assertEqual(rr.preserved, ("1.2.3",))
            self.assertTrue((flat / "1.2.3" / "user-data.json").exists())
            self.assertEqual((flat / "1.2.3" / "Demo.psm1").read_text(encoding="utf-8"), "# flat")
            self.assertEqual(sorted(p.name for p in flat.iterdir()), ["1.2.3", "1.2.3.1"])

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            staging = _staging(tmp)
            root = tmp / "Modules"
            flat = flat_install(root)

            policy = InstallSpec(strategy="Exact", roots=(str(root),), legacy_flat_handling="Convert")
            with self.assertRaises(StageError):
                ModuleInstaller(YamlManifestEditor()).install(staging, "module.yml", "Demo", "1.2.3", policy)
            self.assertTrue((flat / "1.2.3" / "user-data.json").exists())
            self.assertEqual(sorted(p.name for p in flat.iterdir()), ["1.2.3"])

    def test_no_roots_is_a_stage_error(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.manifest_yaml import YamlManifestEditor
        from modforge.infra.errors import StageError
        from modforge.infra.models import InstallSpec
        from modforge.orchestration.installer import ModuleInstaller

        with tempfile.TemporaryDirectory() as td:
            staging = _staging(Path(td))
            with self.assertRaises(StageError):
                ModuleInstaller(YamlManifestEditor()).install(staging, None, "Demo", "1.2.3", InstallSpec(roots=()))


if __name__ == "__main__":
    unittest.main()
