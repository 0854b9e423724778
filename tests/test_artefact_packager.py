from __future__ import annotations

import tempfile
import unittest
import zipfile
from pathlib import Path

from _testutil import ensure_repo_on_path, make_plan


class FakeModuleProvider:
    tool_name = "FakeGet"

    def __init__(self, installed_root: Path):
        self.installed_root = installed_root
        self.saved = []

    def installed_version(self, name):
        return None

    def install(self, name, **kwargs):
        raise AssertionError("not used")

    def locate_installed(self, name, version=None):
        base = self.installed_root / name
        if not base.is_dir():
            return None
        versions = sorted(p for p in base.iterdir() if p.is_dir())
        return versions[-1] if versions else None

    def save(self, name, *, version, dest_dir, repository="", credential=None, timeout=300.0):
        self.saved.append((name, version, repository))
        target = Path(dest_dir) / name / "1.0.0"
        target.mkdir(parents=True, exist_ok=True)
        (target / f"{name}.psm1").write_text("# saved", encoding="utf-8")
        return target


def _staging(root: Path) -> Path:
    staging = root / "staging"
    (staging / "Public").mkdir(parents=True)
    (staging / "Demo.psm1").write_text("# <ModuleName> <ModuleVersion>\nfunction Get-Thing {}\n# {{TOKEN}}\n", encoding="utf-8")
    (staging / "module.yml").write_text("name: Demo\nversion: 1.2.3\n", encoding="utf-8")
    (staging / "Public" / "Get-Thing.ps1").write_text("function Get-Thing {}\n", encoding="utf-8")
    (staging / ".modforge-run.lock").write_text("{}", encoding="utf-8")
    (root / "src").mkdir(exist_ok=True)
    return staging


class TestDeterministicZip(unittest.TestCase):
    def test_same_tree_zips_to_same_bytes(self) -> None:
        ensure_repo_on_path()

        from modforge.artifacts.packaging import ZipEntry, create_zip, zip_tree

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            src = tmp / "tree"
            (src / "b").mkdir(parents=True)
            (src / "b" / "two.txt").write_text("2", encoding="utf-8")
            (src / "a.txt").write_text("1", encoding="utf-8")

            d1, s1 = zip_tree(zip_path=tmp / "one.zip", root=src)
            entries = [ZipEntry("b/two.txt", src / "b" / "two.txt"), ZipEntry("a.txt", src / "a.txt")]
            d2, s2 = create_zip(zip_path=tmp / "two.zip", entries=entries)

            self.assertEqual((d1, s1), (d2, s2))
            with zipfile.ZipFile(tmp / "one.zip") as zf:
                self.assertEqual(zf.namelist(), ["a.txt", "b/two.txt"])
                self.assertEqual(zf.getinfo("a.txt").date_time, (1980, 1, 1, 0, 0, 0))


class TestArtefactPackager(unittest.TestCase):
    def test_packed_archive_name_contents_and_determinism(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import ArtefactSegment
        from modforge.orchestration.artefacts import ArtefactPackager

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            staging = _staging(tmp)
            plan = make_plan(tmp, prerelease="beta1")
            artefact = ArtefactSegment(kind="Packed", id="zip", path=str(tmp / "out" / "<ModuleName>"))

            first = ArtefactPackager().build(plan, artefact, staging, 1)
            self.assertTrue(first.succeeded, first.message)
            self.assertEqual(Path(first.output_path), tmp / "out" / "Demo" / "Demo.1.2.3-beta1.zip")
            self.assertEqual(first.files, ("Demo/Demo.psm1", "Demo/Public/Get-Thing.ps1", "Demo/module.yml"))

            second = ArtefactPackager().build(plan, artefact, staging, 1)
            self.assertEqual(first.sha256, second.sha256)
            self.assertEqual(first.bytes_size, second.bytes_size)

    def test_unpacked_honours_do_not_clear_and_mappings(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import ArtefactSegment, CopyMapping
        from modforge.orchestration.artefacts import ArtefactPackager

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            staging = _staging(tmp)
            (tmp / "src" / "Examples").mkdir()
            (tmp / "src" / "Examples" / "demo.ps1").write_text("Get-Thing", encoding="utf-8")
            (tmp / "src" / "LICENSE").write_text("MIT", encoding="utf-8")
            out = tmp / "out"
            out.mkdir()
            (out / "keep.txt").write_text("old", encoding="utf-8")
            plan = make_plan(tmp)

            artefact = ArtefactSegment(
                kind="Unpacked",
                path=str(out),
                do_not_clear=True,
                directory_output=(CopyMapping(source="Examples", destination="Demo/Examples"),),
                files_output=(CopyMapping(source="LICENSE", destination="Demo/"),),
            )
            res = ArtefactPackager().build(plan, artefact, staging, 2)
            self.assertTrue(res.succeeded, res.message)
            self.assertTrue((out / "keep.txt").exists())
            self.assertTrue((out / "Demo" / "Examples" / "demo.ps1").exists())
            self.assertTrue((out / "Demo" / "LICENSE").exists())
            self.assertFalse((out / "Demo" / ".modforge-run.lock").exists())

            cleared = ArtefactSegment(kind="Unpacked", path=str(out))
            ArtefactPackager().build(plan, cleared, staging, 2)
            self.assertFalse((out / "keep.txt").exists())

    def test_mappings_without_relative_flag_land_in_staging(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import ArtefactSegment, CopyMapping
        from modforge.orchestration.artefacts import ArtefactPackager

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            staging = _staging(tmp)
            (tmp / "src" / "Examples").mkdir()
            (tmp / "src" / "Examples" / "demo.ps1").write_text("Get-Thing", encoding="utf-8")
            (tmp / "src" / "LICENSE").write_text("MIT", encoding="utf-8")
            plan = make_plan(tmp)

            artefact = ArtefactSegment(
                kind="Packed",
                path=str(tmp / "out"),
                directory_output=(CopyMapping(source="Examples", destination="Extras"),),
                files_output=(CopyMapping(source="LICENSE", destination="<ModuleName>.license"),),
                destination_directories_relative=False,
            )
            res = ArtefactPackager().build(plan, artefact, staging, 1)

            self.assertTrue(res.succeeded, res.message)
            self.assertIn("Demo/Extras/demo.ps1", res.files)
            self.assertIn("Demo.license", res.files)
            self.assertTrue((staging / "Extras" / "demo.ps1").exists())
            self.assertFalse((tmp / "src" / "Extras").exists())

    def test_absolute_mapping_destinations(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import ArtefactSegment, CopyMapping
        from modforge.orchestration.artefacts import ArtefactPackager

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            staging = _staging(tmp)
            (tmp / "src" / "LICENSE").write_text("MIT", encoding="utf-8")
            plan = make_plan(tmp)
            elsewhere = tmp / "elsewhere" / "LICENSE.txt"
            mapping = (CopyMapping(source="LICENSE", destination=str(elsewhere)),)

            packed = ArtefactSegment(kind="Packed", path=str(tmp / "zip"), files_output=mapping, destination_files_relative=False)
            res = ArtefactPackager().build(plan, packed, staging, 1)
            self.assertFalse(res.succeeded)
            self.assertIn("must be relative", res.message)

            flagged = ArtefactSegment(kind="Unpacked", path=str(tmp / "flagged"), files_output=mapping)
            self.assertFalse(ArtefactPackager().build(plan, flagged, staging, 2).succeeded)
            self.assertFalse(elsewhere.exists())

            unpacked = ArtefactSegment(kind="Unpacked", path=str(tmp / "dir"), files_output=mapping, destination_files_relative=False)
            res = ArtefactPackager().build(plan, unpacked, staging, 3)
            self.assertTrue(res.succeeded, res.message)
            self.assertEqual(elsewhere.read_text(encoding="utf-8"), "MIT")

    def test_script_artefact_applies_placeholders_only(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import ArtefactSegment, PlaceHolderSegment
        from modforge.orchestration.artefacts import ArtefactPackager

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            staging = _staging(tmp)
            plan = make_plan(tmp, placeholders=(PlaceHolderSegment(find="{{TOKEN}}", replace="replaced"),))
            artefact = ArtefactSegment(kind="Script", path=str(tmp / "script"), script_name="Install-<ModuleName>")

            res = ArtefactPackager().build(plan, artefact, staging, 1)
            self.assertTrue(res.succeeded, res.message)
            self.assertEqual(Path(res.output_path).name, "Install-Demo.ps1")
            text = Path(res.output_path).read_text(encoding="utf-8")
            self.assertIn("# <ModuleName> <ModuleVersion>", text)
            self.assertIn("# replaced", text)

    def test_bundles_local_and_remote_required_modules(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import ArtefactRequiredModules, ArtefactSegment, ModuleDependency, ModuleSkipSegment
        from modforge.orchestration.artefacts import ArtefactPackager

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            staging = _staging(tmp)
            installed = tmp / "installed" / "Helper" / "2.1.0"
            installed.mkdir(parents=True)
            (installed / "Helper.psm1").write_text("# helper", encoding="utf-8")
            provider = FakeModuleProvider(tmp / "installed")
            plan = make_plan(
                tmp,
                required_modules_for_packaging=(
                    ModuleDependency(name="Helper"),
                    ModuleDependency(name="Skipped"),
                ),
                module_skip=ModuleSkipSegment(ignore_module_names=("skipped",)),
            )

            local = ArtefactSegment(
                kind="Unpacked",
                path=str(tmp / "local"),
                required_modules=ArtefactRequiredModules(enabled=True, modules_path="Modules"),
            )
            res = ArtefactPackager(provider).build(plan, local, staging, 1)
            self.assertTrue(res.succeeded, res.message)
            self.assertEqual(res.bundled_modules, ("Helper",))
            self.assertTrue((tmp / "local" / "Modules" / "Helper" / "2.1.0" / "Helper.psm1").exists())

            remote = ArtefactSegment(
                kind="Unpacked",
                path=str(tmp / "remote"),
                required_modules=ArtefactRequiredModules(enabled=True, source="Remote", repository="Internal"),
            )
            res = ArtefactPackager(provider).build(plan, remote, staging, 1)
            self.assertTrue(res.succeeded, res.message)
            self.assertEqual(provider.saved, [("Helper", None, "Internal")])

    def test_failures_are_returned_not_raised(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import ArtefactSegment
        from modforge.orchestration.artefacts import ArtefactPackager

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            staging = _staging(tmp)
            plan = make_plan(tmp)

            # Output directory that contains the project root is refused.
            res = ArtefactPackager().build(plan, ArtefactSegment(kind="Packed", path=str(tmp)), staging, 1)
            self.assertEqual(res.status, "Failed")
            self.assertTrue((tmp / "src").exists())

            missing = ArtefactPackager().build(plan, ArtefactSegment(kind="Packed", path=str(tmp / "o")), tmp / "nope", 1)
            self.assertEqual(missing.status, "Failed")


if __name__ == "__main__":
    unittest.main()
