from __future__ import annotations

import json
import tempfile
import threading
import unittest
from pathlib import Path

from _testutil import ensure_repo_on_path, make_plan


def _project(root: Path, extra: str = "") -> None:
    src = root / "src"
    (src / "Public").mkdir(parents=True)
    (src / "Demo.psm1").write_text("# root module\n", encoding="utf-8")
    (src / "Public" / "Get-Thing.ps1").write_text(
        "function Get-Thing {\n    Get-ChildItem\n" + extra + "}\n",
        encoding="utf-8",
    )


def _context(**overrides):
    from modforge.infra.adapters.manifest_yaml import YamlManifestEditor
    from modforge.infra.adapters.staging_local import LocalStagingBuilder
    from modforge.infra.context import PipelineContext

    editor = YamlManifestEditor()
    fields = dict(manifest_editor=editor, staging_builder=LocalStagingBuilder(editor), max_workers=1)
    fields.update(overrides)
    return PipelineContext(**fields)


def _statuses(result):
    return [(s.key, s.status) for s in result.steps]


class TestPipelineRunner(unittest.TestCase):
    def test_minimal_run_patches_manifest_and_releases_marker(self) -> None:
        ensure_repo_on_path()

        from modforge.orchestration.runner import PipelineRunner

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            _project(tmp)
            plan = make_plan(tmp)

            result = PipelineRunner(_context(), clock=lambda: "2026-01-01T00:00:00Z").run(plan)

            self.assertEqual(result.status, "SUCCEEDED")
            self.assertEqual(
                _statuses(result),
                [("build:stage", "COMPLETED"), ("build:build", "COMPLETED"), ("build:manifest", "COMPLETED")],
            )
            self.assertEqual(result.steps[0].started_at, "2026-01-01T00:00:00Z")
            staging = tmp / "staging"
            self.assertFalse((staging / ".modforge-run.lock").exists())
            from modforge.infra.adapters.manifest_yaml import YamlManifestEditor

            meta = YamlManifestEditor().read_metadata(staging / "module.yml")
            self.assertEqual(meta.version, "1.2.3")
            self.assertEqual(meta.functions_to_export, ("Get-Thing",))
            self.assertEqual(result.build.export_set, ("Get-Thing",))

    def test_existing_marker_is_a_conflict(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import InstallSpec
        from modforge.orchestration.runner import PipelineRunner

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            _project(tmp)
            staging = tmp / "staging"
            staging.mkdir()
            (staging / ".modforge-run.lock").write_text(json.dumps({"run_key": "other"}), encoding="utf-8")
            plan = make_plan(tmp, install=InstallSpec(roots=(str(tmp / "Modules"),)))

            result = PipelineRunner(_context()).run(plan)

            self.assertEqual(result.status, "FAILED")
            self.assertEqual(result.error_type, "ConflictError")
            self.assertEqual(
                _statuses(result),
                [
                    ("build:stage", "FAILED"),
                    ("build:build", "SKIPPED"),
                    ("build:manifest", "SKIPPED"),
                    ("install", "SKIPPED"),
                ],
            )
            # The other run's marker is left alone.
            self.assertTrue((staging / ".modforge-run.lock").exists())
            self.assertFalse((tmp / "Modules").exists())

    def test_cancel_before_start_cancels_every_step(self) -> None:
        ensure_repo_on_path()

        from modforge.orchestration.runner import PipelineRunner

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            _project(tmp)
            event = threading.Event()
            event.set()

            result = PipelineRunner(_context(cancel_event=event)).run(make_plan(tmp))

            self.assertEqual(result.status, "CANCELLED")
            self.assertEqual({s.status for s in result.steps}, {"CANCELLED"})
            self.assertFalse((tmp / "staging").exists())

    def test_missing_commands_warn_or_fail(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import ModuleSkipSegment
        from modforge.orchestration.runner import PipelineRunner

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            _project(tmp, extra="    Invoke-Nowhere\n")

            warned = PipelineRunner(_context()).run(make_plan(tmp))
            self.assertEqual(warned.status, "SUCCEEDED")
            self.assertEqual(warned.step("build:build").status, "WARNING")
            self.assertEqual(warned.build.missing_commands, ("Invoke-Nowhere",))

            strict = make_plan(tmp, module_skip=ModuleSkipSegment(fail_on_missing_commands=True))
            failed = PipelineRunner(_context()).run(strict)
            self.assertEqual(failed.status, "FAILED")
            self.assertEqual(failed.step("build:build").status, "FAILED")
            self.assertIn("Invoke-Nowhere", failed.error)

            forced = make_plan(tmp, module_skip=ModuleSkipSegment(fail_on_missing_commands=True, force=True))
            self.assertEqual(PipelineRunner(_context()).run(forced).status, "SUCCEEDED")

    def test_publish_failure_is_partial_unless_fail_fast(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import PublishSegment
        from modforge.orchestration.runner import PipelineRunner

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            _project(tmp)

            # PSGallery without an API key fails before any feed call.
            plan = make_plan(tmp, publishes=(PublishSegment(destination="Repository"),), delete_staging_after_run=True)
            result = PipelineRunner(_context()).run(plan)
            self.assertEqual(result.status, "PARTIAL")
            self.assertEqual(result.step("publish:01:Repository").status, "FAILED")
            self.assertEqual(result.step("cleanup").status, "SKIPPED")
            self.assertTrue((tmp / "staging").exists())
            self.assertEqual(result.publishes[0].status, "Failed")

            fast = make_plan(
                tmp,
                publishes=(PublishSegment(destination="Repository", fail_fast=True),),
                delete_staging_after_run=True,
            )
            result = PipelineRunner(_context()).run(fast)
            self.assertEqual(result.status, "FAILED")
            self.assertEqual(result.error_type, "StageError")
            self.assertEqual(result.step("cleanup").status, "SKIPPED")
            self.assertIn("failFast", result.step("publish:01:Repository").message)

    def test_install_and_cleanup(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.models import InstallSpec
        from modforge.orchestration.runner import PipelineRunner

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            _project(tmp)
            modules = tmp / "Modules"
            plan = make_plan(
                tmp,
                install=InstallSpec(strategy="Exact", roots=(str(modules),)),
                delete_staging_after_run=True,
            )

            result = PipelineRunner(_context()).run(plan)

            self.assertEqual(result.status, "SUCCEEDED", result.error)
            self.assertEqual([s.key for s in result.steps][-2:], ["install", "cleanup"])
            installed = modules / "Demo" / "1.2.3"
            self.assertTrue((installed / "Public" / "Get-Thing.ps1").exists())
            self.assertFalse((installed / ".modforge-run.lock").exists())
            self.assertFalse((tmp / "staging").exists())
            self.assertEqual(result.install.version, "1.2.3")

    def test_steps_without_configuration_raise_stage_error(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.errors import StageError
        from modforge.infra.models import PipelineStep
        from modforge.orchestration.runner import PipelineRunner, _RunState

        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            state = _RunState(plan=make_plan(tmp), staging=tmp / "staging", result=None)
            runner = PipelineRunner(_context())
            steps = (
                PipelineStep(kind="Signing", key="sign", title="Sign"),
                PipelineStep(kind="Tests", key="tests:run:01", title="Tests"),
                PipelineStep(kind="Artefact", key="artefact:01:Packed", title="Artefact"),
                PipelineStep(kind="Publish", key="publish:01:Repository", title="Publish"),
            )
            for step in steps:
                with self.assertRaises(StageError, msg=step.key):
                    runner._execute(step, state)


if __name__ == "__main__":
    unittest.main()
