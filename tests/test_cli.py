from __future__ import annotations

import contextlib
import io
import json
import tempfile
import unittest
from pathlib import Path

import yaml

from _testutil import ensure_repo_on_path


def _write_plan(root: Path, **extra) -> Path:
    (root / "src").mkdir()
    doc = {
        "schemaVersion": 1,
        "build": {"moduleName": "Demo", "sourceRoot": "src", "versionExpression": "1.2.3", "stagingRoot": "staging"},
        "install": {"enabled": False},
        "segments": [{"type": "Artefact", "configuration": {"kind": "Packed", "id": "zip"}}],
    }
    doc.update(extra)
    path = root / "modforge.yml"
    path.write_text(yaml.safe_dump(doc, sort_keys=False), encoding="utf-8")
    return path


def _run(argv):
    from modforge.cli import main

    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        code = main(argv)
    return code, buf.getvalue()


class TestCli(unittest.TestCase):
    def test_schema_to_file(self) -> None:
        ensure_repo_on_path()

        with tempfile.TemporaryDirectory() as td:
            out = Path(td) / "schema.json"
            code, _ = _run(["schema", "--output", str(out)])
            self.assertEqual(code, 0)
            schema = json.loads(out.read_text(encoding="utf-8"))
            self.assertEqual(schema["required"], ["schemaVersion", "build"])

    def test_steps_lists_keys_in_order(self) -> None:
        ensure_repo_on_path()

        with tempfile.TemporaryDirectory() as td:
            plan = _write_plan(Path(td))
            out = Path(td) / "steps.json"
            code, _ = _run(["steps", "--plan", str(plan), "--output", str(out)])
            self.assertEqual(code, 0)
            payload = json.loads(out.read_text(encoding="utf-8"))
            self.assertEqual(
                [s["key"] for s in payload["steps"]],
                ["build:stage", "build:build", "build:manifest", "artefact:01:Packed:zip"],
            )
            self.assertTrue(payload["run_key"].startswith("run_"))

    def test_configuration_errors_exit_2(self) -> None:
        ensure_repo_on_path()

        with tempfile.TemporaryDirectory() as td:
            code, text = _run(["plan", "--plan", str(Path(td) / "missing.yml")])
            self.assertEqual(code, 2)
            self.assertIn("[cli][FAILED]", text)

            bad = Path(td) / "bad.yml"
            bad.write_text(yaml.safe_dump({"schemaVersion": 1, "build": {"moduleName": "Demo", "sourceRoot": "nope"}}), encoding="utf-8")
            code, text = _run(["plan", "--plan", str(bad)])
            self.assertEqual(code, 2)
            self.assertIn("build.sourceRoot does not exist", text)


class TestFactory(unittest.TestCase):
    def test_build_context_wires_every_boundary(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.factory import build_context, describe_context

        with tempfile.TemporaryDirectory() as td:
            env = {
                "MODFORGE_MAX_WORKERS": "3",
                "MODFORGE_TOOL_TIMEOUT": "not-a-number",
                "MODFORGE_INSTALL_ROOTS": td,
                "MODFORGE_VERBOSE": "yes",
            }
            context = build_context(env)
            desc = describe_context(context)

            self.assertEqual(context.max_workers, 3)
            self.assertEqual(context.dependency_timeout, 300.0)
            self.assertEqual(context.default_install_roots, (td,))
            self.assertTrue(context.verbose)
            self.assertEqual(desc["adapters"]["staging_builder"], "LocalStagingBuilder")
            self.assertEqual(desc["adapters"]["release_client"], "GitHubReleaseClient")
            self.assertNotIn("", desc["adapters"].values())


if __name__ == "__main__":
    unittest.main()
