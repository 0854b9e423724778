from __future__ import annotations

import sys
import threading
import unittest
from pathlib import Path

from _testutil import ensure_repo_on_path


class FakeSession:
    """Records scripts and answers with canned output."""

    def __init__(self, *outputs: str):
        self.outputs = list(outputs)
        self.calls = []

    def invoke(self, script, *, timeout=None, cancel_event=None, env=None):
        self.calls.append((script, dict(env or {})))
        return self.outputs.pop(0) if self.outputs else ""


class TestRunTool(unittest.TestCase):
    def test_success_and_non_zero_exit(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.tool_runner import run_tool
        from modforge.infra.errors import ToolError

        cp = run_tool([sys.executable, "-c", "import os; print(os.environ['DEMO_VALUE'])"], timeout=30, extra_env={"DEMO_VALUE": "hi"})
        self.assertEqual(cp.stdout.strip(), "hi")

        with self.assertRaises(ToolError) as ctx:
            run_tool([sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"], timeout=30)
        self.assertEqual(ctx.exception.returncode, 3)
        self.assertEqual(ctx.exception.output, "boom")

        cp = run_tool([sys.executable, "-c", "import sys; sys.exit(2)"], timeout=30, check=False)
        self.assertEqual(cp.returncode, 2)

    def test_missing_timeout_and_cancel(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.tool_runner import run_tool
        from modforge.infra.errors import PipelineCancelled, ToolNotAvailableError, ToolTimeoutError

        with self.assertRaises(ToolNotAvailableError):
            run_tool(["modforge-no-such-tool-xyz"], timeout=5)

        sleeper = [sys.executable, "-c", "import time; time.sleep(30)"]
        with self.assertRaises(ToolTimeoutError):
            run_tool(sleeper, timeout=0.5)

        event = threading.Event()
        event.set()
        with self.assertRaises(PipelineCancelled):
            run_tool(sleeper, timeout=30, cancel_event=event)


class TestPwshAdapters(unittest.TestCase):
    def test_ps_quote_escapes_single_quotes(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.pwsh import ps_quote

        self.assertEqual(ps_quote("it's"), "'it''s'")
        self.assertEqual(ps_quote("C:\\x y"), "'C:\\x y'")

    def test_pester_summary_parsing(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.pwsh import PesterTestRunner
        from modforge.infra.errors import ToolError

        session = FakeSession("Starting discovery\n12|10|1|1", "garbage")
        runner = PesterTestRunner(session)

        report = runner.run_tests(Path("/stage/Demo"), Path("/proj/Tests"))
        self.assertEqual((report.total, report.passed, report.failed, report.skipped), (12, 10, 1, 1))
        self.assertIn("Invoke-Pester -Path '/proj/Tests'", session.calls[0][0])

        with self.assertRaises(ToolError):
            runner.run_tests(Path("/stage/Demo"), Path("/proj/Tests"))

    def test_secrets_travel_in_the_environment(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.pwsh import PwshFeedClient
        from modforge.infra.models import RepositoryCredential, Secret

        session = FakeSession()
        PwshFeedClient(session).publish(
            Path("/stage/Demo"),
            repository_name="Internal",
            api_key="k3y",
            credential=RepositoryCredential("ci", Secret("pw")),
            tool="PSResourceGet",
        )
        script, env = session.calls[0]
        self.assertIn("Publish-PSResource -Path '/stage/Demo' -Repository 'Internal'", script)
        self.assertNotIn("k3y", script)
        self.assertNotIn("pw'", script)
        self.assertEqual(env["MODFORGE_API_KEY"], "k3y")
        self.assertEqual(env["MODFORGE_CRED_SECRET"], "pw")

    def test_feed_version_and_signature_status(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.pwsh import PwshFeedClient, PwshSignatureTool
        from modforge.infra.models import CertificateRef

        feed = PwshFeedClient(FakeSession("WARNING: noise\n2.1.0-beta1", ""))
        self.assertEqual(feed.find_latest_version("Demo", prerelease=True), "2.1.0-beta1")
        self.assertIsNone(feed.find_latest_version("Demo"))

        cert = CertificateRef(thumbprint="ab12")
        tool = PwshSignatureTool(FakeSession("Valid|AB12", "Valid|FFFF", "NotSigned|", "Valid"))
        self.assertEqual(tool.query_signature_status(Path("a.ps1"), cert), "SignedByThisCertificate")
        self.assertEqual(tool.query_signature_status(Path("a.ps1"), cert), "SignedByOtherCertificate")
        self.assertEqual(tool.query_signature_status(Path("a.ps1"), cert), "NotSigned")
        self.assertEqual(tool.sign(Path("a.ps1"), cert, "http://ts.example.invalid"), "Success")


if __name__ == "__main__":
    unittest.main()
