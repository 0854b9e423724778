from __future__ import annotations

import tempfile
import unittest
import xml.etree.ElementTree as ET
from pathlib import Path

from _testutil import ensure_repo_on_path

_GET_THING = """function Get-Thing {
    <#
    .SYNOPSIS
    Gets a thing.
    .DESCRIPTION
    Looks the thing up
    and returns it.
    .PARAMETER Path
    Where to look.
    .EXAMPLE
    Get-Thing -Path C:\\Temp
    #>
    param($Path)
}
"""

_HIDDEN = """<#
.SYNOPSIS
Internal helper.
#>
function Get-Hidden { }
"""


def _staging(root: Path) -> Path:
    staging = root / "staging"
    (staging / "Public").mkdir(parents=True)
    (staging / "Private").mkdir()
    (staging / "Public" / "Get-Thing.ps1").write_text(_GET_THING, encoding="utf-8")
    (staging / "Private" / "Get-Hidden.ps1").write_text(_HIDDEN, encoding="utf-8")
    return staging


class TestMarkdownDocumentationEngine(unittest.TestCase):
    def test_extract_help_from_inner_and_leading_blocks(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.markdown_docs import MarkdownDocumentationEngine

        with tempfile.TemporaryDirectory() as td:
            staging = _staging(Path(td))
            engine = MarkdownDocumentationEngine()

            exported = engine.extract_help(staging, "Demo", ("Get-Thing",))
            self.assertEqual([c.name for c in exported], ["Get-Thing"])
            cmd = exported[0]
            self.assertEqual(cmd.synopsis, "Gets a thing.")
            self.assertEqual(cmd.description, "Looks the thing up\nand returns it.")
            self.assertEqual(cmd.parameters, (("Path", "Where to look."),))
            self.assertEqual(cmd.examples, ("Get-Thing -Path C:\\Temp",))

            everything = engine.extract_help(staging, "Demo", ())
            self.assertEqual([c.name for c in everything], ["Get-Hidden", "Get-Thing"])
            self.assertEqual(everything[0].synopsis, "Internal helper.")

    def test_write_markdown_and_readme(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.markdown_docs import MarkdownDocumentationEngine

        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            engine = MarkdownDocumentationEngine()
            commands = engine.extract_help(_staging(root), "Demo", ("Get-Thing",))
            docs = root / "Docs"
            docs.mkdir()
            (docs / "Old-Command.md").write_text("stale", encoding="utf-8")

            written = engine.write_markdown(commands, docs, docs / "Readme.md", module_name="Demo", start_clean=True)

            self.assertEqual([p.name for p in written], ["Get-Thing.md", "Readme.md"])
            self.assertFalse((docs / "Old-Command.md").exists())
            page = (docs / "Get-Thing.md").read_text(encoding="utf-8")
            self.assertIn("Module Name: Demo", page)
            self.assertIn("### -Path", page)
            self.assertIn("```powershell", page)
            readme = (docs / "Readme.md").read_text(encoding="utf-8")
            self.assertIn("- [Get-Thing](Get-Thing.md) - Gets a thing.", readme)

    def test_external_help_is_maml(self) -> None:
        ensure_repo_on_path()

        from modforge.infra.adapters.markdown_docs import COMMAND_NS, MAML_NS, MarkdownDocumentationEngine

        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            engine = MarkdownDocumentationEngine()
            commands = engine.extract_help(_staging(root), "Demo", ())

            path = engine.write_external_help(commands, root / "staging" / "en-US", module_name="Demo")

            self.assertEqual(path.name, "Demo-help.xml")
            tree = ET.parse(path).getroot()
            self.assertEqual(tree.tag, "helpItems")
            names = [n.text for n in tree.iter(f"{{{COMMAND_NS}}}name")]
            self.assertEqual(names, ["Get-Hidden", "Get-Thing"])
            params = [n.text for n in tree.iter(f"{{{MAML_NS}}}name")]
            self.assertEqual(params, ["Path"])


if __name__ == "__main__":
    unittest.main()
