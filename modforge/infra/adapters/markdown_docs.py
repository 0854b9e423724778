from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ...utils.fs import atomic_write_text, ensure_dir
from ..models import HelpCommand

_FUNCTION_BLOCK_RE = re.compile(r"function\s+([A-Za-z][\w-]*)\s*\{", re.IGNORECASE)
_HELP_BLOCK_RE = re.compile(r"<#(.*?)#>", re.DOTALL)
_KEYWORD_RE = re.compile(r"^\s*\.([A-Z]+)(?:[ \t]+(\S+))?\s*$", re.MULTILINE)

MAML_NS = "http://schemas.microsoft.com/maml/2004/10"
COMMAND_NS = "http://schemas.microsoft.com/maml/dev/command/2004/10"


def _dedent(text: str) -> str:
    lines = [ln.rstrip() for ln in text.strip("\r\n").splitlines()]
    indents = [len(ln) - len(ln.lstrip()) for ln in lines if ln.strip()]
    cut = min(indents) if indents else 0
    return "\n".join(ln[cut:] for ln in lines).strip()


def parse_comment_help(name: str, block: str) -> HelpCommand:
    sections: List[Tuple[str, Optional[str], str]] = []
    matches = list(_KEYWORD_RE.finditer(block))
    for i, m in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(block)
        sections.append((m.group(1).upper(), m.group(2), _dedent(block[m.end():end])))

    synopsis = ""
    description = ""
    params: List[Tuple[str, str]] = []
    examples: List[str] = []
    for keyword, arg, body in sections:
        if keyword == "SYNOPSIS":
            synopsis = body
        elif keyword == "DESCRIPTION":
            description = body
        elif keyword == "PARAMETER" and arg:
            params.append((arg, body))
        elif keyword == "EXAMPLE":
            examples.append(body)
    return HelpCommand(name=name, synopsis=synopsis, description=description, parameters=tuple(params), examples=tuple(examples))


def _help_for_function(text: str, match: re.Match) -> str:
    # Comment help is either just before the function or the first block inside it.
    before = text[: match.start()].rstrip()
    if before.endswith("#>"):
        start = before.rfind("<#")
        if start >= 0:
            return before[start + 2: -2]
    inner = _HELP_BLOCK_RE.match(text[match.end():].lstrip())
    return inner.group(1) if inner else ""


class MarkdownDocumentationEngine:
    """Comment-based help to markdown pages and a MAML external help file."""

    def extract_help(self, staging_path: Path, module_name: str, export_set: Tuple[str, ...]) -> List[HelpCommand]:
        wanted = {n.lower() for n in export_set}
        found: Dict[str, HelpCommand] = {}
        for path in sorted(Path(staging_path).rglob("*.ps*1")):
            if path.suffix.lower() not in (".ps1", ".psm1"):
                continue
            text = path.read_text(encoding="utf-8-sig")
            for m in _FUNCTION_BLOCK_RE.finditer(text):
                name = m.group(1)
                if wanted and name.lower() not in wanted:
                    continue
                if name.lower() in found:
                    continue
                found[name.lower()] = parse_comment_help(name, _help_for_function(text, m))
        return [found[k] for k in sorted(found)]

    def write_markdown(
        self,
        commands: List[HelpCommand],
        docs_path: Path,
        readme_path: Path,
        *,
        module_name: str,
        start_clean: bool = False,
    ) -> List[Path]:
        ensure_dir(docs_path)
        if start_clean:
            for old in docs_path.glob("*.md"):
                if old.resolve() != readme_path.resolve():
                    old.unlink()

        written: List[Path] = []
        for cmd in commands:
            page = docs_path / f"{cmd.name}.md"
            atomic_write_text(page, self._render_command(cmd, module_name))
            written.append(page)

        lines = [f"# {module_name}", "", "## Commands", ""]
        for cmd in commands:
            rel = Path(f"{cmd.name}.md")
            try:
                rel = (docs_path / rel).relative_to(readme_path.parent)
            except ValueError:
                pass
            summary = f" - {cmd.synopsis.splitlines()[0]}" if cmd.synopsis else ""
            lines.append(f"- [{cmd.name}]({rel.as_posix()}){summary}")
        atomic_write_text(readme_path, "\n".join(lines) + "\n")
        written.append(readme_path)
        return written

    @staticmethod
    def _render_command(cmd: HelpCommand, module_name: str) -> str:
        out = ["---", f"Module Name: {module_name}", "---", "", f"# {cmd.name}", ""]
        out += ["## SYNOPSIS", cmd.synopsis or "{{ Fill in the Synopsis }}", ""]
        if cmd.description:
            out += ["## DESCRIPTION", cmd.description, ""]
        if cmd.examples:
            out += ["## EXAMPLES", ""]
            for i, ex in enumerate(cmd.examples, start=1):
                out += [f"### EXAMPLE {i}", "```powershell", ex, "```", ""]
        if cmd.parameters:
            out += ["## PARAMETERS", ""]
            for pname, pdesc in cmd.parameters:
                out += [f"### -{pname}", pdesc, ""]
        return "\n".join(out).rstrip() + "\n"

    def write_external_help(self, commands: List[HelpCommand], output_dir: Path, *, module_name: str) -> Path:
        ET.register_namespace("maml", MAML_NS)
        ET.register_namespace("command", COMMAND_NS)
        root = ET.Element("helpItems", {"schema": "maml"})
        for cmd in commands:
            node = ET.SubElement(root, f"{{{COMMAND_NS}}}command")
            details = ET.SubElement(node, f"{{{COMMAND_NS}}}details")
            ET.SubElement(details, f"{{{COMMAND_NS}}}name").text = cmd.name
            desc = ET.SubElement(details, f"{{{MAML_NS}}}description")
            ET.SubElement(desc, f"{{{MAML_NS}}}para").text = cmd.synopsis
            body = ET.SubElement(node, f"{{{MAML_NS}}}description")
            ET.SubElement(body, f"{{{MAML_NS}}}para").text = cmd.description
            params = ET.SubElement(node, f"{{{COMMAND_NS}}}parameters")
            for pname, pdesc in cmd.parameters:
                p = ET.SubElement(params, f"{{{COMMAND_NS}}}parameter")
                ET.SubElement(p, f"{{{MAML_NS}}}name").text = pname
                pd = ET.SubElement(p, f"{{{MAML_NS}}}description")
                ET.SubElement(pd, f"{{{MAML_NS}}}para").text = pdesc

        path = ensure_dir(output_dir) / f"{module_name}-help.xml"
        data = ET.tostring(root, encoding="unicode")
        atomic_write_text(path, '<?xml version="1.0" encoding="utf-8"?>\n' + data + "\n")
        return path
