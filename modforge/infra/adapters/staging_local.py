from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ...utils.fs import copytree_merge, ensure_dir
from ..contracts import ManifestEditor
from ..errors import NotFoundError
from ..models import RUN_MARKER_NAME, BuildRequest, StagingResult

# Folders whose scripts are concatenated into the root module when merging.
MERGE_FOLDERS: Tuple[str, ...] = ("Enums", "Classes", "Private", "Public")

_FUNCTION_RE = re.compile(r"^\s*function\s+([A-Za-z][\w-]*)", re.IGNORECASE | re.MULTILINE)

# Approved PowerShell verbs; a token only counts as a command when its verb is one of these.
_VERBS = frozenset(
    v.lower()
    for v in (
        "Add Approve Assert Backup Block Build Checkpoint Clear Close Compare Complete Compress Confirm "
        "Connect Convert ConvertFrom ConvertTo Copy Debug Deny Deploy Disable Disconnect Dismount Edit "
        "Enable Enter Exit Expand Export Find Format Get Grant Group Hide Import Initialize Install Invoke "
        "Join Limit Lock Measure Merge Mount Move New Open Optimize Out Ping Pop Protect Publish Push Read "
        "Receive Redo Register Remove Rename Repair Request Reset Resize Resolve Restart Restore Resume "
        "Revoke Save Search Select Send Set Show Skip Split Start Step Stop Submit Suspend Switch Sync "
        "Test Trace Unblock Undo Uninstall Unlock Unprotect Unpublish Unregister Update Use Wait Watch Write"
    ).split()
)

# Commands shipped with PowerShell itself (Core, Utility, Management, Security).
BUILTIN_COMMANDS = frozenset(
    c.lower()
    for c in (
        "Add-Content Add-Member Add-Type Clear-Content Clear-Host Clear-Item Clear-Variable Compare-Object "
        "ConvertFrom-Csv ConvertFrom-Json ConvertFrom-StringData ConvertTo-Csv ConvertTo-Html ConvertTo-Json "
        "ConvertTo-SecureString ConvertFrom-SecureString Copy-Item Export-Clixml Export-Csv "
        "Export-ModuleMember ForEach-Object Format-List Format-Table Get-Acl Get-AuthenticodeSignature "
        "Get-ChildItem Get-Command Get-Content Get-Credential Get-Date Get-FileHash Get-Help Get-Host "
        "Get-Item Get-ItemProperty Get-Location Get-Member Get-Module Get-PSCallStack Get-Process "
        "Get-Random Get-Service Get-Variable Group-Object Import-Clixml Import-Csv Import-Module "
        "Invoke-Command Invoke-Expression Invoke-RestMethod Invoke-WebRequest Join-Path Measure-Object "
        "Move-Item New-Item New-Object New-TimeSpan New-Variable Out-File Out-Null Out-String Pop-Location "
        "Push-Location Read-Host Remove-Item Remove-Module Remove-Variable Rename-Item Resolve-Path "
        "Select-Object Select-String Select-Xml Set-Acl Set-AuthenticodeSignature Set-Content Set-Item "
        "Set-ItemProperty Set-Location Set-StrictMode Set-Variable Sort-Object Split-Path Start-Process "
        "Start-Sleep Stop-Process Tee-Object Test-Path Wait-Process Where-Object Write-Debug Write-Error "
        "Write-Host Write-Information Write-Output Write-Progress Write-Verbose Write-Warning"
    ).split()
)

_COMMAND_RE = re.compile(r"(?<![\w$.\-\\/:\[])([A-Za-z]+-[A-Za-z][A-Za-z0-9]*)\b")
_BLOCK_COMMENT_RE = re.compile(r"<#.*?#>", re.DOTALL)
_LINE_COMMENT_RE = re.compile(r"(?m)(^|\s)#.*$")


def _scripts(folder: Path, patterns: Iterable[str] = ("*.ps1",)) -> List[Path]:
    if not folder.is_dir():
        return []
    found = {p for pattern in patterns for p in folder.rglob(pattern) if p.is_file()}
    return sorted(found, key=lambda p: p.relative_to(folder).as_posix().lower())


def _read(path: Path) -> str:
    return path.read_text(encoding="utf-8-sig")


def strip_comments(text: str) -> str:
    return _LINE_COMMENT_RE.sub(r"\1", _BLOCK_COMMENT_RE.sub("", text))


def referenced_commands(text: str) -> Set[str]:
    """Verb-Noun command names used in a script body, comments ignored."""
    out: Set[str] = set()
    for token in _COMMAND_RE.findall(strip_comments(text)):
        if token.split("-", 1)[0].lower() in _VERBS:
            out.add(token)
    return out


def defined_functions(text: str) -> Set[str]:
    return set(_FUNCTION_RE.findall(text))


def extract_function(text: str, name: str) -> Optional[str]:
    """Return the full ``function name { ... }`` block, or None when absent."""
    pattern = re.compile(r"^[ \t]*function\s+" + re.escape(name) + r"\b", re.IGNORECASE | re.MULTILINE)
    m = pattern.search(text)
    if not m:
        return None
    open_at = text.find("{", m.end())
    if open_at < 0:
        return None
    depth = 0
    for i in range(open_at, len(text)):
        ch = text[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[m.start() : i + 1].strip()
    return None


class LocalStagingBuilder:
    """Copy the project into staging and optionally merge it into one script module.

    - exports are the function names defined in ``Public/*.ps1`` (or, without a
      Public folder, every function in the root module) minus ignored names;
    - with ``merge`` the scripts in Enums/Classes/Private/Public are appended to
      ``<ModuleName>.psm1`` in that order and the folders are removed;
    - placeholders are substituted in the root module;
    - commands the staged scripts call but nothing defines are reported as
      missing. With ``merge_missing`` they are first looked up in the helper
      roots and inlined into the root module.
    """

    def __init__(self, manifest_editor: ManifestEditor):
        self.manifest_editor = manifest_editor

    def build_to_staging(self, request: BuildRequest) -> StagingResult:
        source = Path(request.source_root)
        staging = ensure_dir(Path(request.staging_path))
        if not source.is_dir():
            raise NotFoundError(f"source root not found: {source}")

        ignore_dirs = list(request.exclude_directories)
        if staging.resolve().is_relative_to(source.resolve()):
            ignore_dirs.append(staging.name)

        manifest = self.manifest_editor.manifest_path(staging, request.module_name)
        if request.refresh_manifest_only:
            src_manifest = self.manifest_editor.manifest_path(source, request.module_name)
            if not src_manifest.exists():
                raise NotFoundError(f"manifest not found: {src_manifest}")
            shutil.copy2(src_manifest, manifest)
            exports = self.manifest_editor.read_metadata(manifest).functions_to_export
            return StagingResult(staging_path=str(staging), manifest_path=str(manifest), export_set=tuple(exports))

        copytree_merge(source, staging, ignore_dirs=ignore_dirs, ignore_files=list(request.exclude_files) + [RUN_MARKER_NAME])

        root_module = staging / f"{request.module_name}.psm1"
        exports = self._exports(staging, root_module, request)

        if request.merge:
            self._merge(staging, root_module)
        if root_module.exists() and request.placeholders:
            text = _read(root_module)
            for ph in request.placeholders:
                text = text.replace(ph.find, ph.replace)
            root_module.write_text(text, encoding="utf-8")

        missing = self._missing_commands(staging, root_module, request)

        if not manifest.exists():
            self.manifest_editor.write_metadata(manifest, {"name": request.module_name})

        return StagingResult(
            staging_path=str(staging),
            manifest_path=str(manifest),
            export_set=exports,
            missing_commands=missing,
        )

    @staticmethod
    def _exports(staging: Path, root_module: Path, request: BuildRequest) -> Tuple[str, ...]:
        names: List[str] = []
        public = staging / "Public"
        if public.is_dir():
            for script in _scripts(public):
                names.extend(_FUNCTION_RE.findall(_read(script)))
        elif root_module.exists():
            names.extend(_FUNCTION_RE.findall(_read(root_module)))
        ignored = {n.lower() for n in request.ignore_function_names}
        seen = set()
        out: List[str] = []
        for n in names:
            if n.lower() in ignored or n.lower() in seen:
                continue
            seen.add(n.lower())
            out.append(n)
        return tuple(sorted(out, key=str.lower))

    @staticmethod
    def _merge(staging: Path, root_module: Path) -> None:
        chunks: List[str] = []
        if root_module.exists():
            chunks.append(_read(root_module).rstrip())
        for folder in MERGE_FOLDERS:
            for script in _scripts(staging / folder):
                chunks.append(_read(script).rstrip())
        root_module.write_text("\n\n".join(c for c in chunks if c) + "\n", encoding="utf-8")
        for folder in MERGE_FOLDERS:
            target = staging / folder
            if target.is_dir():
                shutil.rmtree(target)

    def _missing_commands(self, staging: Path, root_module: Path, request: BuildRequest) -> Tuple[str, ...]:
        known: Set[str] = set(BUILTIN_COMMANDS)
        known.update(n.lower() for n in request.known_commands)
        known.update(n.lower() for n in request.ignore_function_names)

        referenced: Dict[str, str] = {}
        for script in _scripts(staging, ("*.ps1", "*.psm1")):
            text = _read(script)
            known.update(n.lower() for n in defined_functions(text))
            for name in referenced_commands(text):
                referenced.setdefault(name.lower(), name)
        missing = {k: v for k, v in referenced.items() if k not in known}

        if missing and request.merge_missing and request.helper_roots and root_module.exists():
            helpers = self._helper_index(request.helper_roots)
            inlined: List[str] = []
            pending = sorted(missing)
            while pending:
                key = pending.pop(0)
                block = helpers.get(key)
                if block is None or key in known:
                    continue
                known.add(key)
                inlined.append(block)
                for name in sorted(referenced_commands(block)):
                    if name.lower() not in known and name.lower() not in missing:
                        missing[name.lower()] = name
                        pending.append(name.lower())
            if inlined:
                text = _read(root_module).rstrip()
                root_module.write_text(text + "\n\n" + "\n\n".join(inlined) + "\n", encoding="utf-8")
                print(f"[build] inlined {len(inlined)} helper function(s) into {root_module.name}")
            missing = {k: v for k, v in missing.items() if k not in known}

        return tuple(sorted(missing.values(), key=str.lower))

    @staticmethod
    def _helper_index(roots: Iterable[str]) -> Dict[str, str]:
        """Map lower-cased function name to its source block across helper module folders."""
        index: Dict[str, str] = {}
        for root in roots:
            for script in _scripts(Path(root), ("*.ps1", "*.psm1")):
                text = _read(script)
                for name in sorted(defined_functions(text)):
                    if name.lower() in index:
                        continue
                    block = extract_function(text, name)
                    if block:
                        index[name.lower()] = block
        return index
