from __future__ import annotations

import re
import shutil
import uuid
from pathlib import Path
from typing import List, Optional, Sequence, Set, Tuple

from ..infra.contracts import ManifestEditor
from ..infra.errors import NotFoundError, StageError
from ..infra.models import RUN_MARKER_NAME, InstallResult, InstallSpec, RootInstallResult
from ..utils.fs import ensure_dir
from .versioning import parse_version, version_sort_key

TMP_PREFIX = ".tmp_install_"


def is_version_folder(name: str) -> bool:
    return bool(name) and name[0].isdigit()


def resolve_install_version(base_version: str, roots: Sequence[Path], module_name: str, strategy: str) -> str:
    """Exact installs the base version; AutoRevision appends the next free revision.

    AutoRevision returns ``base`` when no ``base``/``base.N`` folder exists in
    any root, else ``base.<max N + 1>``. A base that already has four numeric
    parts has no room for a revision and is installed as-is.
    """
    if strategy != "AutoRevision":
        return base_version
    parsed = parse_version(base_version)
    if parsed is not None and len(parsed.numbers) >= 4:
        return base_version

    rev_re = re.compile(r"^" + re.escape(base_version) + r"\.(\d+)$")
    found = False
    highest = 0
    for root in roots:
        module_root = root / module_name
        if not module_root.is_dir():
            continue
        for child in module_root.iterdir():
            if not child.is_dir():
                continue
            if child.name == base_version:
                found = True
                continue
            m = rev_re.match(child.name)
            if m:
                found = True
                highest = max(highest, int(m.group(1)))
    if not found:
        return base_version
    return f"{base_version}.{highest + 1}"


def plan_prune(folders: Sequence[str], installed: str, keep: int, protected: Set[str]) -> Tuple[List[str], List[str]]:
    """Split version folders into (kept, to_delete).

    The installed folder always counts as kept; protected names (preserved
    versions, a converted legacy folder) are never deleted and do not count.
    """
    keep = max(1, int(keep))
    prot = {p.lower() for p in protected}
    candidates = [f for f in folders if f.lower() not in prot and f != installed]
    candidates.sort(key=version_sort_key, reverse=True)
    kept = [installed] + candidates[: keep - 1]
    return kept, candidates[keep - 1:]


class ModuleInstaller:
    """Place a staged module under each module root using a versioned layout."""

    def __init__(self, manifest_editor: ManifestEditor):
        self.manifest_editor = manifest_editor

    def install(
        self,
        staging_path: Path,
        manifest_relpath: Optional[str],
        module_name: str,
        version: str,
        policy: InstallSpec,
        *,
        fail_on_delete_error: bool = False,
    ) -> InstallResult:
        staging = Path(staging_path)
        if not staging.is_dir():
            raise NotFoundError(f"staging directory not found: {staging}")
        if not policy.roots:
            raise StageError("no install roots configured")

        roots = [Path(r) for r in policy.roots]
        # Converted legacy folders have to exist before a revision is chosen.
        legacy = {root: self._handle_legacy(ensure_dir(root / module_name), module_name, policy) for root in roots}
        install_version = resolve_install_version(version, roots, module_name, policy.strategy)
        keep = 1 if policy.strategy == "Exact" else policy.keep_versions

        results: List[RootInstallResult] = []
        for root in roots:
            results.append(
                self._install_root(staging, manifest_relpath, module_name, install_version, keep, policy, root, legacy[root])
            )

        errors = [f"{r.module_root}: {e}" for r in results for e in r.delete_errors]
        if errors and fail_on_delete_error:
            raise StageError("could not prune old versions:\n" + "\n".join(f"  - {e}" for e in errors))
        return InstallResult(version=install_version, strategy=policy.strategy, roots=tuple(results))

    def _install_root(
        self,
        staging: Path,
        manifest_relpath: Optional[str],
        module_name: str,
        version: str,
        keep: int,
        policy: InstallSpec,
        root: Path,
        legacy: Tuple[bool, str, str],
    ) -> RootInstallResult:
        module_root = root / module_name
        detected, action, legacy_version = legacy
        protected: Set[str] = set(policy.preserve_versions)
        if legacy_version:
            protected.add(legacy_version)

        installed = self._copy_version(staging, manifest_relpath, module_name, version, module_root, policy, protected)

        folders = [c.name for c in module_root.iterdir() if c.is_dir() and is_version_folder(c.name)]
        _, to_delete = plan_prune(folders, version, keep, protected)
        pruned: List[str] = []
        errors: List[str] = []
        for name in to_delete:
            try:
                shutil.rmtree(module_root / name)
                pruned.append(name)
            except OSError as e:
                print(f"[install][WARN] could not delete {module_root / name}: {e}")
                errors.append(f"{name}: {e}")

        preserved = sorted(f for f in folders if f.lower() in {p.lower() for p in protected} and f != version)
        print(f"[install][OK] {module_name} {version} -> {installed} (pruned {len(pruned)})")
        return RootInstallResult(
            root=str(root),
            module_root=str(module_root),
            installed_path=str(installed),
            pruned=tuple(sorted(pruned, key=version_sort_key, reverse=True)),
            preserved=tuple(preserved),
            legacy_flat_detected=detected,
            legacy_flat_action=action,
            legacy_version=legacy_version,
            delete_errors=tuple(errors),
        )

    def _handle_legacy(self, module_root: Path, module_name: str, policy: InstallSpec) -> Tuple[bool, str, str]:
        """Apply the legacy flat handling; returns (detected, action, converted version)."""
        entries = self._legacy_entries(module_root)
        if not entries:
            return False, "None", ""
        if policy.legacy_flat_handling == "Convert":
            legacy_version = self._convert_legacy(module_root, module_name, entries)
            print(f"[install] converted legacy flat install in {module_root} to {legacy_version}")
            return True, "Converted", legacy_version
        if policy.legacy_flat_handling == "Ignore":
            return True, "Ignored", ""
        print(f"[install][WARN] legacy flat install found in {module_root}; installing alongside it")
        return True, "Warned", ""

    @staticmethod
    def _legacy_entries(module_root: Path) -> List[Path]:
        """Entries of a flat install: anything at the top level that is not a version folder.

        Only counts as legacy when at least one plain file sits directly in the module root.
        """
        entries = [c for c in module_root.iterdir() if not c.name.startswith(TMP_PREFIX) and not (c.is_dir() and is_version_folder(c.name))]
        if not any(c.is_file() for c in entries):
            return []
        return sorted(entries, key=lambda p: p.name)

    def _convert_legacy(self, module_root: Path, module_name: str, entries: List[Path]) -> str:
        legacy_version = "0.0.0"
        manifest = self.manifest_editor.manifest_path(module_root, module_name)
        if manifest.exists():
            meta = self.manifest_editor.read_metadata(manifest)
            if meta.version and parse_version(meta.version) is not None:
                legacy_version = meta.version
        target = ensure_dir(module_root / legacy_version)
        for entry in entries:
            shutil.move(str(entry), str(target / entry.name))
        return legacy_version

    def _copy_version(
        self,
        staging: Path,
        manifest_relpath: Optional[str],
        module_name: str,
        version: str,
        module_root: Path,
        policy: InstallSpec,
        protected: Set[str],
    ) -> Path:
        tmp = module_root / f"{TMP_PREFIX}{uuid.uuid4().hex[:12]}"
        target = module_root / version
        if target.exists() and version.lower() in {p.lower() for p in protected}:
            raise StageError(f"refusing to replace protected version folder {target}")
        try:
            shutil.copytree(staging, tmp, ignore=shutil.ignore_patterns(RUN_MARKER_NAME))
            if policy.update_manifest_to_resolved_version:
                if manifest_relpath:
                    manifest = tmp / manifest_relpath
                else:
                    manifest = self.manifest_editor.manifest_path(tmp, module_name)
                self.manifest_editor.write_metadata(manifest, {"version": version})
            if target.exists():
                shutil.rmtree(target)
            tmp.rename(target)
        finally:
            if tmp.exists():
                shutil.rmtree(tmp)
        return target
