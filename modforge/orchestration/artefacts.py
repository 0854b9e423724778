from __future__ import annotations

import shutil
import tempfile
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from ..artifacts.packaging import ZipEntry, create_zip, entries_for_tree
from ..infra.contracts import ModuleProvider
from ..infra.errors import NotConfiguredError, NotFoundError, PipelineCancelled
from ..infra.models import (
    PACKED_ARTEFACT_KINDS,
    RUN_MARKER_NAME,
    ArtefactResult,
    ArtefactSegment,
    CopyMapping,
    ModuleDependency,
    Plan,
)
from ..utils.fs import clear_dir, copytree_merge, ensure_dir, iter_files
from ..utils.tokens import replace_path_tokens
from .dependencies import version_argument


def _resolve_under(base: Path, value: str) -> Path:
    p = Path(value).expanduser()
    return p if p.is_absolute() else base / p


def output_dir_for(plan: Plan, artefact: ArtefactSegment) -> Path:
    raw = artefact.path or f"Artefacts/{artefact.kind}"
    text = replace_path_tokens(raw, plan.module_name, plan.resolved_version, plan.prerelease)
    return _resolve_under(Path(plan.project_root), text)


def archive_name_for(plan: Plan, artefact: ArtefactSegment) -> str:
    if artefact.artefact_name:
        name = replace_path_tokens(artefact.artefact_name, plan.module_name, plan.resolved_version, plan.prerelease)
        return name if name.lower().endswith(".zip") else name + ".zip"
    if artefact.include_tag_name:
        return f"{plan.module_name}.v{plan.resolved_version}.zip"
    return f"{plan.module_name}.{plan.version_with_prerelease}.zip"


def script_name_for(plan: Plan, artefact: ArtefactSegment) -> str:
    name = artefact.script_name or plan.module_name
    name = replace_path_tokens(name, plan.module_name, plan.resolved_version, plan.prerelease)
    return name if name.lower().endswith(".ps1") else name + ".ps1"


def bundle_candidates(plan: Plan) -> List[ModuleDependency]:
    skip = {s.lower() for s in plan.module_skip.ignore_module_names}
    return [d for d in plan.required_modules_for_packaging if d.name.lower() not in skip]


def _check_output_dir(out: Path, plan: Plan, staging_path: Path) -> None:
    # Clearing a directory that holds the project or staging would destroy the inputs.
    resolved = out.resolve()
    for guarded in (Path(plan.project_root).resolve(), staging_path.resolve()):
        if resolved == guarded or resolved in guarded.parents:
            raise ValueError(f"artefact output {out} would contain {guarded}; choose a dedicated directory")


class ArtefactPackager:
    """Produce one artefact (directory tree, archive or script) from staging.

    ``build`` never raises: failures are returned as ``ArtefactResult(status="Failed")``
    so the remaining artefacts still run.
    """

    def __init__(
        self,
        module_provider: Optional[ModuleProvider] = None,
        *,
        timeout: float = 300.0,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.module_provider = module_provider
        self.timeout = float(timeout)
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()

    def build(self, plan: Plan, artefact: ArtefactSegment, staging_path: Path, index: int = 1) -> ArtefactResult:
        out = output_dir_for(plan, artefact)
        label = f"{index:02d}:{artefact.kind}" + (f":{artefact.id}" if artefact.id else "")
        try:
            result = self._build(plan, artefact, Path(staging_path), out)
        except Exception as e:
            print(f"[artefact][FAILED] {label}: {e}")
            return ArtefactResult(id=artefact.id, kind=artefact.kind, output_path=str(out), status="Failed", message=str(e))
        print(f"[artefact][OK] {label} -> {result.output_path}")
        return result

    def _build(self, plan: Plan, artefact: ArtefactSegment, staging: Path, out: Path) -> ArtefactResult:
        if not staging.is_dir():
            raise NotFoundError(f"staging directory not found: {staging}")
        _check_output_dir(out, plan, staging)
        if artefact.do_not_clear:
            ensure_dir(out)
        else:
            clear_dir(out)

        kind = artefact.kind
        if kind == "Unpacked":
            bundled = self._assemble(plan, artefact, staging, out)
            files = tuple(p.relative_to(out).as_posix() for p in iter_files(out))
            return ArtefactResult(id=artefact.id, kind=kind, output_path=str(out), files=files, bundled_modules=bundled)

        if kind == "Script":
            bundled = self._assemble_script(plan, artefact, staging, out)
            files = tuple(p.relative_to(out).as_posix() for p in iter_files(out))
            return ArtefactResult(
                id=artefact.id, kind=kind, output_path=str(out / script_name_for(plan, artefact)), files=files, bundled_modules=bundled
            )

        zip_path = out / archive_name_for(plan, artefact)
        with tempfile.TemporaryDirectory(prefix="modforge_pack_") as td:
            root = Path(td)
            if kind == "ScriptPacked":
                bundled = self._assemble_script(plan, artefact, staging, root)
            else:
                bundled = self._assemble(plan, artefact, staging, root)
            entries: List[ZipEntry] = entries_for_tree(root)
            digest, size = create_zip(zip_path=zip_path, entries=entries)
        return ArtefactResult(
            id=artefact.id,
            kind=kind,
            output_path=str(zip_path),
            files=tuple(sorted(e.arcname for e in entries)),
            sha256=digest,
            bytes_size=size,
            bundled_modules=bundled,
        )

    def _assemble(self, plan: Plan, artefact: ArtefactSegment, staging: Path, root: Path) -> Tuple[str, ...]:
        self._apply_mappings(plan, artefact, staging, to_artefact_root=False)
        copytree_merge(staging, root / plan.module_name, ignore_files=(RUN_MARKER_NAME,))
        bundled = self._bundle_required_modules(plan, artefact, root)
        self._apply_mappings(plan, artefact, root, to_artefact_root=True)
        return bundled

    def _assemble_script(self, plan: Plan, artefact: ArtefactSegment, staging: Path, root: Path) -> Tuple[str, ...]:
        source = staging / f"{plan.module_name}.psm1"
        if not source.exists():
            raise NotFoundError(f"module script not found in staging: {source}")
        self._apply_mappings(plan, artefact, staging, to_artefact_root=False)
        text = source.read_text(encoding="utf-8-sig")
        # Only the configured placeholders touch script content; path tokens are for names.
        for ph in plan.placeholders:
            text = text.replace(ph.find, ph.replace)
        target = ensure_dir(root) / script_name_for(plan, artefact)
        target.write_text(text, encoding="utf-8")
        bundled = self._bundle_required_modules(plan, artefact, root)
        self._apply_mappings(plan, artefact, root, to_artefact_root=True)
        return bundled

    def _bundle_required_modules(self, plan: Plan, artefact: ArtefactSegment, root: Path) -> Tuple[str, ...]:
        opts = artefact.required_modules
        if not opts.enabled:
            return ()
        deps = bundle_candidates(plan)
        if not deps:
            return ()
        if self.module_provider is None:
            raise NotConfiguredError("bundling required modules needs a module provider")

        dest_root = ensure_dir(_resolve_under(root, opts.modules_path) if opts.modules_path else root)
        bundled: List[str] = []
        for dep in deps:
            if self.cancel_event.is_set():
                raise PipelineCancelled("cancelled while bundling required modules")
            if opts.source == "Remote":
                self.module_provider.save(
                    dep.name,
                    version=version_argument(dep),
                    dest_dir=dest_root,
                    repository=opts.repository,
                    credential=opts.credential,
                    timeout=self.timeout,
                )
            else:
                found = self.module_provider.locate_installed(dep.name, dep.required_version)
                if found is None:
                    raise NotFoundError(f"required module {dep.name} is not installed locally")
                target = dest_root / dep.name
                if found.parent.name.lower() == dep.name.lower():
                    # Versioned layout: <Name>/<Version>
                    target = target / found.name
                copytree_merge(found, target)
            bundled.append(dep.name)
        return tuple(bundled)

    def _apply_mappings(self, plan: Plan, artefact: ArtefactSegment, base: Path, *, to_artefact_root: bool) -> None:
        """Copy the mappings whose ``*Relative`` flag matches ``to_artefact_root`` under ``base``.

        Relative-flagged mappings land in the artefact root; the others land in
        staging, or at their own absolute path for non-archive kinds.
        """
        if artefact.destination_directories_relative == to_artefact_root:
            for mapping in artefact.directory_output:
                src, dst = self._mapping_paths(plan, artefact, mapping, base, to_artefact_root)
                if not src.is_dir():
                    raise NotFoundError(f"directory mapping source not found: {src}")
                copytree_merge(src, dst)
        if artefact.destination_files_relative == to_artefact_root:
            for mapping in artefact.files_output:
                src, dst = self._mapping_paths(plan, artefact, mapping, base, to_artefact_root)
                if not src.is_file():
                    raise NotFoundError(f"file mapping source not found: {src}")
                if mapping.destination.endswith(("/", "\\")) or dst.is_dir():
                    dst = dst / src.name
                ensure_dir(dst.parent)
                shutil.copy2(src, dst)

    @staticmethod
    def _mapping_paths(
        plan: Plan, artefact: ArtefactSegment, mapping: CopyMapping, base: Path, relative: bool
    ) -> Tuple[Path, Path]:
        def tokens(value: str) -> str:
            return replace_path_tokens(value, plan.module_name, plan.resolved_version, plan.prerelease).strip().strip('"')

        src = _resolve_under(Path(plan.project_root), tokens(mapping.source))
        dest_text = tokens(mapping.destination) or src.name
        dest = Path(dest_text).expanduser()
        if dest.is_absolute():
            if artefact.kind in PACKED_ARTEFACT_KINDS:
                raise NotConfiguredError(f"{artefact.kind} artefact copy destinations must be relative, got {dest_text!r}")
            if relative:
                raise NotConfiguredError(f"copy destination {dest_text!r} is absolute but marked relative to the artefact root")
            return src, dest
        return src, base / dest
