from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..infra.context import PipelineContext
from ..infra.errors import ConfigurationError
from ..infra.models import (
    ApprovedModuleSegment,
    ArtefactSegment,
    BuildDocumentationSegment,
    BuildSegment,
    CommandSegment,
    CompatibilitySegment,
    DocumentationSegment,
    ExternalModuleSegment,
    FileConsistencySegment,
    FormattingSegment,
    ImportModulesSegment,
    InstallSpec,
    ManifestSegment,
    ModuleDependency,
    ModuleSkipSegment,
    OptionsSegment,
    PipelineSpec,
    PlaceHolderSegment,
    Plan,
    PublishSegment,
    RequiredModuleSegment,
    Segment,
    SigningOptions,
    TestSegment,
    ValidationSegment,
)
from .idempotency import key_pipeline_run
from .versioning import VersionStep, is_auto_expression, is_literal_version, step_version, validate_version_expression


def merge_explicit(current: Any, incoming: Any) -> Any:
    """Last write wins, but only for the fields ``incoming`` actually declared."""
    if current is None:
        return incoming
    if incoming is None:
        return current
    changes: Dict[str, Any] = {}
    for name in incoming.explicit:
        value = getattr(incoming, name)
        if name == "signing":
            value = merge_explicit(getattr(current, name), value)
        changes[name] = value
    changes["explicit"] = frozenset(current.explicit) | frozenset(incoming.explicit)
    return dataclasses.replace(current, **changes)


def merge_dependency(known: Dict[str, ModuleDependency], dep: ModuleDependency, where: str = "") -> None:
    """Merge ``dep`` into ``known`` (keyed by lower-cased name).

    An exact pin always wins over a range; two different exact pins for the same
    module are a configuration error; ranges follow last write wins.
    """
    key = dep.name.lower()
    existing = known.get(key)
    if existing is None:
        known[key] = dep
        return

    if existing.is_exact and dep.is_exact:
        if str(existing.required_version).strip() != str(dep.required_version).strip():
            label = f"{where}: " if where else ""
            raise ConfigurationError(
                f"{label}conflicting exact version pins for module {dep.name!r}: "
                f"{existing.required_version} vs {dep.required_version}"
            )
        if dep.guid and not existing.guid:
            known[key] = dataclasses.replace(existing, guid=dep.guid)
        return
    if existing.is_exact:
        return
    if not dep.guid and existing.guid:
        dep = dataclasses.replace(dep, guid=existing.guid)
    known[key] = dep


def _union(current: Tuple[str, ...], incoming: Sequence[str]) -> Tuple[str, ...]:
    seen = {s.lower() for s in current}
    out = list(current)
    for s in incoming:
        if s.lower() not in seen:
            seen.add(s.lower())
            out.append(s)
    return tuple(out)


@dataclass
class _Folded:
    manifest: ManifestSegment = field(default_factory=ManifestSegment)
    build: BuildSegment = field(default_factory=BuildSegment)
    options: OptionsSegment = field(default_factory=OptionsSegment)
    documentation: DocumentationSegment = field(default_factory=DocumentationSegment)
    build_documentation: BuildDocumentationSegment = field(default_factory=BuildDocumentationSegment)
    formatting: FormattingSegment = field(default_factory=FormattingSegment)
    validation: ValidationSegment = field(default_factory=ValidationSegment)
    file_consistency: FileConsistencySegment = field(default_factory=FileConsistencySegment)
    compatibility: CompatibilitySegment = field(default_factory=CompatibilitySegment)
    import_modules: Optional[ImportModulesSegment] = None
    module_skip: ModuleSkipSegment = field(default_factory=ModuleSkipSegment)
    required: Dict[str, ModuleDependency] = field(default_factory=dict)
    external: Dict[str, ModuleDependency] = field(default_factory=dict)
    approved: Dict[str, ModuleDependency] = field(default_factory=dict)
    commands: Dict[str, Tuple[str, List[str]]] = field(default_factory=dict)
    placeholders: List[PlaceHolderSegment] = field(default_factory=list)
    tests: List[TestSegment] = field(default_factory=list)
    artefacts: List[ArtefactSegment] = field(default_factory=list)
    publishes: List[PublishSegment] = field(default_factory=list)


_SINGLE_SLOTS: Dict[type, str] = {
    ManifestSegment: "manifest",
    BuildSegment: "build",
    OptionsSegment: "options",
    DocumentationSegment: "documentation",
    BuildDocumentationSegment: "build_documentation",
    FormattingSegment: "formatting",
    ValidationSegment: "validation",
    FileConsistencySegment: "file_consistency",
    CompatibilitySegment: "compatibility",
    ImportModulesSegment: "import_modules",
}


def fold_segments(segments: Sequence[Segment]) -> _Folded:
    """Fold segments left to right into one accumulator keyed by segment type."""
    acc = _Folded()
    for idx, seg in enumerate(segments):
        where = f"segments/{idx} ({seg.segment_type})"
        slot = _SINGLE_SLOTS.get(type(seg))
        if slot is not None:
            setattr(acc, slot, merge_explicit(getattr(acc, slot), seg))
        elif isinstance(seg, RequiredModuleSegment):
            merge_dependency(acc.required, seg.module, where)
        elif isinstance(seg, ExternalModuleSegment):
            merge_dependency(acc.external, seg.module, where)
        elif isinstance(seg, ApprovedModuleSegment):
            merge_dependency(acc.approved, seg.module, where)
        elif isinstance(seg, CommandSegment):
            key = seg.module_name.lower()
            name, cmds = acc.commands.get(key, (seg.module_name, []))
            for c in seg.command_names:
                if c.lower() not in {x.lower() for x in cmds}:
                    cmds.append(c)
            acc.commands[key] = (name, cmds)
        elif isinstance(seg, PlaceHolderSegment):
            acc.placeholders.append(seg)
        elif isinstance(seg, ModuleSkipSegment):
            cur = acc.module_skip
            acc.module_skip = ModuleSkipSegment(
                ignore_module_names=_union(cur.ignore_module_names, seg.ignore_module_names),
                ignore_function_names=_union(cur.ignore_function_names, seg.ignore_function_names),
                force=cur.force or seg.force,
                fail_on_missing_commands=cur.fail_on_missing_commands or seg.fail_on_missing_commands,
            )
        elif isinstance(seg, TestSegment):
            acc.tests.append(seg)
        elif isinstance(seg, ArtefactSegment):
            acc.artefacts.append(seg)
        elif isinstance(seg, PublishSegment):
            acc.publishes.append(seg)
        else:
            raise ConfigurationError(f"{where}: unsupported segment {type(seg).__name__}")
    return acc


def _manifest_dependencies(acc: _Folded) -> Tuple[ModuleDependency, ...]:
    # External modules are declared in the manifest too, but never bundled.
    combined: Dict[str, ModuleDependency] = {}
    for dep in acc.required.values():
        merge_dependency(combined, dep, "RequiredModule")
    for dep in acc.external.values():
        merge_dependency(combined, dep, "ExternalModule")
    return tuple(combined.values())


def normalize_install(install: InstallSpec, default_roots: Sequence[str]) -> InstallSpec:
    preserve: List[str] = []
    seen = set()
    for name in install.preserve_versions:
        n = str(name).strip()
        if n and n.lower() not in seen:
            seen.add(n.lower())
            preserve.append(n)

    roots: List[str] = []
    for r in (install.roots or tuple(default_roots)):
        r = str(r).strip()
        if r and r not in roots:
            roots.append(r)

    return dataclasses.replace(
        install,
        keep_versions=max(1, int(install.keep_versions)),
        preserve_versions=tuple(preserve),
        roots=tuple(roots),
    )


def _check_spec(spec: PipelineSpec, expression: str) -> None:
    problems: List[str] = []
    if not spec.build.module_name.strip():
        problems.append("build.moduleName must not be empty")
    root = Path(spec.build.source_root) if spec.build.source_root else None
    if root is None or not root.is_dir():
        problems.append(f"build.sourceRoot does not exist: {spec.build.source_root!r}")
    try:
        validate_version_expression(expression)
    except ConfigurationError as e:
        problems.append(str(e))
    if problems:
        raise ConfigurationError("Invalid plan input", problems)


def _check_signing(build: BuildSegment, signing: Optional[SigningOptions]) -> None:
    if build.sign_merged and signing is not None and not signing.has_certificate:
        raise ConfigurationError(
            "Build.signMerged is set but Options.signing names no certificate "
            "(certificateThumbprint, certificatePfxPath or certificatePfxBase64)"
        )


def _resolve_version(expression: str, prerelease_hint: str, acc: _Folded, spec: PipelineSpec, context: PipelineContext) -> Tuple[VersionStep, Optional[str], Optional[str]]:
    name = spec.build.module_name
    local: Optional[str] = None
    manifest_path = context.manifest_editor.manifest_path(Path(spec.build.source_root), name)
    if manifest_path.exists():
        local = context.manifest_editor.read_metadata(manifest_path).version

    remote: Optional[str] = None
    needs_remote = not (is_literal_version(expression) or is_auto_expression(expression))
    if needs_remote and not acc.build.local_version and context.version_source is not None:
        try:
            remote = context.version_source.find_latest_version(name, prerelease=bool(prerelease_hint))
        except Exception as e:
            print(f"[plan][WARN] remote version lookup for {name} failed, using local only: {e}")
            remote = None

    return step_version(expression, remote=remote, local=local), local, remote


def build_plan(spec: PipelineSpec, segments: Sequence[Segment], context: PipelineContext) -> Plan:
    """Merge the spec and configuration segments into one immutable plan.

    Raises ConfigurationError before any filesystem write or network push.
    """
    acc = fold_segments(segments)
    expression = spec.build.version_expression or acc.manifest.module_version
    _check_spec(spec, expression)
    signing = acc.options.signing
    _check_signing(acc.build, signing)

    manifest_deps = _manifest_dependencies(acc)

    step, local, remote = _resolve_version(expression, acc.manifest.prerelease, acc, spec, context)
    prerelease = acc.manifest.prerelease or step.prerelease

    build = spec.build
    run_key = key_pipeline_run(
        module_name=build.module_name,
        source_root=build.source_root,
        version_expression=expression,
        staging_root=build.staging_root,
    )
    if build.staging_root:
        staging_path = build.staging_root
        generated = False
    else:
        staging_path = str(Path(context.temp_root) / "modforge" / build.module_name / run_key)
        generated = True

    commands = tuple(
        (name, tuple(sorted(cmds, key=str.lower)))
        for name, cmds in acc.commands.values()
    )

    plan = Plan(
        module_name=build.module_name,
        project_root=build.source_root,
        expected_version=expression,
        resolved_version=step.version,
        version_source=step.source,
        prerelease=prerelease,
        build=build,
        staging_path=staging_path,
        staging_was_generated=generated,
        delete_staging_after_run=generated and not build.keep_staging,
        run_key=run_key,
        compatible_editions=acc.manifest.compatible_ps_editions,
        required_modules=manifest_deps,
        external_modules=tuple(acc.external.values()),
        approved_modules=tuple(acc.approved.values()),
        required_modules_for_packaging=tuple(acc.required.values()),
        command_dependencies=commands,
        placeholders=tuple(acc.placeholders),
        module_skip=acc.module_skip,
        build_options=acc.build,
        manifest=acc.manifest,
        signing=signing,
        documentation=acc.documentation,
        build_documentation=acc.build_documentation,
        formatting=acc.formatting,
        file_consistency=acc.file_consistency,
        compatibility=acc.compatibility,
        module_validation=acc.validation,
        import_modules=acc.import_modules,
        tests=tuple(t for t in acc.tests if t.enabled),
        artefacts=tuple(a for a in acc.artefacts if a.enabled),
        publishes=tuple(p for p in acc.publishes if p.enabled),
        install=normalize_install(spec.install, context.default_install_roots),
        local_manifest_version=local,
        remote_version=remote,
    )
    print(
        f"[plan] {plan.module_name} {plan.expected_version or 'auto'} -> {plan.version_with_prerelease} "
        f"(source={plan.version_source}, staging={plan.staging_path})"
    )
    return plan
