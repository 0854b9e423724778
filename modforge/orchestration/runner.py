from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..infra.context import PipelineContext
from ..infra.errors import ConflictError, PipelineCancelled, StageError, ToolError
from ..infra.models import (
    RUN_MARKER_NAME,
    BuildRequest,
    BuildResult,
    DocumentationResult,
    FormatResult,
    HelpCommand,
    PipelineResult,
    PipelineStep,
    Plan,
    StepResult,
    TestSuiteReport,
    ValidationReport,
)
from ..utils.fs import atomic_write_text, clear_dir, ensure_dir
from ..utils.time import utcnow_iso
from .artefacts import ArtefactPackager
from .dependencies import DependencyInstaller
from .installer import ModuleInstaller
from .publisher import Publisher
from .signing import SigningEngine
from .status_reducer import StatusInputs, reduce_pipeline_status
from .step_sequencer import sequence_steps
from .validation import evaluate_compatibility, evaluate_file_consistency, evaluate_module_checks, is_stage_fatal

StepOutcome = Tuple[str, str]  # (status, message)

_MANIFEST_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("author", "author"),
    ("company_name", "companyName"),
    ("copyright", "copyright"),
    ("description", "description"),
    ("project_uri", "projectUri"),
    ("license_uri", "licenseUri"),
    ("icon_uri", "iconUri"),
    ("release_notes", "releaseNotes"),
    ("guid", "guid"),
)


def manifest_patch(plan: Plan, export_set: Tuple[str, ...]) -> Dict[str, Any]:
    """Metadata written into the staged manifest by ``build:manifest``."""
    patch: Dict[str, Any] = {
        "name": plan.module_name,
        "version": plan.resolved_version,
        "prerelease": plan.prerelease or None,
        "compatiblePSEditions": list(plan.compatible_editions),
        "functionsToExport": list(export_set),
        "requiredModules": list(plan.required_modules) or None,
        "externalModuleDependencies": [d.name for d in plan.external_modules] or None,
    }
    m = plan.manifest
    for attr, key in _MANIFEST_FIELDS:
        value = getattr(m, attr)
        if value:
            patch[key] = value
    if m.tags:
        patch["tags"] = list(m.tags)
    return patch


def build_request(plan: Plan, staging: Path, helper_roots: Tuple[str, ...] = ()) -> BuildRequest:
    known = sorted({cmd for _, cmds in plan.command_dependencies for cmd in cmds}, key=str.lower)
    return BuildRequest(
        module_name=plan.module_name,
        source_root=plan.project_root,
        staging_path=str(staging),
        merge=plan.build_options.merge,
        merge_missing=plan.build_options.merge_missing,
        refresh_manifest_only=plan.build_options.refresh_manifest_only,
        exclude_directories=plan.build.exclude_directories,
        exclude_files=plan.build.exclude_files,
        placeholders=plan.placeholders,
        ignore_function_names=plan.module_skip.ignore_function_names,
        known_commands=tuple(known),
        helper_roots=helper_roots,
    )


def _report_outcome(report: ValidationReport) -> StepOutcome:
    if is_stage_fatal(report):
        raise StageError(f"{report.name}: {report.message}")
    if report.status == "Warning":
        return "WARNING", report.message
    return "COMPLETED", report.message


@dataclass
class _RunState:
    plan: Plan
    staging: Path
    result: PipelineResult
    manifest_path: Optional[Path] = None
    export_set: Tuple[str, ...] = ()
    help: List[HelpCommand] = field(default_factory=list)
    marker_written: bool = False
    staging_deleted: bool = False


class PipelineRunner:
    """Execute the steps of a plan strictly in order.

    A handler that raises aborts the run: the failing step is FAILED and the
    rest are SKIPPED. Per-item failures are captured by the leaf components
    and leave the step FAILED or WARNING while the run continues.
    """

    def __init__(self, context: PipelineContext, *, clock: Callable[[], str] = utcnow_iso):
        self.context = context
        self.clock = clock

    def run(self, plan: Plan) -> PipelineResult:
        steps = sequence_steps(plan)
        state = _RunState(plan=plan, staging=Path(plan.staging_path), result=PipelineResult(plan=plan))
        aborted = False
        cancelled = False
        print(f"[pipeline] {plan.module_name} {plan.version_with_prerelease}: {len(steps)} step(s) run_key={plan.run_key}")

        try:
            for step in steps:
                if aborted:
                    self._record(state, step, "SKIPPED", "skipped after an earlier fatal error", "", "")
                    continue
                if cancelled or self.context.cancelled:
                    cancelled = True
                    self._record(state, step, "CANCELLED", "cancelled before start", "", "")
                    continue

                started = self.clock()
                try:
                    status, message = self._execute(step, state)
                except PipelineCancelled as e:
                    cancelled = True
                    status, message = "CANCELLED", str(e)
                except Exception as e:
                    aborted = True
                    status, message = "FAILED", str(e)
                    state.result.error = f"{step.key}: {e}"
                    state.result.error_type = type(e).__name__
                self._record(state, step, status, message, started, self.clock())
        finally:
            self._release_marker(state)

        state.result.status = reduce_pipeline_status(
            StatusInputs(
                step_statuses={s.key: s.status for s in state.result.steps},
                aborted=aborted,
                cancelled=cancelled,
            )
        )
        print(f"[pipeline] finished status={state.result.status}")
        return state.result

    def _record(self, state: _RunState, step: PipelineStep, status: str, message: str, started: str, ended: str) -> None:
        tag = "" if status == "COMPLETED" else f"[{status}]"
        print(f"[pipeline]{tag} {step.key} {message}".rstrip())
        state.result.steps.append(
            StepResult(
                key=step.key,
                kind=step.kind,
                title=step.title,
                status=status,
                message=message,
                started_at=started,
                ended_at=ended,
            )
        )

    def _execute(self, step: PipelineStep, state: _RunState) -> StepOutcome:
        key = step.key
        if key == "build:stage":
            return self._stage(state)
        if key == "build:build":
            return self._build(state)
        if key == "build:manifest":
            return self._patch_manifest(state)
        if key == "docs:extract":
            return self._docs_extract(state)
        if key == "docs:write":
            return self._docs_write(state)
        if key == "docs:maml":
            return self._docs_maml(state)
        if key == "format:staging":
            return self._format(state, state.staging, ())
        if key == "format:project":
            return self._format(state, Path(state.plan.project_root), state.plan.build.exclude_directories)
        if key == "sign":
            return self._sign(state)
        if key == "validate:fileconsistency":
            return self._file_consistency(state, state.staging, "FileConsistency")
        if key == "validate:fileconsistency-project":
            return self._file_consistency(state, Path(state.plan.project_root), "FileConsistency (project)")
        if key == "validate:compatibility":
            return self._compatibility(state)
        if key == "validate:module":
            return self._module_validation(state)
        if key == "tests:import-modules":
            return self._import_modules(state)
        if key.startswith("tests:run:"):
            return self._run_tests(state, step)
        if key.startswith("artefact:"):
            return self._artefact(state, step)
        if key.startswith("publish:"):
            return self._publish(state, step)
        if key == "install":
            return self._install(state)
        if key == "cleanup":
            return self._cleanup(state)
        raise StageError(f"no handler for step {key}")

    # Build

    def _stage(self, state: _RunState) -> StepOutcome:
        staging = state.staging
        marker = staging / RUN_MARKER_NAME
        if marker.exists():
            detail = marker.read_text(encoding="utf-8", errors="replace").strip()
            raise ConflictError(
                f"staging {staging} holds an in-progress marker from another or crashed run; "
                f"remove {marker} if no run is active ({detail[:500]})"
            )
        project = Path(state.plan.project_root).resolve()
        if staging.exists() and (staging.resolve() == project or staging.resolve() in project.parents):
            raise StageError(f"staging {staging} must not contain the project root {project}")

        clear_dir(staging)
        payload = {
            "run_key": state.plan.run_key,
            "pid": os.getpid(),
            "module": state.plan.module_name,
            "version": state.plan.version_with_prerelease,
            "started_at": self.clock(),
        }
        atomic_write_text(marker, json.dumps(payload, sort_keys=True))
        state.marker_written = True
        return "COMPLETED", str(staging)

    def _helper_roots(self, plan: Plan) -> Tuple[str, ...]:
        provider = self.context.module_provider
        if not plan.build_options.merge_missing or provider is None:
            return ()
        roots: List[str] = []
        for dep in plan.approved_modules:
            found = provider.locate_installed(dep.name, dep.required_version)
            if found is None:
                print(f"[pipeline][WARN] approved module {dep.name} is not installed")
                continue
            roots.append(str(found))
        return tuple(roots)

    def _release_marker(self, state: _RunState) -> None:
        if not state.marker_written or state.staging_deleted:
            return
        marker = state.staging / RUN_MARKER_NAME
        if marker.exists():
            marker.unlink()

    def _build(self, state: _RunState) -> StepOutcome:
        plan = state.plan
        staged = self.context.staging_builder.build_to_staging(
            build_request(plan, state.staging, self._helper_roots(plan))
        )
        state.manifest_path = Path(staged.manifest_path)
        state.export_set = tuple(staged.export_set)

        messages: List[str] = [f"{len(state.export_set)} export(s)"]
        status = "COMPLETED"
        skip = plan.module_skip
        if staged.missing_commands:
            text = "missing commands: " + ", ".join(staged.missing_commands)
            if skip.fail_on_missing_commands and not skip.force:
                raise StageError(text)
            status = "WARNING"
            messages.append(text)

        deps: Tuple = ()
        opts = plan.build_options
        if opts.install_missing_modules and plan.required_modules:
            installer = DependencyInstaller(
                self.context.require("module_provider"),
                max_workers=self.context.max_workers,
                timeout=self.context.dependency_timeout,
                cancel_event=self.context.cancel_event,
            )
            deps = tuple(
                installer.ensure_installed(
                    plan.required_modules,
                    skip_modules=skip.ignore_module_names,
                    force=opts.install_missing_modules_force,
                    prerelease=opts.install_missing_modules_prerelease,
                    repository=opts.install_missing_modules_repository,
                    credential=opts.install_missing_modules_credential,
                )
            )

        state.result.build = BuildResult(
            staging_path=staged.staging_path,
            manifest_path=staged.manifest_path,
            export_set=state.export_set,
            missing_commands=tuple(staged.missing_commands),
            dependencies=deps,
        )

        failed = [d for d in deps if d.status == "Failed"]
        if failed:
            text = "dependency install failed: " + ", ".join(f"{d.name} ({d.message})" for d in failed)
            if opts.fail_on_dependency_error:
                raise StageError(text)
            status = "WARNING"
            messages.append(text)
        if self.context.cancelled:
            raise PipelineCancelled("cancelled during dependency install")
        return status, "; ".join(messages)

    def _require_manifest(self, state: _RunState) -> Path:
        if state.manifest_path is None:
            raise StageError("no staged manifest; build step did not run")
        return state.manifest_path

    def _patch_manifest(self, state: _RunState) -> StepOutcome:
        path = self._require_manifest(state)
        self.context.manifest_editor.write_metadata(path, manifest_patch(state.plan, state.export_set))
        return "COMPLETED", f"{path.name} -> {state.plan.version_with_prerelease}"

    # Documentation and formatting

    def _docs_extract(self, state: _RunState) -> StepOutcome:
        engine = self.context.require("documentation_engine")
        state.help = list(engine.extract_help(state.staging, state.plan.module_name, state.export_set))
        state.result.documentation = DocumentationResult(commands=tuple(c.name for c in state.help))
        return "COMPLETED", f"{len(state.help)} command(s)"

    def _docs_write(self, state: _RunState) -> StepOutcome:
        engine = self.context.require("documentation_engine")
        project = Path(state.plan.project_root)
        docs = state.plan.documentation
        files = engine.write_markdown(
            state.help,
            project / docs.path,
            project / docs.readme_path,
            module_name=state.plan.module_name,
            start_clean=state.plan.build_documentation.start_clean,
        )
        current = state.result.documentation or DocumentationResult()
        state.result.documentation = replace(current, files_written=tuple(str(f) for f in files))
        return "COMPLETED", f"{len(files)} file(s)"

    def _docs_maml(self, state: _RunState) -> StepOutcome:
        engine = self.context.require("documentation_engine")
        culture = state.plan.build_documentation.external_help_culture
        path = engine.write_external_help(state.help, state.staging / culture, module_name=state.plan.module_name)
        current = state.result.documentation or DocumentationResult()
        state.result.documentation = replace(current, external_help_path=str(path))
        return "COMPLETED", str(path)

    def _format(self, state: _RunState, root: Path, exclude_dirs: Tuple[str, ...]) -> StepOutcome:
        formatter = self.context.require("formatter")
        total, changed = formatter.format_tree(root, state.plan.formatting, exclude_dirs=tuple(exclude_dirs))
        state.result.formatting.append(FormatResult(root=str(root), files_total=total, files_changed=changed))
        if root == state.staging and state.manifest_path is not None:
            # Formatting may rewrite the manifest; the patched values must survive.
            self._patch_manifest(state)
        return "COMPLETED", f"{changed} of {total} file(s) changed"

    # Signing and validation

    def _sign(self, state: _RunState) -> StepOutcome:
        options = state.plan.signing
        if options is None:
            raise StageError("signing step has no signing options")
        engine = SigningEngine(
            self.context.require("signature_tool"),
            max_workers=self.context.max_workers,
            cancel_event=self.context.cancel_event,
        )
        res = engine.sign_tree(state.staging, options)
        state.result.signing = res
        if self.context.cancelled:
            raise PipelineCancelled("cancelled during signing")
        message = f"signed {res.signed_new} new, {res.resigned} re-signed, {res.failed} failed, {res.unknown_error} unknown"
        if res.failed and options.fail_on_error:
            raise StageError(message + ": " + ", ".join(res.failed_files))
        if res.failed or res.unknown_error:
            return "WARNING", message
        return "COMPLETED", message

    def _file_consistency(self, state: _RunState, root: Path, name: str) -> StepOutcome:
        analyzer = self.context.require("consistency_analyzer")
        scan = analyzer.scan(root, state.plan.file_consistency)
        report = evaluate_file_consistency(scan, state.plan.file_consistency, name=name)
        state.result.validations.append(report)
        return _report_outcome(report)

    def _compatibility(self, state: _RunState) -> StepOutcome:
        analyzer = self.context.require("compatibility_analyzer")
        scan = analyzer.scan(state.staging, state.plan.compatibility)
        report = evaluate_compatibility(scan, state.plan.compatibility)
        state.result.validations.append(report)
        return _report_outcome(report)

    def _module_validation(self, state: _RunState) -> StepOutcome:
        validator = self.context.require("module_validator")
        checks = validator.validate(
            state.staging,
            self._require_manifest(state),
            expected_version=state.plan.resolved_version,
            export_set=state.export_set,
            settings=state.plan.module_validation,
        )
        report = evaluate_module_checks(checks, state.plan.module_validation)
        state.result.validations.append(report)
        return _report_outcome(report)

    # Tests

    def _import_modules(self, state: _RunState) -> StepOutcome:
        importer = self.context.require("module_importer")
        imp = state.plan.import_modules
        if imp is None:
            raise StageError("import step has no import options")
        timeout = float(imp.timeout_seconds)
        imported: List[str] = []
        if imp.required_modules:
            for dep in state.plan.required_modules:
                importer.import_module(dep.name, timeout=timeout, cancel_event=self.context.cancel_event)
                imported.append(dep.name)
        if imp.self_import:
            root_module = state.staging / f"{state.plan.module_name}.psm1"
            target = root_module if root_module.exists() else state.staging
            importer.import_module(str(target), timeout=timeout, cancel_event=self.context.cancel_event)
            imported.append(state.plan.module_name)
        return "COMPLETED", "imported " + ", ".join(imported)

    def _run_tests(self, state: _RunState, step: PipelineStep) -> StepOutcome:
        test = step.test
        if test is None:
            raise StageError(f"{step.key} has no test configuration")
        runner = self.context.require("test_runner")
        tests_path = Path(state.plan.project_root) / test.tests_path
        try:
            report = runner.run_tests(
                state.staging,
                tests_path,
                timeout=float(test.timeout_seconds),
                cancel_event=self.context.cancel_event,
            )
        except ToolError as e:
            if test.fail_on_failure:
                raise
            state.result.tests.append(TestSuiteReport(name=str(tests_path), message=str(e)))
            return "WARNING", str(e)
        state.result.tests.append(report)
        message = f"{report.passed}/{report.total} passed, {report.failed} failed, {report.skipped} skipped"
        if report.failed:
            if test.fail_on_failure:
                raise StageError(f"tests failed in {tests_path}: {message}")
            return "WARNING", message
        return "COMPLETED", message

    # Artefacts, publishing, install

    def _artefact(self, state: _RunState, step: PipelineStep) -> StepOutcome:
        artefact = step.artefact
        if artefact is None:
            raise StageError(f"{step.key} has no artefact configuration")
        packager = ArtefactPackager(
            self.context.module_provider,
            timeout=self.context.dependency_timeout,
            cancel_event=self.context.cancel_event,
        )
        res = packager.build(state.plan, artefact, state.staging, step.index)
        state.result.artefacts.append(res)
        if self.context.cancelled:
            raise PipelineCancelled("cancelled during packaging")
        if not res.succeeded:
            return "FAILED", res.message
        return "COMPLETED", res.output_path

    def _publish(self, state: _RunState, step: PipelineStep) -> StepOutcome:
        publish = step.publish
        if publish is None:
            raise StageError(f"{step.key} has no publish configuration")
        publisher = Publisher(self.context.feed_client, self.context.release_client)
        res = publisher.publish(publish, state.plan, state.staging, state.result.artefacts)
        state.result.publishes.append(res)
        if not res.succeeded:
            if publish.fail_fast:
                raise StageError(f"publish {step.key} failed with failFast set: {res.message}")
            return "FAILED", res.message
        return "COMPLETED", f"{res.status} {res.message}".strip()

    def _install(self, state: _RunState) -> StepOutcome:
        installer = ModuleInstaller(self.context.manifest_editor)
        manifest = self._require_manifest(state)
        try:
            relpath: Optional[str] = manifest.relative_to(state.staging).as_posix()
        except ValueError:
            relpath = None
        res = installer.install(
            state.staging,
            relpath,
            state.plan.module_name,
            state.plan.resolved_version,
            state.plan.install,
            fail_on_delete_error=state.plan.build_options.fail_on_delete_error,
        )
        state.result.install = res
        errors = [e for r in res.roots for e in r.delete_errors]
        message = f"{res.version} into {len(res.roots)} root(s)"
        if errors:
            return "WARNING", message + "; could not delete: " + ", ".join(errors)
        return "COMPLETED", message

    def _cleanup(self, state: _RunState) -> StepOutcome:
        if any(s.status == "FAILED" for s in state.result.steps):
            return "SKIPPED", f"kept {state.staging} for inspection after failures"
        try:
            shutil.rmtree(state.staging)
        except OSError as e:
            if state.plan.build_options.fail_on_delete_error:
                raise StageError(f"could not delete staging {state.staging}: {e}") from e
            return "WARNING", f"could not delete staging {state.staging}: {e}"
        state.staging_deleted = True
        return "COMPLETED", f"deleted {state.staging}"
