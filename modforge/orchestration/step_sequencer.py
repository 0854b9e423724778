from __future__ import annotations

from typing import List

from ..infra.models import Plan, PipelineStep


def _suffix(ident: str) -> str:
    ident = str(ident or "").strip()
    return f":{ident}" if ident else ""


def artefact_step_key(index: int, kind: str, ident: str = "") -> str:
    return f"artefact:{index:02d}:{kind}{_suffix(ident)}"


def publish_step_key(index: int, destination: str, ident: str = "") -> str:
    return f"publish:{index:02d}:{destination}{_suffix(ident)}"


def sequence_steps(plan: Plan) -> List[PipelineStep]:
    """Derive the ordered step list from a plan.

    Pure and deterministic: a step without an enabling configuration is left
    out rather than emitted as a no-op.
    """
    steps: List[PipelineStep] = [
        PipelineStep(kind="Build", key="build:stage", title="Prepare staging"),
        PipelineStep(kind="Build", key="build:build", title="Build to staging"),
        PipelineStep(kind="Build", key="build:manifest", title="Patch manifest"),
    ]

    docs = plan.build_documentation
    if docs.enable:
        steps.append(PipelineStep(kind="Documentation", key="docs:extract", title="Extract help"))
        steps.append(PipelineStep(kind="Documentation", key="docs:write", title="Write documentation"))
        if docs.generate_external_help:
            steps.append(PipelineStep(kind="Documentation", key="docs:maml", title="Generate external help"))

    if plan.formatting.enable:
        steps.append(PipelineStep(kind="Formatting", key="format:staging", title="Format staging"))
        if plan.formatting.update_project_root:
            steps.append(PipelineStep(kind="Formatting", key="format:project", title="Format project"))

    if plan.sign_enabled:
        steps.append(PipelineStep(kind="Signing", key="sign", title="Sign files"))

    fc = plan.file_consistency
    if fc.enable:
        steps.append(PipelineStep(kind="Validation", key="validate:fileconsistency", title="File consistency (staging)"))
        if fc.check_project_root:
            steps.append(
                PipelineStep(kind="Validation", key="validate:fileconsistency-project", title="File consistency (project)")
            )
    if plan.compatibility.enable:
        steps.append(PipelineStep(kind="Validation", key="validate:compatibility", title="Compatibility"))
    if plan.module_validation.enable:
        steps.append(PipelineStep(kind="Validation", key="validate:module", title="Module validation"))

    imp = plan.import_modules
    if imp is not None and (imp.self_import or imp.required_modules):
        steps.append(PipelineStep(kind="Tests", key="tests:import-modules", title="Import modules"))
    for i, test in enumerate(plan.tests, start=1):
        steps.append(
            PipelineStep(kind="Tests", key=f"tests:run:{i:02d}", title=f"Run tests ({test.tests_path})", test=test, index=i)
        )

    for i, art in enumerate(plan.artefacts, start=1):
        title = f"Pack {art.kind} ({art.id})" if art.id else f"Pack {art.kind}"
        steps.append(
            PipelineStep(kind="Artefact", key=artefact_step_key(i, art.kind, art.id), title=title, artefact=art, index=i)
        )

    for i, pub in enumerate(plan.publishes, start=1):
        target = pub.feed_name if pub.destination == "Repository" else (pub.repository_name or plan.module_name)
        title = f"Publish {pub.destination} ({target})"
        if pub.id:
            title += f" [{pub.id}]"
        steps.append(
            PipelineStep(kind="Publish", key=publish_step_key(i, pub.destination, pub.id), title=title, publish=pub, index=i)
        )

    if plan.install.enabled:
        steps.append(
            PipelineStep(
                kind="Install",
                key="install",
                title=f"Install ({plan.install.strategy}, keep {plan.install.keep_versions})",
            )
        )

    if plan.delete_staging_after_run:
        steps.append(PipelineStep(kind="Cleanup", key="cleanup", title="Cleanup staging"))

    return steps
