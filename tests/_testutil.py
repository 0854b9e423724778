from __future__ import annotations

import sys
from pathlib import Path


def ensure_repo_on_path() -> Path:
    repo_root = Path(__file__).resolve().parents[1]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))
    return repo_root


def make_plan(root: Path, **overrides):
    """A resolved plan for ``Demo`` 1.2.3 rooted at ``root`` with nothing enabled."""
    ensure_repo_on_path()
    from modforge.infra.models import BuildSpec, InstallSpec, Plan

    project = root / "src"
    staging = root / "staging"
    build = BuildSpec(module_name="Demo", source_root=str(project), staging_root=str(staging), version_expression="1.2.3")
    fields = dict(
        module_name="Demo",
        project_root=str(project),
        expected_version="1.2.3",
        resolved_version="1.2.3",
        version_source="Literal",
        prerelease="",
        build=build,
        staging_path=str(staging),
        staging_was_generated=False,
        delete_staging_after_run=False,
        run_key="run_test",
        install=InstallSpec(enabled=False),
    )
    fields.update(overrides)
    return Plan(**fields)
