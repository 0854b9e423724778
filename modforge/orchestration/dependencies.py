from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional, Sequence

from ..infra.contracts import ModuleProvider
from ..infra.errors import ToolTimeoutError
from ..infra.models import DependencyInstallResult, ModuleDependency, RepositoryCredential
from .versioning import nuget_range, version_satisfies


def dedupe_dependencies(dependencies: Iterable[ModuleDependency]) -> List[ModuleDependency]:
    seen = set()
    out: List[ModuleDependency] = []
    for dep in dependencies:
        key = dep.name.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(dep)
    return out


def version_argument(dep: ModuleDependency) -> Optional[str]:
    """The version constraint handed to the package tool: exact pin or NuGet range."""
    if dep.required_version:
        return dep.required_version
    if dep.maximum_version:
        return nuget_range(minimum=dep.minimum_version, maximum=dep.maximum_version)
    if dep.minimum_version:
        return nuget_range(minimum=dep.minimum_version)
    return None


class DependencyInstaller:
    """Decide and run install/update actions for declared module dependencies.

    Per-module failures are captured as ``Failed`` results and never raised.
    Modules are processed on a bounded thread pool; the returned list is
    sorted by name so it does not depend on completion order.
    """

    def __init__(
        self,
        provider: ModuleProvider,
        *,
        max_workers: int = 4,
        timeout: float = 300.0,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.provider = provider
        self.max_workers = max(1, int(max_workers))
        self.timeout = float(timeout)
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()

    def ensure_installed(
        self,
        dependencies: Sequence[ModuleDependency],
        *,
        skip_modules: Sequence[str] = (),
        skip_all: bool = False,
        force: bool = False,
        prerelease: bool = False,
        repository: str = "",
        credential: Optional[RepositoryCredential] = None,
    ) -> List[DependencyInstallResult]:
        deps = dedupe_dependencies(dependencies)
        skip = {s.strip().lower() for s in skip_modules if s.strip()}

        def one(dep: ModuleDependency) -> DependencyInstallResult:
            return self._ensure_one(
                dep,
                skipped=skip_all or dep.name.lower() in skip,
                force=force,
                prerelease=prerelease,
                repository=repository,
                credential=credential,
            )

        if not deps:
            return []
        workers = min(self.max_workers, len(deps))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="modforge-deps") as pool:
            results = list(pool.map(one, deps))
        return sorted(results, key=lambda r: r.name.lower())

    def _ensure_one(
        self,
        dep: ModuleDependency,
        *,
        skipped: bool,
        force: bool,
        prerelease: bool,
        repository: str,
        credential: Optional[RepositoryCredential],
    ) -> DependencyInstallResult:
        requested = dep.requested_version
        tool = str(getattr(self.provider, "tool_name", "") or "")

        if skipped:
            return DependencyInstallResult(dep.name, None, None, requested, "Skipped", tool, "skipped by configuration")
        if self.cancel_event.is_set():
            return DependencyInstallResult(dep.name, None, None, requested, "Skipped", tool, "cancelled")

        try:
            installed = self.provider.installed_version(dep.name)
        except Exception as e:
            print(f"[deps][FAILED] {dep.name}: cannot inspect installed version: {e}")
            return DependencyInstallResult(dep.name, None, None, requested, "Failed", tool, str(e))

        compatible = version_satisfies(
            installed,
            required=dep.required_version,
            minimum=dep.minimum_version,
            maximum=dep.maximum_version,
        )
        if compatible and not force:
            return DependencyInstallResult(dep.name, installed, installed, requested, "Satisfied", tool, "")

        status = "Updated" if compatible else "Installed"
        try:
            self.provider.install(
                dep.name,
                version=version_argument(dep),
                repository=repository,
                credential=credential,
                prerelease=prerelease,
                force=force,
                timeout=self.timeout,
                cancel_event=self.cancel_event,
            )
        except ToolTimeoutError as e:
            print(f"[deps][FAILED] {dep.name}: timed out after {self.timeout:g}s")
            return DependencyInstallResult(dep.name, installed, installed, requested, "Failed", tool, str(e))
        except Exception as e:
            print(f"[deps][FAILED] {dep.name}: {e}")
            return DependencyInstallResult(dep.name, installed, installed, requested, "Failed", tool, str(e))

        try:
            resolved = self.provider.installed_version(dep.name)
        except Exception as e:
            print(f"[deps][WARN] {dep.name}: installed but version lookup failed: {e}")
            resolved = None
        print(f"[deps][OK] {dep.name}: {status} {resolved or ''}".rstrip())
        return DependencyInstallResult(dep.name, installed, resolved, requested, status, tool, "")
