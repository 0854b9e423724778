from __future__ import annotations

import os
import sys
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .contracts import (
    CompatibilityAnalyzer,
    ConsistencyAnalyzer,
    DocumentationEngine,
    FeedClient,
    Formatter,
    ManifestEditor,
    ModuleImporter,
    ModuleProvider,
    ModuleValidator,
    ReleaseClient,
    SignatureTool,
    StagingBuilder,
    TestRunner,
    VersionSource,
)
from .errors import NotConfiguredError


def _env_truthy(env: Mapping[str, str], name: str) -> bool:
    v = (env.get(name) or "").strip().lower()
    return v in {"1", "true", "yes", "y", "on"}


def default_install_roots(env: Mapping[str, str], home: Optional[Path] = None, is_windows: Optional[bool] = None) -> Tuple[str, ...]:
    """Module roots used when the install policy names none.

    Precedence:
      1) MODFORGE_INSTALL_ROOTS (os.pathsep separated)
      2) per-user module folders for the current OS
    """
    raw = str(env.get("MODFORGE_INSTALL_ROOTS", "") or "").strip()
    if raw:
        return tuple(str(Path(p).expanduser()) for p in raw.split(os.pathsep) if p.strip())

    home = home if home is not None else Path.home()
    windows = sys.platform.startswith("win") if is_windows is None else is_windows
    if windows:
        docs = home / "Documents"
        return (str(docs / "PowerShell" / "Modules"), str(docs / "WindowsPowerShell" / "Modules"))
    return (str(home / ".local" / "share" / "powershell" / "Modules"),)


def default_max_workers(env: Mapping[str, str]) -> int:
    raw = str(env.get("MODFORGE_MAX_WORKERS", "") or "").strip()
    if raw.isdigit() and int(raw) > 0:
        return int(raw)
    return max(1, min(8, os.cpu_count() or 1))


@dataclass(frozen=True)
class PipelineContext:
    """Everything a run needs from the outside world, resolved once.

    Components receive this object instead of reading the environment, the
    working directory or global state.
    """

    manifest_editor: ManifestEditor
    staging_builder: StagingBuilder
    version_source: Optional[VersionSource] = None
    module_provider: Optional[ModuleProvider] = None
    signature_tool: Optional[SignatureTool] = None
    feed_client: Optional[FeedClient] = None
    release_client: Optional[ReleaseClient] = None
    formatter: Optional[Formatter] = None
    documentation_engine: Optional[DocumentationEngine] = None
    consistency_analyzer: Optional[ConsistencyAnalyzer] = None
    compatibility_analyzer: Optional[CompatibilityAnalyzer] = None
    module_validator: Optional[ModuleValidator] = None
    module_importer: Optional[ModuleImporter] = None
    test_runner: Optional[TestRunner] = None

    cancel_event: threading.Event = field(default_factory=threading.Event, compare=False)
    max_workers: int = 4
    dependency_timeout: float = 300.0
    temp_root: str = field(default_factory=tempfile.gettempdir)
    default_install_roots: Tuple[str, ...] = ()
    verbose: bool = False

    def require(self, name: str):
        """Return the named boundary or raise NotConfiguredError."""
        value = getattr(self, name, None)
        if value is None:
            raise NotConfiguredError(f"pipeline context has no {name!r} configured")
        return value

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()
