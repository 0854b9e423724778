from __future__ import annotations

import os
import tempfile
import threading
from typing import Any, Dict, Mapping, Optional

from ..github.releases import GitHubReleaseClient
from .adapters.analyzers import EncodingConsistencyAnalyzer, ManifestModuleValidator, PatternCompatibilityAnalyzer
from .adapters.manifest_yaml import YamlManifestEditor
from .adapters.markdown_docs import MarkdownDocumentationEngine
from .adapters.pwsh import (
    PesterTestRunner,
    PwshFeedClient,
    PwshModuleImporter,
    PwshModuleProvider,
    PwshSession,
    PwshSignatureTool,
)
from .adapters.staging_local import LocalStagingBuilder
from .adapters.text_formatter import TextFormatter
from .context import PipelineContext, _env_truthy, default_install_roots, default_max_workers


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = str(env.get(name, "") or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        print(f"[config][WARN] ignoring non-numeric {name}={raw!r}")
        return default


def build_context(
    env: Optional[Mapping[str, str]] = None,
    *,
    cancel_event: Optional[threading.Event] = None,
    verbose: Optional[bool] = None,
) -> PipelineContext:
    """Wire the default adapters and resolve ambient settings once.

    Environment:
      MODFORGE_PWSH            PowerShell executable (default: pwsh)
      MODFORGE_TOOL_TIMEOUT    seconds per external tool call (default: 300)
      MODFORGE_MAX_WORKERS     worker pool size
      MODFORGE_INSTALL_ROOTS   default install roots (os.pathsep separated)
      MODFORGE_TEMP            temp root for synthesized staging
      MODFORGE_VERBOSE         truthy enables verbose output
    """
    env = os.environ if env is None else env
    cancel = cancel_event if cancel_event is not None else threading.Event()
    timeout = _float_env(env, "MODFORGE_TOOL_TIMEOUT", 300.0)

    session = PwshSession(str(env.get("MODFORGE_PWSH", "") or "pwsh"), timeout=timeout, cancel_event=cancel)
    editor = YamlManifestEditor()
    feed = PwshFeedClient(session)

    return PipelineContext(
        manifest_editor=editor,
        staging_builder=LocalStagingBuilder(editor),
        version_source=feed,
        module_provider=PwshModuleProvider(session),
        signature_tool=PwshSignatureTool(session),
        feed_client=feed,
        release_client=GitHubReleaseClient(),
        formatter=TextFormatter(),
        documentation_engine=MarkdownDocumentationEngine(),
        consistency_analyzer=EncodingConsistencyAnalyzer(),
        compatibility_analyzer=PatternCompatibilityAnalyzer(),
        module_validator=ManifestModuleValidator(editor),
        module_importer=PwshModuleImporter(session),
        test_runner=PesterTestRunner(session),
        cancel_event=cancel,
        max_workers=default_max_workers(env),
        dependency_timeout=timeout,
        temp_root=str(env.get("MODFORGE_TEMP", "") or "").strip() or tempfile.gettempdir(),
        default_install_roots=default_install_roots(env),
        verbose=_env_truthy(env, "MODFORGE_VERBOSE") if verbose is None else verbose,
    )


def describe_context(context: PipelineContext) -> Dict[str, Any]:
    def _d(x: Any) -> str:
        return "" if x is None else x.__class__.__name__

    return {
        "adapters": {
            name: _d(getattr(context, name))
            for name in (
                "manifest_editor",
                "staging_builder",
                "version_source",
                "module_provider",
                "signature_tool",
                "feed_client",
                "release_client",
                "formatter",
                "documentation_engine",
                "consistency_analyzer",
                "compatibility_analyzer",
                "module_validator",
                "module_importer",
                "test_runner",
            )
        },
        "max_workers": context.max_workers,
        "dependency_timeout": context.dependency_timeout,
        "temp_root": context.temp_root,
        "default_install_roots": list(context.default_install_roots),
    }
