from __future__ import annotations

from .errors import (
    PipelineError,
    ConfigurationError,
    NotFoundError,
    StageError,
    ConflictError,
    NotConfiguredError,
    PipelineCancelled,
    ToolError,
    ToolTimeoutError,
    ToolNotAvailableError,
)

from .contracts import (
    ManifestEditor,
    StagingBuilder,
    VersionSource,
    ModuleProvider,
    SignatureTool,
    FeedClient,
    ReleaseClient,
    Formatter,
    DocumentationEngine,
    ConsistencyAnalyzer,
    CompatibilityAnalyzer,
    ModuleValidator,
    ModuleImporter,
    TestRunner,
)

from .config import (
    PlanInput,
    load_plan_input,
    decode_plan_input,
    resolve_plan_input_path,
)

from .context import PipelineContext

from .factory import (
    build_context,
    describe_context,
)

__all__ = [
    "PipelineError",
    "ConfigurationError",
    "NotFoundError",
    "StageError",
    "ConflictError",
    "NotConfiguredError",
    "PipelineCancelled",
    "ToolError",
    "ToolTimeoutError",
    "ToolNotAvailableError",
    "ManifestEditor",
    "StagingBuilder",
    "VersionSource",
    "ModuleProvider",
    "SignatureTool",
    "FeedClient",
    "ReleaseClient",
    "Formatter",
    "DocumentationEngine",
    "ConsistencyAnalyzer",
    "CompatibilityAnalyzer",
    "ModuleValidator",
    "ModuleImporter",
    "TestRunner",
    "PlanInput",
    "load_plan_input",
    "decode_plan_input",
    "resolve_plan_input_path",
    "PipelineContext",
    "build_context",
    "describe_context",
]
