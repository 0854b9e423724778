from __future__ import annotations

from typing import List, Optional


class PipelineError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(PipelineError):
    """Raised when a plan input or segment combination is invalid.

    Raised before any filesystem or network side effect.
    """

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        self.problems: List[str] = list(problems or [])
        if self.problems:
            message = message + "\n" + "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(message)


class NotFoundError(PipelineError):
    """Raised when a required path or entity cannot be found."""


class StageError(PipelineError):
    """Raised when a step fails in a way that invalidates everything downstream."""


class ConflictError(PipelineError):
    """Raised when the staging directory is owned by another (or a crashed) run."""


class NotConfiguredError(PipelineError):
    """Raised when a boundary needed by the plan is not wired into the run context."""


class PipelineCancelled(PipelineError):
    """Raised when cancellation is observed."""


class ToolError(PipelineError):
    """Raised when an external tool invocation fails."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class ToolTimeoutError(ToolError):
    """Raised when an external tool exceeds its timeout; the process is killed."""


class ToolNotAvailableError(ToolError):
    """Raised when an external tool (or the requested command family) is not installed."""
