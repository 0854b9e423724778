"""modforge: release pipeline orchestrator for script module ecosystems.

Turns a declarative plan input (build parameters, install policy and typed
configuration segments) into an ordered list of pipeline steps and runs them:
stage, build, manifest patch, docs, formatting, signing, validation, tests,
artefacts, publishing, install and cleanup.
"""

from __future__ import annotations

__all__ = ["__version__"]
__version__ = "0.1.0"
