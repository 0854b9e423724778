from __future__ import annotations

import hashlib


def _hash(parts: list[str]) -> str:
    msg = "|".join([str(x) for x in parts])
    return hashlib.sha256(msg.encode("utf-8")).hexdigest()[:24]


def key_pipeline_run(*, module_name: str, source_root: str, version_expression: str, staging_root: str) -> str:
    """Stable key for one planned run; also names a synthesized staging directory."""
    return "run_" + _hash([module_name.lower(), source_root, version_expression, staging_root])
