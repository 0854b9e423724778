from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from .fs import atomic_write_text


def read_yaml(path: Path) -> Any:
    """Load a YAML (or JSON) document. Empty files load as an empty dict."""
    with path.open("r", encoding="utf-8-sig") as f:
        data = yaml.safe_load(f)
    return {} if data is None else data


def dump_yaml(data: Any) -> str:
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)


def write_yaml(path: Path, data: Any) -> None:
    atomic_write_text(path, dump_yaml(data))
