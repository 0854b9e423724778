from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..infra.errors import ConfigurationError

_LITERAL_RE = re.compile(r"^\d+(\.\d+){1,3}(-[0-9A-Za-z.\-]+)?$")
_NUMERIC_RE = re.compile(r"^\d+$")


@dataclass(frozen=True)
class ParsedVersion:
    numbers: Tuple[int, ...]
    prerelease: str = ""

    def __str__(self) -> str:
        base = ".".join(str(n) for n in self.numbers)
        return f"{base}-{self.prerelease}" if self.prerelease else base


@dataclass(frozen=True)
class VersionStep:
    expression: str
    version: str
    prerelease: str = ""
    current_version: Optional[str] = None
    source: str = "Literal"  # Literal|Remote|Local|Default|None
    used_auto_versioning: bool = False


def parse_version(text: Optional[str]) -> Optional[ParsedVersion]:
    """Parse ``1.2``, ``1.2.3.4`` or ``1.2.3-beta1``. Returns None when unparseable."""
    s = str(text or "").strip()
    if not s:
        return None
    if s[:1] in ("v", "V"):
        s = s[1:]
    base, _, pre = s.partition("-")
    parts = base.split(".")
    if not 1 <= len(parts) <= 4 or not all(_NUMERIC_RE.match(p) for p in parts):
        return None
    return ParsedVersion(numbers=tuple(int(p) for p in parts), prerelease=pre.strip())


def compare_versions(a: str, b: str) -> int:
    """Compare two version strings: numeric parts padded with zeros, then the
    prerelease suffix as an ordinal string. Unparseable values raise ValueError."""
    pa = parse_version(a)
    pb = parse_version(b)
    if pa is None or pb is None:
        raise ValueError(f"cannot compare versions {a!r} and {b!r}")
    return _compare_parsed(pa, pb)


def _compare_parsed(pa: ParsedVersion, pb: ParsedVersion) -> int:
    width = max(len(pa.numbers), len(pb.numbers), 4)
    na = pa.numbers + (0,) * (width - len(pa.numbers))
    nb = pb.numbers + (0,) * (width - len(pb.numbers))
    if na != nb:
        return -1 if na < nb else 1
    if pa.prerelease == pb.prerelease:
        return 0
    return -1 if pa.prerelease < pb.prerelease else 1


def version_satisfies(installed: Optional[str], *, required: Optional[str] = None, minimum: Optional[str] = None, maximum: Optional[str] = None) -> bool:
    """True when ``installed`` meets an exact pin, or lies inside [minimum, maximum]."""
    if not installed:
        return False
    if parse_version(installed) is None:
        return False
    if required:
        return compare_versions(installed, required) == 0
    if minimum and compare_versions(installed, minimum) < 0:
        return False
    if maximum and compare_versions(installed, maximum) > 0:
        return False
    return True


def is_literal_version(expression: str) -> bool:
    return bool(_LITERAL_RE.match(str(expression or "").strip()))


def is_auto_expression(expression: str) -> bool:
    return str(expression or "").strip().lower() in ("", "auto")


def validate_version_expression(expression: str) -> None:
    """Raise ConfigurationError when the expression is neither literal, auto nor an X pattern."""
    expr = str(expression or "").strip()
    if is_auto_expression(expr) or is_literal_version(expr):
        return
    _wildcard_segments(expr)


def _wildcard_segments(expression: str) -> Tuple[List[Optional[int]], int]:
    parts = expression.split(".")
    if len(parts) < 2 or len(parts) > 4:
        raise ConfigurationError(f"version expression {expression!r} must have 2 to 4 segments")
    step_index = -1
    prepared: List[Optional[int]] = []
    for i, seg in enumerate(parts):
        s = seg.strip()
        if s.upper() == "X":
            if step_index >= 0:
                raise ConfigurationError(f"version expression {expression!r} has more than one X placeholder")
            step_index = i
            prepared.append(None)
            continue
        if not _NUMERIC_RE.match(s):
            raise ConfigurationError(f"version expression segment {seg!r} in {expression!r} is not a number")
        prepared.append(int(s))
    if step_index < 0:
        raise ConfigurationError(f"version expression {expression!r} must be a literal version or contain an X placeholder")
    return prepared, step_index


def _render(parts: List[int]) -> str:
    return ".".join(str(p) for p in parts)


def next_wildcard_version(expression: str, current: Optional[str]) -> str:
    """Resolve an ``X`` pattern against the current version.

    The X segment starts at the current version's value in that position (or
    0 when the pattern already lies above the current version) and is
    incremented until the result is strictly greater than ``current``.
    """
    prepared, step_index = _wildcard_segments(expression)
    width = len(prepared)

    baseline = parse_version(current) if current else None
    base_numbers: Tuple[int, ...] = (0, 0, 0, 0)
    if baseline is not None:
        base_numbers = baseline.numbers + (0,) * (4 - len(baseline.numbers))

    def build(step_value: int) -> List[int]:
        return [step_value if i == step_index else int(p or 0) for i, p in enumerate(prepared)]

    def greater(parts: List[int]) -> bool:
        cand = tuple(parts) + (0,) * (4 - width)
        return cand > base_numbers

    prefix = tuple(int(p or 0) for p in prepared[:step_index])
    if baseline is not None and prefix < base_numbers[:step_index]:
        raise ConfigurationError(
            f"version expression {expression!r} can never exceed the current version {current}"
        )

    step_value = base_numbers[step_index] if baseline is not None else 0
    candidate = build(step_value)
    if greater(candidate):
        step_value = 0
        candidate = build(step_value)
    while not greater(candidate):
        step_value += 1
        candidate = build(step_value)
    return _render(candidate)


def step_version(expression: str, *, remote: Optional[str] = None, local: Optional[str] = None) -> VersionStep:
    """Resolve a version expression. Pure: callers supply remote and local values.

    - literal ("2.0.1", "2.0.1-beta") is returned as-is;
    - "" / "auto" resolves to the local manifest version, else "1.0.0";
    - "2.0.X" steps from the higher of remote and local (ties prefer remote).
    """
    expr = str(expression or "").strip()

    if is_literal_version(expr):
        base, _, pre = expr.partition("-")
        return VersionStep(expression=expr, version=base, prerelease=pre, source="Literal")

    if is_auto_expression(expr):
        parsed_local = parse_version(local)
        if parsed_local is not None:
            base = ".".join(str(n) for n in parsed_local.numbers)
            return VersionStep(expression=expr, version=base, prerelease=parsed_local.prerelease, current_version=local, source="Local")
        return VersionStep(expression=expr, version="1.0.0", source="Default")

    current, source = _pick_current(remote, local)
    version = next_wildcard_version(expr, current)
    return VersionStep(
        expression=expr,
        version=version,
        current_version=current,
        source=source,
        used_auto_versioning=True,
    )


def _pick_current(remote: Optional[str], local: Optional[str]) -> Tuple[Optional[str], str]:
    pr = parse_version(remote)
    pl = parse_version(local)
    if pr is None and pl is None:
        return None, "None"
    if pl is None:
        return remote, "Remote"
    if pr is None:
        return local, "Local"
    if _compare_parsed(pl, pr) > 0:
        return local, "Local"
    return remote, "Remote"


def nuget_range(*, minimum: Optional[str] = None, maximum: Optional[str] = None) -> Optional[str]:
    """Render a NuGet-style inclusive version range, e.g. ``[1.0, 2.0]``."""
    lo = str(minimum or "").strip()
    hi = str(maximum or "").strip()
    if not lo and not hi:
        return None
    return f"[{lo}, {hi}]" if hi else f"[{lo}, ]"


def version_sort_key(name: str) -> Tuple[int, int, int, int]:
    """Pad a folder name like ``1.2`` or ``1.2.3.4`` to a sortable 4-tuple."""
    arr = [0, 0, 0, 0]
    for i, part in enumerate(str(name).split(".")[:4]):
        m = re.match(r"^(\d+)", part)
        arr[i] = int(m.group(1)) if m else 0
    return arr[0], arr[1], arr[2], arr[3]
