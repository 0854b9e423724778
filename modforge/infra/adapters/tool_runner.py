from __future__ import annotations

import os
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from ..errors import PipelineCancelled, ToolError, ToolNotAvailableError, ToolTimeoutError

_POLL_SECONDS = 0.2


def run_tool(
    cmd: List[str],
    *,
    timeout: float,
    cancel_event: Optional[threading.Event] = None,
    cwd: Optional[Path] = None,
    extra_env: Optional[Mapping[str, str]] = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """Run an external tool with a hard timeout and cooperative cancellation.

    The process is killed when the timeout expires (ToolTimeoutError) or the
    cancel event is set (PipelineCancelled). A missing executable raises
    ToolNotAvailableError; a non-zero exit raises ToolError when ``check``.
    """
    env: Optional[Dict[str, str]] = None
    if extra_env:
        env = dict(os.environ)
        env.update({k: str(v) for k, v in extra_env.items()})

    try:
        proc = subprocess.Popen(
            cmd,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except FileNotFoundError as e:
        raise ToolNotAvailableError(f"tool not found: {cmd[0]}") from e

    deadline = time.monotonic() + float(timeout)
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if cancel_event is not None and cancel_event.is_set():
                _kill(proc)
                raise PipelineCancelled(f"cancelled: {cmd[0]}")
            if time.monotonic() >= deadline:
                out = _kill(proc)
                raise ToolTimeoutError(f"{cmd[0]} timed out after {timeout:g}s", output=out)

    cp = subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)
    if check and cp.returncode != 0:
        detail = (cp.stderr or cp.stdout or "").strip()
        raise ToolError(f"{cmd[0]} exited with {cp.returncode}: {detail[:2000]}", returncode=cp.returncode, output=detail)
    return cp


def _kill(proc: subprocess.Popen) -> str:
    proc.kill()
    stdout, stderr = proc.communicate()
    return ((stdout or "") + (stderr or "")).strip()
