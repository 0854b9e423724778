from __future__ import annotations

from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class StatusInputs:
    step_statuses: Dict[str, str]  # step key -> status
    aborted: bool
    cancelled: bool


def reduce_pipeline_status(inputs: StatusInputs) -> str:
    """Compute the canonical pipeline status.

    Canonical outputs:
      - CANCELLED: cancellation observed before the last step finished
      - FAILED: a stage-fatal error (or a fail-fast policy) aborted the run
      - PARTIAL: every step ran but at least one item failed
      - SUCCEEDED: every step completed (warnings allowed)
    """

    if inputs.cancelled:
        return "CANCELLED"
    if inputs.aborted:
        return "FAILED"

    statuses = [str(s or "").upper() for s in inputs.step_statuses.values()]
    if any(s == "CANCELLED" for s in statuses):
        return "CANCELLED"
    if any(s == "FAILED" for s in statuses):
        return "PARTIAL"
    return "SUCCEEDED"
