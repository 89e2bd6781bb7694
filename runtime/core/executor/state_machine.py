"""Agent job lifecycle state machine.

Canonical lifecycle:
queued -> running -> done | failed | skipped

Notes:
- Only the scheduler loop moves a job out of `queued`, and only via claim.
- Terminal jobs are retained forever and never re-claimed.
- The abandoned-claim reaper is the one sanctioned `running -> queued` edge;
  it lives in the store (`requeue_abandoned`) and never touches terminal jobs.
"""

from __future__ import annotations

from errors import ConflictError, ContractViolationError


QUEUED = "queued"
RUNNING = "running"
DONE = "done"
FAILED = "failed"
SKIPPED = "skipped"

_TERMINAL_STATES = {DONE, FAILED, SKIPPED}

_ALLOWED: dict[str, set[str]] = {
    QUEUED: {RUNNING},
    RUNNING: {DONE, FAILED, SKIPPED},
    DONE: set(),
    FAILED: set(),
    SKIPPED: set(),
}


def is_terminal(status: str) -> bool:
    return status in _TERMINAL_STATES


def require_terminal(status: str) -> None:
    if not is_terminal(status):
        raise ContractViolationError(f"finalize requires a terminal status (got {status})", code="NON_TERMINAL_FINALIZE")


def check_transition(current: str, new: str) -> bool:
    """Return False for a no-op (same status), True for a legal move, raise otherwise."""
    if new == current:
        return False

    if is_terminal(current):
        raise ConflictError(f"Job is terminal; cannot transition from {current} to {new}")

    allowed = _ALLOWED.get(current)
    if allowed is None or new not in allowed:
        raise ConflictError(f"Invalid job status transition: {current} -> {new}")
    return True
