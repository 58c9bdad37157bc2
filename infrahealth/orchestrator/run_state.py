"""In-process registry for active check runs.

Each run gets an ID and a threading.Event; setting the event asks the
scheduler to stop dispatching and abandon in-flight checks.
"""

from __future__ import annotations

import threading
import uuid

# run_id -> stop_event
_active_runs: dict[str, threading.Event] = {}
_lock = threading.Lock()


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def start_run(run_id: str | None = None, stop_event: threading.Event | None = None) -> tuple[str, threading.Event]:
    """Register a run and return its ID and stop event."""
    run_id = run_id or new_run_id()
    stop_event = stop_event or threading.Event()
    with _lock:
        if run_id in _active_runs:
            raise ValueError(f"Run {run_id} is already active")
        _active_runs[run_id] = stop_event
    return run_id, stop_event


def stop_run(run_id: str) -> bool:
    """Signal the run to stop. Returns True if the run was found."""
    with _lock:
        event = _active_runs.get(run_id)
    if event:
        event.set()
        return True
    return False


def end_run(run_id: str) -> None:
    with _lock:
        _active_runs.pop(run_id, None)


def active_runs() -> list[str]:
    with _lock:
        return list(_active_runs)
