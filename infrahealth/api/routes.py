"""API routes for runs, scores and issues.

Endpoints:
  GET  /api/health                 liveness + active runs
  GET  /api/runs                   recent runs
  GET  /api/runs/{run_id}          run detail with category scores
  GET  /api/runs/{run_id}/results  per-check results of a run
  POST /api/runs                   start a run in the background
  POST /api/runs/{run_id}/cancel   request a stop for an active run
  GET  /api/issues                 open issues, most severe first
  PATCH /api/issues/{issue_id}     change an issue's status
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from infrahealth import __version__
from infrahealth.checks.models import IssueStatus, Severity
from infrahealth.orchestrator import run_state
from infrahealth.orchestrator.pipeline import Orchestrator
from infrahealth.storage.store import SQLiteRunStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ── Request models ───────────────────────────────────────────────────────

class StartRunBody(BaseModel):
    categories: list[str] | None = None


class IssueStatusBody(BaseModel):
    status: str
    notes: str | None = None


# ── Helpers ──────────────────────────────────────────────────────────────

def _store(request: Request) -> SQLiteRunStore:
    return request.app.state.store  # type: ignore[no-any-return]


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator  # type: ignore[no-any-return]


# ── Endpoints ────────────────────────────────────────────────────────────

@router.get("/health")
def health() -> dict[str, Any]:
    return {"status": "ok", "version": __version__, "active_runs": run_state.active_runs()}


@router.get("/runs")
def list_runs(request: Request, limit: int = 20) -> dict[str, Any]:
    return {"runs": _store(request).list_runs(limit)}


@router.get("/runs/{run_id}")
def get_run(run_id: str, request: Request) -> dict[str, Any]:
    run = _store(request).get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return run


@router.get("/runs/{run_id}/results")
def get_run_results(run_id: str, request: Request) -> dict[str, Any]:
    store = _store(request)
    if store.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return {"run_id": run_id, "results": store.get_check_results(run_id)}


@router.post("/runs", status_code=202)
def start_run(request: Request, body: StartRunBody | None = None) -> dict[str, Any]:
    """Kick off a run on a worker thread; poll GET /api/runs/{id} for progress."""
    orchestrator = _orchestrator(request)
    run_id = run_state.new_run_id()
    categories = body.categories if body else None

    def work() -> None:
        summary = orchestrator.run(categories, run_id=run_id)
        logger.info("Background run %s finished: %s", run_id, summary.status.value)

    threading.Thread(target=work, name=f"run-{run_id}", daemon=True).start()
    return {"run_id": run_id, "status": "started"}


@router.post("/runs/{run_id}/cancel")
def cancel_run(run_id: str) -> dict[str, Any]:
    if not run_state.stop_run(run_id):
        raise HTTPException(status_code=404, detail=f"No active run: {run_id}")
    return {"run_id": run_id, "status": "stop_requested"}


@router.get("/issues")
def list_issues(request: Request, severity: str | None = None) -> dict[str, Any]:
    if severity is not None:
        try:
            severity = Severity.parse(severity).value
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from None
    issues = _store(request).get_open_issues(severity)
    return {"issues": issues, "count": len(issues)}


@router.patch("/issues/{issue_id}")
def update_issue(issue_id: int, body: IssueStatusBody, request: Request) -> dict[str, Any]:
    try:
        status = IssueStatus.parse(body.status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    if not _store(request).set_issue_status(issue_id, status, body.notes):
        raise HTTPException(status_code=404, detail=f"Issue not found: {issue_id}")
    return {"issue_id": issue_id, "status": status.value}
