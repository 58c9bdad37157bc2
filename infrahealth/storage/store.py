"""Run storage: SQLite history of runs, results, issues and scores.

Issues are tracked across runs by fingerprint (check, title, affected
object): a re-detected issue bumps ``last_detected`` and
``detection_count`` instead of creating a new row, and an open issue whose
check completed cleanly in a later run is resolved automatically. Every
status change is written to ``issue_history``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

from infrahealth.checks.models import (
    EvaluationStatus,
    ExecutionContext,
    ExecutionStatus,
    Issue,
    IssueStatus,
    RunStatus,
    RunSummary,
    Severity,
    thaw,
    utc_now,
)
from infrahealth.errors import PersistenceError

logger = logging.getLogger(__name__)

# Statuses that still count as a live problem
ACTIVE_ISSUE_STATUSES = (IssueStatus.OPEN.value, IssueStatus.IN_PROGRESS.value)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS runs (
        run_id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        target TEXT,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        duration_seconds REAL,
        overall_score INTEGER,
        total_checks INTEGER DEFAULT 0,
        checks_passed INTEGER DEFAULT 0,
        checks_warning INTEGER DEFAULT 0,
        checks_failed INTEGER DEFAULT 0,
        checks_error INTEGER DEFAULT 0,
        critical_issues INTEGER DEFAULT 0,
        high_issues INTEGER DEFAULT 0,
        medium_issues INTEGER DEFAULT 0,
        low_issues INTEGER DEFAULT 0,
        error TEXT,
        warnings TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_runs_started ON runs (started_at DESC);

    CREATE TABLE IF NOT EXISTS check_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        check_id TEXT NOT NULL,
        check_name TEXT,
        category TEXT NOT NULL,
        status TEXT NOT NULL,
        execution_status TEXT NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        duration_ms INTEGER,
        error_message TEXT,
        raw_output TEXT,
        issues_detected INTEGER DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_results_run ON check_results (run_id, check_id);

    CREATE TABLE IF NOT EXISTS issues (
        issue_id INTEGER PRIMARY KEY AUTOINCREMENT,
        fingerprint TEXT NOT NULL UNIQUE,
        check_id TEXT NOT NULL,
        category TEXT,
        severity TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        affected_object TEXT,
        evidence TEXT,
        recommendation TEXT,
        status TEXT NOT NULL,
        first_detected TEXT NOT NULL,
        last_detected TEXT NOT NULL,
        detection_count INTEGER DEFAULT 1,
        first_run_id TEXT,
        last_run_id TEXT,
        resolved_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_issues_status ON issues (status, severity);

    CREATE TABLE IF NOT EXISTS issue_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        issue_id INTEGER NOT NULL,
        run_id TEXT,
        old_status TEXT,
        new_status TEXT NOT NULL,
        changed_at TEXT NOT NULL,
        notes TEXT
    );

    CREATE TABLE IF NOT EXISTS scores (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        category_id TEXT,
        score_value INTEGER NOT NULL,
        checks_executed INTEGER,
        checks_passed INTEGER,
        weight REAL,
        weighted_contribution REAL,
        details TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_scores_run ON scores (run_id);

    CREATE TABLE IF NOT EXISTS inventory (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        target TEXT NOT NULL,
        discovered_at TEXT NOT NULL,
        data TEXT
    );
"""


class RunStore(Protocol):
    """What the orchestrator needs from a persistence backend."""

    def start_run(self, run_id: str, started_at: datetime, target: str = "") -> None: ...

    def save_inventory(self, run_id: str, context: ExecutionContext) -> None: ...

    def finish_run(self, summary: RunSummary) -> None: ...

    def update_warnings(self, run_id: str, warnings: list[str]) -> None: ...


def fingerprint(issue: Issue) -> str:
    key = "\x1f".join((issue.check_id, issue.title, issue.affected_object or ""))
    return hashlib.sha1(key.encode("utf-8")).hexdigest()


class SQLiteRunStore:
    """SQLite-backed run history.

    One connection shared across threads, serialized by a lock. Every
    sqlite3 error surfaces as PersistenceError.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        with self._tx() as conn:
            conn.executescript(_SCHEMA)

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                conn = self._get_conn()
                with conn:
                    yield conn
            except sqlite3.Error as e:
                raise PersistenceError(f"{self._db_path}: {e}") from e

    # -- writes ----------------------------------------------------------------

    def start_run(self, run_id: str, started_at: datetime, target: str = "") -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO runs (run_id, status, target, started_at) VALUES (?, ?, ?, ?)",
                (run_id, RunStatus.RUNNING.value, target, started_at.isoformat()),
            )

    def save_inventory(self, run_id: str, context: ExecutionContext) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO inventory (run_id, target, discovered_at, data) VALUES (?, ?, ?, ?)",
                (run_id, context.target, context.discovered_at.isoformat(),
                 json.dumps(thaw(context.inventory), default=str)),
            )

    def finish_run(self, summary: RunSummary) -> None:
        """Write the terminal run row plus its results, issues and scores."""
        counts = summary.issue_counts
        with self._tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO runs "
                "(run_id, status, target, started_at, finished_at, duration_seconds, overall_score, "
                "total_checks, checks_passed, checks_warning, checks_failed, checks_error, "
                "critical_issues, high_issues, medium_issues, low_issues, error, warnings) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    summary.run_id, summary.status.value, summary.target,
                    summary.started_at.isoformat(), summary.finished_at.isoformat(),
                    summary.duration_seconds, summary.overall_score,
                    summary.total_checks, summary.checks_passed, summary.checks_warning,
                    summary.checks_failed, summary.checks_error,
                    counts.get(Severity.CRITICAL.value, 0), counts.get(Severity.HIGH.value, 0),
                    counts.get(Severity.MEDIUM.value, 0), counts.get(Severity.LOW.value, 0),
                    summary.error, json.dumps(list(summary.warnings)),
                ),
            )

            for result in summary.results:
                conn.execute(
                    "INSERT INTO check_results "
                    "(run_id, check_id, check_name, category, status, execution_status, start_time, "
                    "end_time, duration_ms, error_message, raw_output, issues_detected) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        summary.run_id, result.check_id, result.definition.name, result.category,
                        result.status.value, result.raw.status.value,
                        result.start_time.isoformat(), result.end_time.isoformat(),
                        result.duration_ms, result.error_message,
                        json.dumps(result.raw.to_dict(), default=str), len(result.issues),
                    ),
                )

            self._track_issues(conn, summary)

            if summary.score is not None:
                for cs in summary.score.categories:
                    conn.execute(
                        "INSERT INTO scores (run_id, category_id, score_value, checks_executed, checks_passed, "
                        "weight, weighted_contribution, details) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            summary.run_id, cs.category_id, cs.value, cs.checks_executed,
                            cs.checks_passed, cs.weight, cs.weighted_contribution,
                            json.dumps(cs.to_dict()),
                        ),
                    )
                conn.execute(
                    "INSERT INTO scores (run_id, category_id, score_value, checks_executed, checks_passed, "
                    "weight, weighted_contribution, details) VALUES (?, NULL, ?, ?, ?, ?, NULL, ?)",
                    (
                        summary.run_id, summary.score.overall, summary.total_checks,
                        summary.checks_passed, summary.score.total_weight,
                        json.dumps({"warnings": list(summary.score.warnings)}),
                    ),
                )
        logger.debug("Persisted run %s (%d results)", summary.run_id, len(summary.results))

    def update_warnings(self, run_id: str, warnings: list[str]) -> None:
        """Replace the stored warnings of a finished run."""
        with self._tx() as conn:
            conn.execute("UPDATE runs SET warnings = ? WHERE run_id = ?", (json.dumps(list(warnings)), run_id))

    def _track_issues(self, conn: sqlite3.Connection, summary: RunSummary) -> None:
        now = summary.finished_at.isoformat()
        seen: set[str] = set()

        for result in summary.results:
            for issue in result.issues:
                fp = fingerprint(issue)
                if fp in seen:
                    continue
                seen.add(fp)
                row = conn.execute(
                    "SELECT issue_id, status FROM issues WHERE fingerprint = ?", (fp,),
                ).fetchone()
                evidence = json.dumps(thaw(issue.evidence), default=str) if issue.evidence else None

                if row is None:
                    cursor = conn.execute(
                        "INSERT INTO issues (fingerprint, check_id, category, severity, title, description, "
                        "affected_object, evidence, recommendation, status, first_detected, last_detected, "
                        "detection_count, first_run_id, last_run_id) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)",
                        (
                            fp, issue.check_id, result.category, issue.severity.value, issue.title,
                            issue.description, issue.affected_object, evidence, issue.recommendation,
                            IssueStatus.OPEN.value, now, now, summary.run_id, summary.run_id,
                        ),
                    )
                    self._history(conn, cursor.lastrowid, summary.run_id, None, IssueStatus.OPEN.value, now)
                    continue

                status = row["status"]
                if status == IssueStatus.RESOLVED.value:
                    self._history(
                        conn, row["issue_id"], summary.run_id, status, IssueStatus.OPEN.value, now,
                        "Detected again",
                    )
                    status = IssueStatus.OPEN.value
                conn.execute(
                    "UPDATE issues SET severity = ?, description = ?, evidence = ?, status = ?, "
                    "last_detected = ?, last_run_id = ?, detection_count = detection_count + 1, "
                    "resolved_at = NULL WHERE issue_id = ?",
                    (issue.severity.value, issue.description, evidence, status, now,
                     summary.run_id, row["issue_id"]),
                )

        # Checks that ran and were evaluated cleanly this time clear their active issues.
        completed = {
            r.check_id for r in summary.results
            if r.raw.status is ExecutionStatus.COMPLETED and r.status is not EvaluationStatus.ERROR
        }
        for check_id in completed:
            rows = conn.execute(
                "SELECT issue_id, fingerprint, status FROM issues "
                "WHERE check_id = ? AND status IN (?, ?)",
                (check_id, *ACTIVE_ISSUE_STATUSES),
            ).fetchall()
            for row in rows:
                if row["fingerprint"] in seen:
                    continue
                conn.execute(
                    "UPDATE issues SET status = ?, resolved_at = ? WHERE issue_id = ?",
                    (IssueStatus.RESOLVED.value, now, row["issue_id"]),
                )
                self._history(
                    conn, row["issue_id"], summary.run_id, row["status"], IssueStatus.RESOLVED.value,
                    now, "Not detected",
                )

    def _history(
        self,
        conn: sqlite3.Connection,
        issue_id: int | None,
        run_id: str | None,
        old: str | None,
        new: str,
        at: str,
        notes: str | None = None,
    ) -> None:
        conn.execute(
            "INSERT INTO issue_history (issue_id, run_id, old_status, new_status, changed_at, notes) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (issue_id, run_id, old, new, at, notes),
        )

    def set_issue_status(self, issue_id: int, status: IssueStatus | str, notes: str | None = None) -> bool:
        """Operator override (acknowledge, ignore, mark false positive). False if no such issue."""
        new = IssueStatus.parse(status) if not isinstance(status, IssueStatus) else status
        now = utc_now().isoformat()
        with self._tx() as conn:
            row = conn.execute("SELECT status FROM issues WHERE issue_id = ?", (issue_id,)).fetchone()
            if row is None:
                return False
            if row["status"] == new.value:
                return True
            conn.execute(
                "UPDATE issues SET status = ?, resolved_at = ? WHERE issue_id = ?",
                (new.value, now if new is IssueStatus.RESOLVED else None, issue_id),
            )
            self._history(conn, issue_id, None, row["status"], new.value, now, notes)
        return True

    # -- reads -----------------------------------------------------------------

    def list_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM runs ORDER BY started_at DESC LIMIT ?", (limit,),
            ).fetchall()
        return [_run_row(r) for r in rows]

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        """Run row plus its category scores, or None."""
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        run = _run_row(row)
        run["category_scores"] = self.get_scores(run_id)
        return run

    def get_scores(self, run_id: str) -> list[dict[str, Any]]:
        """Category scores for a run (the overall row has no category and is omitted)."""
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT category_id, score_value, checks_executed, checks_passed, weight, "
                "weighted_contribution FROM scores WHERE run_id = ? AND category_id IS NOT NULL "
                "ORDER BY id",
                (run_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_check_results(self, run_id: str) -> list[dict[str, Any]]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT id, run_id, check_id, check_name, category, status, execution_status, "
                "start_time, end_time, duration_ms, error_message, issues_detected "
                "FROM check_results WHERE run_id = ? ORDER BY category, check_id",
                (run_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_open_issues(self, severity: Severity | str | None = None) -> list[dict[str, Any]]:
        """Open and in-progress issues, most severe first."""
        query = "SELECT * FROM issues WHERE status IN (?, ?)"
        params: list[Any] = list(ACTIVE_ISSUE_STATUSES)
        if severity is not None:
            query += " AND severity = ?"
            params.append(Severity.parse(severity).value)
        query += (
            " ORDER BY CASE severity WHEN 'Critical' THEN 0 WHEN 'High' THEN 1 "
            "WHEN 'Medium' THEN 2 ELSE 3 END, last_detected DESC"
        )
        with self._tx() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_issue_row(r) for r in rows]

    def get_issue_history(self, issue_id: int) -> list[dict[str, Any]]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM issue_history WHERE issue_id = ? ORDER BY id", (issue_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def cleanup_old(self, days: int = 90) -> int:
        """Remove runs (and their results, scores and inventory) older than N days."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        with self._tx() as conn:
            old = [r["run_id"] for r in conn.execute(
                "SELECT run_id FROM runs WHERE started_at < ?", (cutoff,),
            ).fetchall()]
            for table in ("check_results", "scores", "inventory"):
                conn.executemany(f"DELETE FROM {table} WHERE run_id = ?", [(r,) for r in old])
            conn.executemany("DELETE FROM runs WHERE run_id = ?", [(r,) for r in old])
        if old:
            logger.info("Removed %d runs older than %d days", len(old), days)
        return len(old)

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None


def _run_row(row: sqlite3.Row) -> dict[str, Any]:
    d = dict(row)
    d["warnings"] = json.loads(d["warnings"]) if d.get("warnings") else []
    return d


def _issue_row(row: sqlite3.Row) -> dict[str, Any]:
    d = dict(row)
    d["evidence"] = json.loads(d["evidence"]) if d.get("evidence") else None
    return d
