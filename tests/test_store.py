"""Tests for SQLite run storage."""

from __future__ import annotations

import sqlite3
from datetime import timedelta
from pathlib import Path
from types import MappingProxyType

import pytest

from helpers import make_definition, make_raw
from infrahealth.checks.models import (
    EvaluatedResult,
    EvaluationStatus,
    ExecutionContext,
    ExecutionStatus,
    Issue,
    IssueStatus,
    RunStatus,
    RunSummary,
    Severity,
    utc_now,
)
from infrahealth.engine.scoring import Scorer, ScoringConfig
from infrahealth.errors import PersistenceError
from infrahealth.storage.store import SQLiteRunStore, fingerprint


@pytest.fixture
def store(tmp_path: Path):
    s = SQLiteRunStore(tmp_path / "data" / "runs.db")
    yield s
    s.close()


def _issue(check_id: str = "REP-001", title: str = "Replication failing", obj: str | None = "dc02",
           severity: Severity = Severity.HIGH) -> Issue:
    return Issue(severity=severity, title=title, description="", check_id=check_id, affected_object=obj,
                 evidence=MappingProxyType({"failures": 3}))


def _result(check_id: str = "REP-001", issues: tuple[Issue, ...] = (),
            exec_status: ExecutionStatus = ExecutionStatus.COMPLETED) -> EvaluatedResult:
    status = EvaluationStatus.FAIL if issues else EvaluationStatus.PASS
    return EvaluatedResult(
        definition=make_definition(check_id, category="Replication"),
        status=status,
        raw=make_raw(check_id, status=exec_status, fields={"failures": len(issues)}),
        issues=issues,
    )


def _summary(run_id: str, *results: EvaluatedResult, started_at=None) -> RunSummary:
    started = started_at or utc_now()
    report = Scorer(ScoringConfig(category_weights={"Replication": 1})).score(results)
    counts = {s.value: 0 for s in Severity}
    for r in results:
        for i in r.issues:
            counts[i.severity.value] += 1
    return RunSummary(
        run_id=run_id,
        status=RunStatus.COMPLETED,
        started_at=started,
        finished_at=started + timedelta(seconds=2),
        target="corp.example.com",
        total_checks=len(results),
        checks_passed=sum(r.status is EvaluationStatus.PASS for r in results),
        checks_failed=sum(r.status is EvaluationStatus.FAIL for r in results),
        issue_counts=counts,
        overall_score=report.overall,
        score=report,
        results=tuple(results),
    )


class TestRuns:
    def test_start_then_finish(self, store) -> None:
        store.start_run("r1", utc_now(), "corp.example.com")
        assert store.get_run("r1")["status"] == "Running"

        store.finish_run(_summary("r1", _result(issues=(_issue(),))))
        run = store.get_run("r1")
        assert run["status"] == "Completed"
        assert run["overall_score"] == 95
        assert run["high_issues"] == 1
        assert run["warnings"] == []
        assert run["category_scores"] == [{
            "category_id": "Replication", "score_value": 95, "checks_executed": 1,
            "checks_passed": 0, "weight": 1.0, "weighted_contribution": 95.0,
        }]

    def test_check_results(self, store) -> None:
        store.finish_run(_summary("r1", _result("A"), _result("B", issues=(_issue("B"),))))
        rows = store.get_check_results("r1")
        assert [(r["check_id"], r["status"], r["issues_detected"]) for r in rows] == [
            ("A", "Pass", 0), ("B", "Fail", 1),
        ]

    def test_list_runs_newest_first(self, store) -> None:
        now = utc_now()
        store.finish_run(_summary("old", started_at=now - timedelta(hours=1)))
        store.finish_run(_summary("new", started_at=now))
        assert [r["run_id"] for r in store.list_runs()] == ["new", "old"]
        assert len(store.list_runs(limit=1)) == 1

    def test_unknown_run(self, store) -> None:
        assert store.get_run("missing") is None

    def test_update_warnings(self, store) -> None:
        store.finish_run(_summary("r1"))
        store.update_warnings("r1", ["Reporter JsonFileReporter failed: disk full"])
        assert store.get_run("r1")["warnings"] == ["Reporter JsonFileReporter failed: disk full"]

    def test_save_inventory(self, store) -> None:
        store.save_inventory("r1", ExecutionContext.build("corp", {"dcs": ["dc01"]}))
        with store._tx() as conn:
            row = conn.execute("SELECT target, data FROM inventory WHERE run_id = 'r1'").fetchone()
        assert row["target"] == "corp"
        assert '"dc01"' in row["data"]

    def test_failed_run_without_score(self, store) -> None:
        now = utc_now()
        store.finish_run(RunSummary(run_id="f", status=RunStatus.FAILED, started_at=now, finished_at=now,
                                    error="Discovery failed: boom"))
        run = store.get_run("f")
        assert run["overall_score"] is None
        assert run["category_scores"] == []


class TestIssueTracking:
    def test_redetection_updates_same_row(self, store) -> None:
        store.finish_run(_summary("r1", _result(issues=(_issue(),))))
        store.finish_run(_summary("r2", _result(issues=(_issue(),))))
        [issue] = store.get_open_issues()
        assert issue["detection_count"] == 2
        assert issue["first_run_id"] == "r1"
        assert issue["last_run_id"] == "r2"
        assert issue["evidence"] == {"failures": 3}

    def test_distinct_objects_are_distinct_issues(self, store) -> None:
        store.finish_run(_summary("r1", _result(issues=(_issue(obj="dc02"), _issue(obj="dc03")))))
        assert len(store.get_open_issues()) == 2

    def test_auto_resolve_and_reopen(self, store) -> None:
        store.finish_run(_summary("r1", _result(issues=(_issue(),))))
        issue_id = store.get_open_issues()[0]["issue_id"]

        store.finish_run(_summary("r2", _result()))
        assert store.get_open_issues() == []

        store.finish_run(_summary("r3", _result(issues=(_issue(),))))
        assert store.get_open_issues()[0]["issue_id"] == issue_id

        history = [(h["old_status"], h["new_status"], h["notes"]) for h in store.get_issue_history(issue_id)]
        assert history == [
            (None, "Open", None),
            ("Open", "Resolved", "Not detected"),
            ("Resolved", "Open", "Detected again"),
        ]

    def test_failed_execution_does_not_resolve(self, store) -> None:
        store.finish_run(_summary("r1", _result(issues=(_issue(),))))
        store.finish_run(_summary("r2", _result(exec_status=ExecutionStatus.TIMED_OUT)))
        assert len(store.get_open_issues()) == 1

    def test_rule_evaluation_error_does_not_resolve(self, store) -> None:
        store.finish_run(_summary("r1", _result(issues=(_issue(),))))
        broken = EvaluatedResult(
            definition=make_definition("REP-001", category="Replication"),
            status=EvaluationStatus.ERROR,
            raw=make_raw("REP-001", fields={"failures": "n/a"}),
            issues=(_issue(title="Rule evaluation failed", obj=None),),
            error_message="Field 'failures' (str) cannot be ordered against 0",
        )
        store.finish_run(_summary("r2", broken))
        titles = sorted(i["title"] for i in store.get_open_issues())
        assert titles == ["Replication failing", "Rule evaluation failed"]

    def test_open_issues_ordered_and_filtered(self, store) -> None:
        store.finish_run(_summary("r1", _result(issues=(
            _issue(title="low one", severity=Severity.LOW),
            _issue(title="critical one", severity=Severity.CRITICAL),
        ))))
        assert [i["title"] for i in store.get_open_issues()] == ["critical one", "low one"]
        assert [i["title"] for i in store.get_open_issues("low")] == ["low one"]

    def test_set_issue_status(self, store) -> None:
        store.finish_run(_summary("r1", _result(issues=(_issue(),))))
        issue_id = store.get_open_issues()[0]["issue_id"]
        assert store.set_issue_status(issue_id, "false_positive", notes="expected on lab DCs")
        assert store.get_open_issues() == []
        last = store.get_issue_history(issue_id)[-1]
        assert last["new_status"] == IssueStatus.FALSE_POSITIVE.value
        assert last["notes"] == "expected on lab DCs"

    def test_set_status_unknown_issue(self, store) -> None:
        assert store.set_issue_status(999, IssueStatus.IGNORED) is False

    def test_fingerprint_stable(self) -> None:
        assert fingerprint(_issue()) == fingerprint(_issue())
        assert fingerprint(_issue(obj="dc02")) != fingerprint(_issue(obj="dc03"))


class TestCleanup:
    def test_removes_old_runs(self, store) -> None:
        now = utc_now()
        store.finish_run(_summary("ancient", _result(), started_at=now - timedelta(days=200)))
        store.finish_run(_summary("recent", _result(), started_at=now))
        assert store.cleanup_old(90) == 1
        assert [r["run_id"] for r in store.list_runs()] == ["recent"]
        assert store.get_check_results("ancient") == []
        assert store.get_scores("ancient") == []


class TestErrors:
    def test_sqlite_errors_wrapped(self, store) -> None:
        with pytest.raises(PersistenceError):
            with store._tx() as conn:
                conn.execute("SELECT * FROM no_such_table")

    def test_unusable_database(self, tmp_path: Path) -> None:
        path = tmp_path / "not_a_db.db"
        path.write_bytes(b"this is not sqlite" * 100)
        with pytest.raises(PersistenceError):
            SQLiteRunStore(path)

    def test_database_file_created(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "dir" / "runs.db"
        SQLiteRunStore(path).close()
        assert path.exists()
        with sqlite3.connect(path) as conn:
            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"runs", "check_results", "issues", "issue_history", "scores", "inventory"} <= tables
