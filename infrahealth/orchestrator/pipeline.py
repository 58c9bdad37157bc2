"""Run orchestrator: sequences discovery, execution, evaluation and scoring.

Flow:
1. Discovery produces the execution context (target inventory)
2. Catalogue yields the enabled definitions, optionally per category
3. Scheduler runs every check once under the concurrency ceiling
4. Rule engine classifies each raw result
5. Scorer rolls issues up into category and overall scores
6. Store and reporters receive the summary
7. The RunSummary goes back to the caller

``run()`` never raises. Anything that breaks before the scheduler starts
turns the run into ``Failed`` with no scores; persistence and reporter
problems only add warnings to a ``Completed`` run.

Usage:
    orchestrator = Orchestrator(settings, InventoryFileDiscovery(path), CheckCatalog(defs))
    summary = orchestrator.run(categories=["DNS"])
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Sequence
from dataclasses import replace
from datetime import datetime
from types import MappingProxyType
from typing import Protocol

from infrahealth.checks.catalog import CheckCatalog
from infrahealth.checks.models import (
    CheckDefinition,
    EvaluatedResult,
    EvaluationStatus,
    RunStatus,
    RunSummary,
    ScoreReport,
    Severity,
    utc_now,
)
from infrahealth.config import Settings
from infrahealth.discovery.inventory import Discovery
from infrahealth.engine.evaluator import Evaluator
from infrahealth.engine.executor import CheckExecutor
from infrahealth.engine.scoring import Scorer
from infrahealth.errors import DefinitionError, DiscoveryError, PersistenceError
from infrahealth.orchestrator import run_state
from infrahealth.storage.store import RunStore

logger = logging.getLogger(__name__)

EXIT_HEALTHY = 0
EXIT_ISSUES = 1
EXIT_FAILED = 2


class Reporter(Protocol):
    def report(self, summary: RunSummary) -> None: ...


class Orchestrator:
    """Runs the check pipeline end to end and assembles a RunSummary."""

    def __init__(
        self,
        settings: Settings,
        discovery: Discovery,
        catalog: CheckCatalog,
        store: RunStore | None = None,
        reporters: Sequence[Reporter] = (),
        executor: CheckExecutor | None = None,
        evaluator: Evaluator | None = None,
        scorer: Scorer | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.discovery = discovery
        self.catalog = catalog
        self.store = store
        self.reporters = list(reporters)
        self.log = log or logger
        self.executor = executor or CheckExecutor(log=self.log.getChild("executor"))
        self.evaluator = evaluator or Evaluator(log=self.log.getChild("evaluator"))
        # None -> built per run from settings and the freshly loaded catalogue
        self.scorer = scorer

    def run(
        self,
        categories: Iterable[str] | None = None,
        *,
        run_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RunSummary:
        try:
            run_id, stop_event = run_state.start_run(run_id, cancel_event)
        except ValueError as e:
            now = utc_now()
            self.log.error("%s", e)
            return RunSummary(run_id=run_id or "", status=RunStatus.FAILED, started_at=now, finished_at=now, error=str(e))

        started_at = utc_now()
        warnings: list[str] = []
        try:
            summary = self._run(run_id, started_at, categories, stop_event, warnings)
        except Exception as e:
            self.log.exception("Run %s aborted", run_id)
            summary = self._failed(run_id, started_at, "", f"{type(e).__name__}: {e}", warnings)
            self._persist(summary, warnings)
            summary = self._sync_warnings(summary, warnings)
        finally:
            run_state.end_run(run_id)

        self.log.info(
            "Run %s %s: score=%s, %d checks (%d pass, %d warning, %d fail, %d error) in %.1fs",
            summary.run_id, summary.status.value, summary.overall_score, summary.total_checks,
            summary.checks_passed, summary.checks_warning, summary.checks_failed,
            summary.checks_error, summary.duration_seconds,
        )
        return summary

    def _run(
        self,
        run_id: str,
        started_at: datetime,
        categories: Iterable[str] | None,
        stop_event: threading.Event,
        warnings: list[str],
    ) -> RunSummary:
        self.log.info("Run %s started", run_id)
        self._store_call("start_run", warnings, run_id, started_at)

        # 1. Discovery
        try:
            context = self.discovery.discover()
        except DiscoveryError as e:
            self.log.error("Run %s: discovery failed: %s", run_id, e)
            return self._finish_failed(run_id, started_at, "", f"Discovery failed: {e}", warnings)

        # 2. Definitions
        try:
            self.catalog.refresh()
            definitions = self.catalog.enabled(categories)
        except DefinitionError as e:
            self.log.error("Run %s: loading definitions failed: %s", run_id, e)
            return self._finish_failed(run_id, started_at, context.target, f"Definitions failed: {e}", warnings)

        if not definitions:
            warnings.append("No enabled checks matched the selection")
            self.log.warning("Run %s: no enabled checks matched", run_id)

        # 3. Execute
        t0 = time.perf_counter()
        raws = self.executor.run_batch(
            definitions,
            context,
            self.settings.max_parallel_jobs,
            self.settings.execution_timeout,
            cancel_event=stop_event,
        )
        self.log.debug("Run %s: execution took %.2fs", run_id, time.perf_counter() - t0)

        # 4. Evaluate
        results = self.evaluator.evaluate_batch(raws, definitions)
        results.sort(key=lambda r: (r.category, r.check_id))

        # 5. Score
        scorer = self.scorer or Scorer(self.settings.scoring_config(self.catalog), log=self.log.getChild("scoring"))
        report = scorer.score(results)
        warnings.extend(report.warnings)

        summary = self._summarize(run_id, started_at, context.target, definitions, results, report)

        # 6. Persist and report
        self._store_call("save_inventory", warnings, run_id, context)
        stored = replace(summary, warnings=tuple(warnings))
        self._persist(stored, warnings)
        summary = replace(stored, warnings=tuple(warnings))
        for reporter in self.reporters:
            try:
                reporter.report(summary)
            except Exception as e:
                self.log.exception("Reporter %s failed", type(reporter).__name__)
                warnings.append(f"Reporter {type(reporter).__name__} failed: {e}")
        return self._sync_warnings(stored, warnings)

    def _summarize(
        self,
        run_id: str,
        started_at: datetime,
        target: str,
        definitions: list[CheckDefinition],
        results: list[EvaluatedResult],
        report: ScoreReport,
    ) -> RunSummary:
        by_status = {s: 0 for s in EvaluationStatus}
        issue_counts = {s.value: 0 for s in Severity}
        for result in results:
            by_status[result.status] += 1
            for issue in result.issues:
                issue_counts[issue.severity.value] += 1

        return RunSummary(
            run_id=run_id,
            status=RunStatus.COMPLETED,
            started_at=started_at,
            finished_at=utc_now(),
            target=target,
            total_checks=len(results),
            checks_passed=by_status[EvaluationStatus.PASS],
            checks_warning=by_status[EvaluationStatus.WARNING],
            checks_failed=by_status[EvaluationStatus.FAIL],
            checks_error=by_status[EvaluationStatus.ERROR],
            issue_counts=MappingProxyType(issue_counts),
            overall_score=report.overall,
            score=report,
            results=tuple(results),
        )

    # -- failure paths ---------------------------------------------------------

    def _failed(
        self, run_id: str, started_at: datetime, target: str, error: str, warnings: list[str],
    ) -> RunSummary:
        return RunSummary(
            run_id=run_id,
            status=RunStatus.FAILED,
            started_at=started_at,
            finished_at=utc_now(),
            target=target,
            error=error,
            warnings=tuple(warnings),
        )

    def _finish_failed(
        self, run_id: str, started_at: datetime, target: str, error: str, warnings: list[str],
    ) -> RunSummary:
        summary = self._failed(run_id, started_at, target, error, warnings)
        self._persist(summary, warnings)
        return self._sync_warnings(summary, warnings)

    # -- persistence -----------------------------------------------------------

    def _persist(self, summary: RunSummary, warnings: list[str]) -> None:
        self._store_call("finish_run", warnings, summary)
        if self.store is None or not self.settings.enable_auto_cleanup:
            return
        cleanup = getattr(self.store, "cleanup_old", None)
        if cleanup is None:
            return
        try:
            cleanup(self.settings.retention_days)
        except PersistenceError as e:
            self.log.error("Retention cleanup failed: %s", e)
            warnings.append(f"Retention cleanup failed: {e}")

    def _sync_warnings(self, stored: RunSummary, warnings: list[str]) -> RunSummary:
        """Write warnings raised after the run row was stored, and return the final summary."""
        if tuple(warnings) != stored.warnings:
            self._store_call("update_warnings", warnings, stored.run_id, list(warnings))
        return replace(stored, warnings=tuple(warnings))

    def _store_call(self, method: str, warnings: list[str], *args: object) -> None:
        if self.store is None:
            return
        try:
            getattr(self.store, method)(*args)
        except Exception as e:
            self.log.error("Persistence failure in %s: %s", method, e, exc_info=True)
            warnings.append(f"Persistence failed ({method}): {e}")


def exit_code_for(summary: RunSummary, fail_on: Severity | str = Severity.CRITICAL) -> int:
    """Process exit code for a finished run.

    0 when healthy, 1 when any issue is at or above ``fail_on``, 2 when the
    run itself failed.
    """
    if summary.status is not RunStatus.COMPLETED:
        return EXIT_FAILED
    threshold = Severity.parse(fail_on)
    for severity in Severity:
        if severity.rank >= threshold.rank and summary.issue_counts.get(severity.value, 0) > 0:
            return EXIT_ISSUES
    return EXIT_HEALTHY
