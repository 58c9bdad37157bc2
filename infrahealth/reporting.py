"""Run reporters: a rich console rendering and a JSON file dump."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from infrahealth.checks.models import EvaluationStatus, RunStatus, RunSummary, Severity

logger = logging.getLogger(__name__)

STATUS_STYLE = {
    EvaluationStatus.PASS: "green",
    EvaluationStatus.WARNING: "yellow",
    EvaluationStatus.FAIL: "red",
    EvaluationStatus.ERROR: "magenta",
}

SEVERITY_STYLE = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "cyan",
}


def score_style(score: int | None) -> str:
    if score is None:
        return "dim"
    if score >= 90:
        return "bold green"
    if score >= 70:
        return "bold yellow"
    return "bold red"


class ConsoleReporter:
    """Prints the summary, category scores and issues to the terminal."""

    def __init__(self, console: Console | None = None, show_issues: bool = True) -> None:
        self.console = console or Console()
        self.show_issues = show_issues

    def report(self, summary: RunSummary) -> None:
        c = self.console
        if summary.status is RunStatus.FAILED:
            c.print(Panel(f"Run {summary.run_id} failed: {summary.error}", style="bold red"))
            self._warnings(summary)
            return

        c.print(Panel(
            f"Target: {summary.target}\n"
            f"Overall score: [{score_style(summary.overall_score)}]{summary.overall_score}[/]\n"
            f"Checks: {summary.total_checks} "
            f"([green]{summary.checks_passed} pass[/], [yellow]{summary.checks_warning} warning[/], "
            f"[red]{summary.checks_failed} fail[/], [magenta]{summary.checks_error} error[/]) "
            f"in {summary.duration_seconds:.1f}s",
            title=f"Run {summary.run_id}",
            style="bold blue",
        ))

        if summary.score and summary.score.categories:
            table = Table(title="Category scores")
            table.add_column("Category")
            table.add_column("Score", justify="right")
            table.add_column("Checks", justify="right")
            table.add_column("Passed", justify="right")
            for sev in Severity:
                table.add_column(sev.value, justify="right")
            for cs in summary.score.categories:
                table.add_row(
                    cs.category_id,
                    f"[{score_style(cs.value)}]{cs.value}[/]",
                    str(cs.checks_executed),
                    str(cs.checks_passed),
                    *(str(cs.issue_counts.get(sev.value, 0)) for sev in Severity),
                )
            c.print(table)

        issues = sorted(summary.issues, key=lambda i: -i.severity.rank)
        if self.show_issues and issues:
            table = Table(title=f"Issues ({len(issues)})")
            table.add_column("Severity")
            table.add_column("Check")
            table.add_column("Title")
            table.add_column("Object")
            for issue in issues:
                table.add_row(
                    f"[{SEVERITY_STYLE[issue.severity]}]{issue.severity.value}[/]",
                    issue.check_id,
                    issue.title,
                    issue.affected_object or "",
                )
            c.print(table)
        self._warnings(summary)

    def _warnings(self, summary: RunSummary) -> None:
        for w in summary.warnings:
            self.console.print(f"[yellow]warning:[/yellow] {w}")


class JsonFileReporter:
    """Writes the full summary, results included, to a JSON file."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def report(self, summary: RunSummary) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(summary.to_dict(include_results=True), indent=2, default=str),
            encoding="utf-8",
        )
        logger.info("Wrote report to %s", self.path)
