"""Entry point for the infrahealth command line."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from collections.abc import Sequence

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from infrahealth.api.server import create_app
from infrahealth.checks.catalog import CheckCatalog
from infrahealth.checks.models import RunSummary
from infrahealth.config import Settings
from infrahealth.discovery.inventory import InventoryFileDiscovery
from infrahealth.orchestrator import run_state
from infrahealth.orchestrator.pipeline import Orchestrator, Reporter, exit_code_for
from infrahealth.reporting import ConsoleReporter, JsonFileReporter, score_style
from infrahealth.storage.store import SQLiteRunStore

console = Console()
logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def build_orchestrator(
    settings: Settings,
    store: SQLiteRunStore | None = None,
    reporters: Sequence[Reporter] = (),
) -> Orchestrator:
    return Orchestrator(
        settings,
        discovery=InventoryFileDiscovery(settings.inventory_path),
        catalog=CheckCatalog(settings.definitions_path, strict=settings.strict_definitions),
        store=store,
        reporters=reporters,
    )


def run_checks(settings: Settings, args: argparse.Namespace) -> int:
    """Run the pipeline in a worker thread so Ctrl-C can request a stop."""
    store = SQLiteRunStore(settings.db_path)
    reporters: list[Reporter] = []
    if not args.json:
        reporters.append(ConsoleReporter(console))
    if args.output:
        reporters.append(JsonFileReporter(args.output))
    orchestrator = build_orchestrator(settings, store, reporters)

    run_id = run_state.new_run_id()
    stop_event = threading.Event()
    outcome: dict[str, RunSummary] = {}

    def work() -> None:
        outcome["summary"] = orchestrator.run(args.category or None, run_id=run_id, cancel_event=stop_event)

    worker = threading.Thread(target=work, name=f"run-{run_id}", daemon=True)
    worker.start()
    try:
        if args.json:
            worker.join()
        else:
            with console.status(f"[bold green]Running checks (run {run_id})..."):
                while worker.is_alive():
                    worker.join(0.2)
    except KeyboardInterrupt:
        console.print("[yellow]Stop requested, abandoning in-flight checks...[/yellow]")
        stop_event.set()
        worker.join()
    finally:
        store.close()

    summary = outcome["summary"]
    if args.json:
        print(json.dumps(summary.to_dict(include_results=True), indent=2, default=str))
    return exit_code_for(summary, settings.fail_on)


def show_history(settings: Settings, limit: int) -> int:
    store = SQLiteRunStore(settings.db_path)
    try:
        runs = store.list_runs(limit)
    finally:
        store.close()

    if not runs:
        console.print("[dim]No runs recorded yet.[/dim]")
        return 0
    table = Table(title="Run history")
    for col in ("Run", "Started", "Status", "Score", "Checks", "Critical", "High", "Medium", "Low"):
        table.add_column(col)
    for r in runs:
        score = r["overall_score"]
        table.add_row(
            r["run_id"], r["started_at"], r["status"],
            f"[{score_style(score)}]{score if score is not None else '-'}[/]",
            str(r["total_checks"]), str(r["critical_issues"]), str(r["high_issues"]),
            str(r["medium_issues"]), str(r["low_issues"]),
        )
    console.print(table)
    return 0


def show_issues(settings: Settings) -> int:
    store = SQLiteRunStore(settings.db_path)
    try:
        issues = store.get_open_issues()
    finally:
        store.close()

    if not issues:
        console.print("[green]No open issues.[/green]")
        return 0
    table = Table(title=f"Open issues ({len(issues)})")
    for col in ("ID", "Severity", "Check", "Title", "Object", "Seen", "Last detected"):
        table.add_column(col)
    for i in issues:
        table.add_row(
            str(i["issue_id"]), i["severity"], i["check_id"], i["title"],
            i["affected_object"] or "", str(i["detection_count"]), i["last_detected"],
        )
    console.print(table)
    return 0


def cleanup(settings: Settings, days: int | None) -> int:
    store = SQLiteRunStore(settings.db_path)
    try:
        removed = store.cleanup_old(days or settings.retention_days)
    finally:
        store.close()
    console.print(f"Removed {removed} runs")
    return 0


def run_server(settings: Settings) -> int:
    """Start the FastAPI server."""
    console.print(Panel("Starting infrahealth API server", style="bold green"))
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port, reload=False)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="infrahealth", description="Infrastructure health checks")
    sub = parser.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Run the enabled checks once")
    run_p.add_argument("--category", action="append", help="Only run this category (repeatable)")
    run_p.add_argument("--json", action="store_true", help="Print the summary as JSON")
    run_p.add_argument("--output", help="Also write the full summary to this JSON file")

    hist_p = sub.add_parser("history", help="List recent runs")
    hist_p.add_argument("--limit", type=int, default=20)

    sub.add_parser("issues", help="List open issues")

    clean_p = sub.add_parser("cleanup", help="Delete runs older than the retention window")
    clean_p.add_argument("--days", type=int, help="Override retention_days")

    sub.add_parser("serve", help="Start the API server")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    settings = Settings()
    configure_logging(settings)

    if args.command == "run":
        return run_checks(settings, args)
    if args.command == "history":
        return show_history(settings, args.limit)
    if args.command == "issues":
        return show_issues(settings)
    if args.command == "cleanup":
        return cleanup(settings, args.days)
    return run_server(settings)


if __name__ == "__main__":
    sys.exit(main())
