"""CLI entry point for Conductor."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from conductor import __version__
from conductor.config import EngineConfig, load_config
from conductor.errors import AdmissionDenied, ConductorError
from conductor.logger import setup_logger

if TYPE_CHECKING:
    from conductor.budget.ledger import BudgetLedger
    from conductor.engine.orchestrator import OrchestrationResult, RouteResult
    from conductor.storage.database import Database

console = Console()

DEFAULT_HOME = Path.home() / ".conductor"


class Runtime:
    """Paths and config shared by every command."""

    def __init__(self, home: Path, verbose: bool) -> None:
        self.home = home
        self.verbose = verbose
        self.config_path = home / "config.json"
        self.history_path = home / "data" / "history.db"

    def config(self) -> EngineConfig:
        return load_config(self.config_path)

    def database(self) -> Database:
        from conductor.storage.database import Database

        db = Database(self.home)
        db.ensure_tables()
        return db

    def ledger(self, db: Database, config: EngineConfig) -> BudgetLedger:
        from conductor.budget.ledger import BudgetLedger

        ledger = BudgetLedger(config.ledger)
        ledger.restore(db.load_budgets())
        return ledger


@click.group()
@click.version_option(version=__version__, prog_name="conductor")
@click.option(
    "--home",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="CONDUCTOR_HOME",
    default=DEFAULT_HOME,
    show_default=True,
    help="Data directory",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging to stderr")
@click.pass_context
def main(ctx: click.Context, home: Path, verbose: bool) -> None:
    """Conductor: budget-aware request routing and workflow orchestration."""
    setup_logger(verbose=verbose, log_file=home / "logs" / "conductor.log")
    ctx.obj = Runtime(home, verbose)


@main.command()
@click.pass_obj
def init(rt: Runtime) -> None:
    """Initialize conductor: create the data directory, database and config."""
    db = rt.database()
    config = rt.config()
    ledger = rt.ledger(db, config)
    db.save_budgets(ledger.snapshot())

    if not rt.config_path.exists():
        rt.config_path.write_text(json.dumps({"executor": {"default_command": []}}, indent=2))

    console.print(f"[green]Conductor initialized at {rt.home}[/green]")
    console.print(f"  Database: {db.db_path}")
    console.print(f"  Config:   {rt.config_path}")


async def _route(
    rt: Runtime,
    text: str,
    optimize_for_cost: bool,
    parallel: bool,
    execute: bool,
    units: float,
    preferences: dict[str, float],
) -> tuple[RouteResult | OrchestrationResult, BudgetLedger, Database]:
    from conductor.engine.orchestrator import Orchestrator
    from conductor.engine.runner import CommandRunner
    from conductor.routing.classifier import KeywordClassifier
    from conductor.routing.directory import StaticDirectory
    from conductor.routing.history import SqliteHistoryStore

    config = rt.config()
    db = rt.database()
    ledger = rt.ledger(db, config)
    runner = CommandRunner(config.executor.worker_commands, config.executor.default_command)

    async with SqliteHistoryStore(rt.history_path, alpha=config.routing.history_decay) as history:
        orch = Orchestrator(
            KeywordClassifier(),
            StaticDirectory(),
            runner=runner,
            ledger=ledger,
            history=history,
            config=config,
            database=db,
        )
        if execute:
            result: Any = await orch.handle(
                text,
                estimated_units=units,
                optimize_for_cost=optimize_for_cost,
                parallel=parallel,
                user_preferences=preferences,
            )
        else:
            result = await orch.route(
                text,
                optimize_for_cost=optimize_for_cost,
                parallel=parallel,
                user_preferences=preferences,
            )
    return result, ledger, db


def _parse_preferences(
    ctx: click.Context, param: click.Parameter, values: tuple[str, ...]
) -> dict[str, float]:
    preferences: dict[str, float] = {}
    for item in values:
        worker, _, weight = item.partition("=")
        try:
            value = float(weight)
        except ValueError as exc:
            raise click.BadParameter(f"expected WORKER=WEIGHT, got {item!r}") from exc
        if not worker or not 0.0 <= value <= 1.0:
            raise click.BadParameter(f"weight for {worker!r} must be in [0, 1]")
        preferences[worker] = value
    return preferences


@main.command()
@click.argument("text")
@click.option("--cost", "optimize_for_cost", is_flag=True, help="Favor token efficiency")
@click.option("--serial", is_flag=True, help="Never build a parallel plan")
@click.option("--execute", is_flag=True, help="Run the workflow with the configured commands")
@click.option("--units", default=500.0, show_default=True, help="Units to reserve when executing")
@click.option(
    "--prefer",
    "preferences",
    multiple=True,
    callback=_parse_preferences,
    metavar="WORKER=WEIGHT",
    help="Preference in [0, 1] for a worker (repeatable)",
)
@click.option("--json", "as_json", is_flag=True, help="Print the raw result as JSON")
@click.pass_obj
def route(
    rt: Runtime,
    text: str,
    optimize_for_cost: bool,
    serial: bool,
    execute: bool,
    units: float,
    preferences: dict[str, float],
    as_json: bool,
) -> None:
    """Route a request and show the decision and plan."""
    try:
        result, ledger, db = asyncio.run(
            _route(rt, text, optimize_for_cost, not serial, execute, units, preferences)
        )
    except AdmissionDenied as e:
        console.print(f"[red]Admission denied:[/red] {e.message}")
        raise SystemExit(1) from e
    except ConductorError as e:
        console.print(f"[red]{e.code}:[/red] {e.message}")
        raise SystemExit(1) from e

    if execute:
        db.save_budgets(ledger.snapshot())

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
        return

    route_result = result.route if execute else result
    _print_route(route_result)
    if execute:
        _print_execution(result)


@main.command()
@click.option("--scope", type=click.Choice(["session", "day", "month", "project"]))
@click.option("--key", help="Budget key, e.g. 2026-10-19 or a project name")
@click.option("--amount", type=float, help="Set the budget amount")
@click.pass_obj
def budget(rt: Runtime, scope: str | None, key: str | None, amount: float | None) -> None:
    """Show budget utilization, or set a budget with --scope/--key/--amount."""
    config = rt.config()
    db = rt.database()
    ledger = rt.ledger(db, config)

    if amount is not None:
        if not scope or not key:
            raise click.UsageError("--amount requires --scope and --key")
        asyncio.run(ledger.set_budget(scope, key, amount))
        db.save_budgets(ledger.snapshot())
        console.print(f"[green]Budget {scope}:{key} set to {amount:g}[/green]")

    status = ledger.status(scope)
    table = Table(title="Budgets")
    table.add_column("Budget", style="cyan")
    table.add_column("Amount")
    table.add_column("Used")
    table.add_column("Remaining", style="green")
    table.add_column("Utilization")

    for b in status["budgets"]:
        style = "red" if b["is_critical"] else "yellow" if b["is_warning"] else ""
        utilization = f"{b['utilization']:.0%}"
        table.add_row(
            b["id"],
            f"{b['amount']:g}",
            f"{b['used']:g}",
            f"{b['remaining']:g}",
            f"[{style}]{utilization}[/{style}]" if style else utilization,
        )

    console.print(table)
    console.print(f"\nHealth: {status['health']}")


@main.command()
@click.option("--limit", default=20, help="Number of executions to show")
@click.pass_obj
def metrics(rt: Runtime, limit: int) -> None:
    """Show recent executions and routing outcomes."""
    db = rt.database()
    rows = db.recent_executions(limit)

    if not rows:
        console.print("[dim]No executions yet. Run `conductor route --execute` first.[/dim]")
        return

    table = Table(title="Recent Executions")
    table.add_column("Request", style="cyan")
    table.add_column("Worker", style="green")
    table.add_column("Outcome")
    table.add_column("Fallback")
    table.add_column("Confidence")
    table.add_column("Units")

    for row in rows:
        table.add_row(
            str(row["request_id"])[:16],
            str(row["worker_id"]),
            str(row["outcome"]),
            "yes" if row["fallback"] else "",
            f"{row['confidence']:.2f}",
            f"{row['units_consumed']:g}",
        )

    console.print(table)
    successes = sum(1 for r in rows if r["outcome"] == "success")
    fallbacks = sum(1 for r in rows if r["fallback"])
    console.print(
        f"\nSuccess rate: {successes / len(rows):.0%} | "
        f"Fallback rate: {fallbacks / len(rows):.0%} | "
        f"Executions: {len(rows)}"
    )


def _print_route(result: RouteResult) -> None:
    """Print decision and plan summary."""
    decision = result.decision
    request = result.request

    console.print(
        f"[bold]Request:[/bold] {request.classified_type} "
        f"({request.confidence:.0%} confidence, keywords: {', '.join(request.keywords) or '-'})"
    )
    color = "yellow" if decision.fallback else "green"
    console.print(f"[bold]Selected:[/bold] [{color}]{decision.selected}[/{color}] ({decision.score:.3f})")
    if decision.fallback:
        console.print(f"[bold]Fallback:[/bold] {decision.fallback_reason}")
    console.print(f"[bold]Reasoning:[/bold] {decision.reasoning}")

    if decision.ranking:
        table = Table(title="Candidates")
        table.add_column("Worker", style="cyan")
        table.add_column("Score", style="bold")
        for worker_id, score in decision.ranking:
            table.add_row(worker_id, f"{score:.3f}")
        console.print(table)

    plan = result.plan
    console.print(f"[bold]Plan:[/bold] {plan.mode}")
    for phase in plan.plan.phases:
        console.print(f"  Phase {phase.number}: {', '.join(phase.workers)}")
    if plan.mode == "parallel":
        console.print(f"  Speedup: {plan.plan.estimated_speedup:.2f}x")
    if plan.rejection is not None:
        console.print(f"  [dim]Parallel rejected: {plan.rejection.message}[/dim]")


def _print_execution(result: OrchestrationResult) -> None:
    """Print workflow outcome summary."""
    status_color = {"success": "green", "partial": "yellow", "failed": "red"}.get(
        result.outcome, "dim"
    )
    wf = result.workflow
    console.print(f"\n[{status_color}]Outcome: {result.outcome}[/{status_color}]")
    console.print(
        f"Steps: {wf.completed} completed, {wf.failed} failed, {wf.skipped} skipped "
        f"of {wf.total_steps}"
    )
    console.print(f"Units: {result.units_consumed:g}")
    console.print(f"Duration: {result.duration_ms / 1000:.1f}s")

    errors = [s for s in wf.steps if s.error and s.status == "failed"]
    if errors:
        console.print("\n[red]Errors:[/red]")
        for step in errors:
            console.print(f"  - {step.worker_id}: {step.error}")
