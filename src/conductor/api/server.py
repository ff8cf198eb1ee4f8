"""FastAPI server for programmatic routing and budget access."""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any

import click
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from conductor import __version__
from conductor.config import load_config
from conductor.engine.orchestrator import Orchestrator
from conductor.engine.runner import CommandRunner
from conductor.errors import AdmissionDenied, ConductorError
from conductor.routing.classifier import KeywordClassifier
from conductor.routing.directory import StaticDirectory
from conductor.storage.database import Database

# Error code -> HTTP status
_STATUS_BY_CODE = {
    AdmissionDenied.code: 402,
    "CONFIG_ERROR": 500,
    "BUDGET_LEDGER_CONTENTION": 503,
}


def _preferences(body: dict[str, Any]) -> dict[str, float]:
    """Per-worker preferences from a request body; each must be in [0, 1]."""
    preferences = {str(k): float(v) for k, v in (body.get("preferences") or {}).items()}
    bad = sorted(k for k, v in preferences.items() if not 0.0 <= v <= 1.0)
    if bad:
        raise ValueError(f"preferences must be in [0, 1]: {', '.join(bad)}")
    return preferences


def create_app(data_dir: Path | None = None) -> FastAPI:
    """Build the API around one orchestrator rooted at ``data_dir``."""
    home = data_dir or Path(os.environ.get("CONDUCTOR_HOME", Path.home() / ".conductor"))
    config = load_config(home / "config.json")
    db = Database(home)
    orch = Orchestrator(
        KeywordClassifier(),
        StaticDirectory(),
        runner=CommandRunner(config.executor.worker_commands, config.executor.default_command),
        config=config,
        database=db,
    )
    started = time.monotonic()
    ready = False

    app = FastAPI(
        title="Conductor API",
        version=__version__,
        description="Budget-aware request routing and workflow orchestration",
    )
    app.state.orchestrator = orch

    def _ensure_ready() -> None:
        nonlocal ready
        if not ready:
            db.ensure_tables()
            orch.ledger.restore(db.load_budgets())
            ready = True

    @app.exception_handler(ConductorError)
    async def conductor_error(request: Request, exc: ConductorError) -> JSONResponse:
        content: dict[str, Any] = exc.to_dict()
        if isinstance(exc, AdmissionDenied):
            content["remaining"] = exc.remaining
        return JSONResponse(status_code=_STATUS_BY_CODE.get(exc.code, 400), content=content)

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        """Health check."""
        uptime = time.monotonic() - started
        return {
            "status": "ok",
            "version": __version__,
            "uptime_seconds": round(uptime, 1),
            "budget_health": orch.ledger.status()["health"],
            "metrics_health": orch.metrics.report()["health"],
        }

    @app.post("/api/route")
    async def route(body: dict[str, Any]) -> dict[str, Any]:
        """Classify, score, decide and plan a request without executing it."""
        text = body.get("text", "")
        if not text:
            return {"error": "text is required"}
        try:
            preferences = _preferences(body)
        except ValueError as e:
            return {"error": str(e)}
        _ensure_ready()
        result = await orch.route(
            text,
            body.get("context") or {},
            optimize_for_cost=bool(body.get("optimize_for_cost", False)),
            parallel=bool(body.get("parallel", True)),
            user_preferences=preferences,
        )
        return result.to_dict()

    @app.post("/api/execute")
    async def execute(body: dict[str, Any]) -> dict[str, Any]:
        """Reserve budget, route and run a request end to end."""
        text = body.get("text", "")
        if not text:
            return {"error": "text is required"}
        try:
            preferences = _preferences(body)
        except ValueError as e:
            return {"error": str(e)}
        _ensure_ready()
        result = await orch.handle(
            text,
            body.get("context") or {},
            estimated_units=float(body.get("estimated_units", 500.0)),
            optimize_for_cost=bool(body.get("optimize_for_cost", False)),
            parallel=bool(body.get("parallel", True)),
            user_preferences=preferences,
        )
        db.save_budgets(orch.ledger.snapshot())
        return result.to_dict()

    @app.get("/api/budget")
    async def budget(scope: str | None = None) -> dict[str, Any]:
        """Budget utilization and recent alerts."""
        _ensure_ready()
        try:
            status = orch.ledger.status(scope)
        except ValueError as e:
            return {"error": str(e)}
        status["alerts"] = [
            {"level": a.level, "budget_id": a.budget_id, "message": a.message}
            for a in orch.ledger.alerts()
        ]
        status["usage"] = orch.ledger.analytics()
        return status

    @app.post("/api/budget")
    async def set_budget(body: dict[str, Any]) -> dict[str, Any]:
        """Create or resize a budget."""
        missing = [k for k in ("scope", "key", "amount") if k not in body]
        if missing:
            return {"error": f"missing fields: {', '.join(missing)}"}
        _ensure_ready()
        try:
            b = await orch.ledger.set_budget(body["scope"], str(body["key"]), float(body["amount"]))
        except ValueError as e:
            return {"error": str(e)}
        db.save_budgets(orch.ledger.snapshot())
        return {"id": b.budget_id, "amount": b.amount, "used": b.used, "remaining": b.remaining}

    @app.get("/api/metrics")
    async def metrics(limit: int = 20) -> dict[str, Any]:
        """Execution outcomes and routing statistics."""
        _ensure_ready()
        return {
            "report": orch.metrics.report(),
            "routing": orch.engine.statistics(),
            "recent": db.recent_executions(limit),
        }

    return app


app = create_app()


@click.command()
@click.option("--port", default=3848, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
def main(port: int, host: str) -> None:
    """Start the Conductor API server."""
    import uvicorn

    uvicorn.run(app, host=host, port=port)
