"""Engine configuration.

Defaults live in frozen dataclasses; ``load_config`` overlays a JSON file on
top of them. A missing file yields the defaults.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Final

from conductor.errors import ConfigurationError

DEFAULT_CONFIG_PATH: Final[Path] = Path.home() / ".conductor" / "config.json"


@dataclass(frozen=True)
class LedgerConfig:
    """Budget ledger policy."""

    warning_threshold: float = 0.8
    critical_threshold: float = 0.95
    default_daily_budget: float = 10_000
    default_monthly_budget: float = 300_000
    lock_timeout: float = 1.0  # seconds
    max_retries: int = 3
    max_alerts: int = 500
    max_transactions: int = 10_000


@dataclass(frozen=True)
class RoutingConfig:
    """Scoring weights and decision thresholds."""

    confidence_weight: float = 0.35
    token_efficiency_weight: float = 0.15
    cost_token_efficiency_weight: float = 0.30
    historical_weight: float = 0.20
    user_preference_weight: float = 0.15
    min_confidence: float = 0.5
    fallback_threshold: float = 0.5
    fallback_worker: str = "project-manager"
    history_decay: float = 0.3
    max_decision_log: int = 1000


@dataclass(frozen=True)
class PlannerConfig:
    """Parallel plan acceptance rules."""

    min_speedup: float = 1.3
    savings_per_worker: float = 200.0
    overhead_per_phase: float = 100.0
    default_duration: float = 60.0  # seconds
    min_relevance: float = 0.3


@dataclass(frozen=True)
class ExecutorConfig:
    """Workflow execution bounds."""

    step_timeout: float = 300.0  # seconds
    dependency_timeout: float = 30.0  # seconds
    dependency_poll_interval: float = 0.1  # seconds
    worker_commands: dict[str, list[str]] = field(default_factory=dict)
    default_command: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""

    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)


def _overlay(section: Any, data: dict[str, Any], name: str) -> Any:
    known = {f.name for f in fields(section)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in '{name}' section: {sorted(unknown)}", context={"section": name}
        )
    return replace(section, **data)


def load_config(path: Path | None = None) -> EngineConfig:
    """Load engine configuration from a JSON file or use defaults.

    Args:
        path: Path to config.json. If None, uses ~/.conductor/config.json.

    Returns:
        EngineConfig with file values overlaid on defaults.
    """
    config_path = path or DEFAULT_CONFIG_PATH
    config = EngineConfig()
    if not config_path.exists():
        return config

    try:
        data = json.loads(config_path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {config_path}: {exc}") from exc

    sections = {}
    for name in ("ledger", "routing", "planner", "executor"):
        if name in data:
            sections[name] = _overlay(getattr(config, name), data[name], name)
    return replace(config, **sections)
