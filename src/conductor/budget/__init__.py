"""Budget ledger and admission control."""

from conductor.budget.ledger import (
    Budget,
    BudgetAlert,
    BudgetLedger,
    BudgetScope,
    Reservation,
    ReservationResult,
    ReservationState,
    ScopeKey,
    UsageTransaction,
    day_key,
    month_key,
)

__all__ = [
    "Budget",
    "BudgetAlert",
    "BudgetLedger",
    "BudgetScope",
    "Reservation",
    "ReservationResult",
    "ReservationState",
    "ScopeKey",
    "UsageTransaction",
    "day_key",
    "month_key",
]
