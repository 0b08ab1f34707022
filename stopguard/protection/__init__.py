"""
Protection module.

Keeps every live position covered by exactly one stop-loss and one
take-profit, and every protective order bound to a live position.

ARCHITECTURE:
    ProtectionCoordinator (owns all state, serializes ticks and broker events)
        │
        ├── ProtectionInvariantEnforcer (every tick, before decisions)
        ├── HealthMonitor (slower cadence, attempt-bounded repair)
        ├── ReversalCoordinator (fill-driven atomic reversal)
        │
        ├── ProtectiveOrderPlacer (retry, validate, bracket, orphan cleanup)
        │       └── ProtectionBook (local mirror of SL/TP pairs)
        ├── pricing (side-correct SL/TP, context fallback)
        └── EmergencyLiquidator (market attempts, one-shot direct close)
"""

from stopguard.protection.book import ProtectionBook, ProtectiveOrderPair
from stopguard.protection.coordinator import ForceCloseResult, ProtectionCoordinator, TickResult
from stopguard.protection.decision import PreTradeGuard, decide_action, get_current_net_position
from stopguard.protection.enforcer import EnforcementReport, ProtectionInvariantEnforcer
from stopguard.protection.health_monitor import HealthCheckSummary, HealthMonitor, HealthState
from stopguard.protection.liquidator import EmergencyCloseAttempt, EmergencyLiquidator
from stopguard.protection.placer import (
    BracketResult,
    PlacementResult,
    ProtectiveOrderPlacer,
    ValidationResult,
)
from stopguard.protection.pricing import MarketContextCache, ProtectivePrices, compute_protective_prices
from stopguard.protection.reversal import (
    CancelOrdering,
    ReversalCoordinator,
    ReversalOutcome,
    ReversalState,
    ReversalTransaction,
)

__all__ = [
    # Coordinator
    "ProtectionCoordinator",
    "TickResult",
    "ForceCloseResult",
    # Safety nets
    "ProtectionInvariantEnforcer",
    "EnforcementReport",
    "HealthMonitor",
    "HealthState",
    "HealthCheckSummary",
    # Reversal
    "ReversalCoordinator",
    "ReversalTransaction",
    "ReversalState",
    "ReversalOutcome",
    "CancelOrdering",
    # Placement
    "ProtectiveOrderPlacer",
    "PlacementResult",
    "BracketResult",
    "ValidationResult",
    "ProtectionBook",
    "ProtectiveOrderPair",
    # Pricing / decisions
    "MarketContextCache",
    "ProtectivePrices",
    "compute_protective_prices",
    "PreTradeGuard",
    "decide_action",
    "get_current_net_position",
    # Liquidation
    "EmergencyLiquidator",
    "EmergencyCloseAttempt",
]
