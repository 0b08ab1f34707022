"""
Custom exception hierarchy for the protection subsystem.

Hierarchy:

    ProtectionError (base)
    ├── OperationalError          : transient/retryable (broker, network, timeouts)
    │   ├── BrokerError           : broker primitive raised or returned garbage
    │   ├── PlacementFailure      : order submission rejected
    │   └── ValidationTimeout     : order not observed within the polling window
    ├── DataError                 : bad input, fix locally and continue
    │   ├── InvalidPriceError
    │   └── WrongSideCalculation  : SL/TP on the wrong side of entry
    ├── ProtectionInvariantError  : a position/order invariant is broken
    │   ├── UntrackedPosition
    │   └── RepairExhausted
    ├── ReversalFailure           : the reversal transaction cannot complete
    └── LiquidationFailure        : a position could not be closed

Rules:
    - OperationalError: retry with bounded backoff, then surface as a Failure result.
      A broker error that escapes a tick is logged as a warning; the next tick retries.
    - DataError: correct to a safe value (minimum distance) rather than reject.
    - Orphaned orders are not errors: cleanup cancels them in line, never alerts.
    - UntrackedPosition: emergency-protect, liquidate if protection fails.
    - RepairExhausted: liquidate once both attempt and time budgets are spent.
    - ReversalFailure: abort, clean up orphans, never auto-retry the reversal.
    - LiquidationFailure: log critical, keep monitoring on later ticks.
    - Nothing crosses the tick boundary: the coordinator catches and logs.
"""


class ProtectionError(Exception):
    """Base exception for all protection subsystem errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(ProtectionError):
    """Transient/retryable error talking to the broker.

    Treatment: retry with backoff up to a fixed bound, then return a Failure.
    """
    pass


class BrokerError(OperationalError):
    """Broker primitive raised or returned an unusable response."""
    pass


class PlacementFailure(OperationalError):
    """Order submission was rejected by the broker."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class ValidationTimeout(OperationalError):
    """Submitted order was not observed at the broker within the polling window."""
    pass


# ============ DATA (bad input, correct locally) ============

class DataError(ProtectionError):
    """Bad input data: non-positive price, NaN, unroundable quantity."""
    pass


class InvalidPriceError(DataError):
    """Price is NaN, infinite, or non-positive."""
    pass


class WrongSideCalculation(DataError):
    """Computed stop/take-profit sits on the wrong side of entry.

    Treatment: auto-corrected to the minimum distance, never rejected.
    """
    pass


# ============ INVARIANT (protection state broken) ============

class ProtectionInvariantError(ProtectionError):
    """A protection invariant does not hold for a live position or order."""
    pass


class UntrackedPosition(ProtectionInvariantError):
    """Live position with no protective order pair on record."""
    pass


class RepairExhausted(ProtectionInvariantError):
    """Repair attempt budget spent for a position."""
    pass


# ============ TERMINAL (transaction-level) ============

class ReversalFailure(ProtectionError):
    """Reversal transaction aborted. Not retried; await the next signal."""
    pass


class LiquidationFailure(ProtectionError):
    """Forced close did not flatten the position.

    Treatment: log critical, keep monitoring, no same-position retry loop.
    """
    pass
