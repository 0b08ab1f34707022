"""
Attempt-bounded protection health checks.

Slower companion to the per-tick enforcer. Each unhealthy position gets a
bounded number of repair attempts; once those are spent and the position has
been unprotected past the emergency threshold it is liquidated, exactly once.

The summary is for observability only. Nothing else reads it to make control
decisions.
"""
import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from stopguard.config.config import HealthConfig, PricingConfig
from stopguard.domain.models import Instrument, MarketContext, Order, Position
from stopguard.domain.protocols import BrokerGateway, Clock
from stopguard.exceptions import PlacementFailure, RepairExhausted
from stopguard.monitoring.logger import get_logger
from stopguard.protection.liquidator import EmergencyLiquidator
from stopguard.protection.placer import ProtectiveOrderPlacer, ValidationResult
from stopguard.protection.pricing import MarketContextCache, compute_protective_prices

logger = get_logger(__name__)


@dataclass
class HealthState:
    position_id: str
    created_at: float
    repair_attempts: int = 0
    healthy: bool = True
    last_check: Optional[float] = None
    alerted: bool = False
    liquidation_triggered: bool = False


@dataclass
class HealthCheckSummary:
    total: int = 0
    healthy: int = 0
    unhealthy: int = 0
    repairs_succeeded: int = 0
    repairs_failed: int = 0
    emergency_liquidations: int = 0
    orphans_removed: int = 0

    @property
    def all_healthy(self) -> bool:
        return self.total > 0 and self.unhealthy == 0


class HealthMonitor:
    """
    Validate, repair, escalate.

    Per unhealthy position:
    1. repair_attempts < max: recompute prices, place the missing leg(s);
       failure increments the counter, success resets it
    2. repair_attempts >= max: no more repairs; once first-seen age exceeds
       emergency_flatten_threshold_ms, liquidate (once per position)
    """

    def __init__(
        self,
        broker: BrokerGateway,
        instrument: Instrument,
        placer: ProtectiveOrderPlacer,
        liquidator: EmergencyLiquidator,
        cache: MarketContextCache,
        pricing_config: PricingConfig,
        config: HealthConfig,
        clock: Clock,
        defer: Optional[Callable[[Position], bool]] = None,
    ):
        self.broker = broker
        self.instrument = instrument
        self.placer = placer
        self.liquidator = liquidator
        self.cache = cache
        self.pricing_config = pricing_config
        self.config = config
        self.clock = clock
        self.defer = defer
        self._states: Dict[str, HealthState] = {}
        self._last_orphan_sweep: Optional[float] = None

    def state(self, position_id: str) -> Optional[HealthState]:
        return self._states.get(position_id)

    def forget(self, position_id: str) -> None:
        self._states.pop(position_id, None)

    def reset(self) -> None:
        self._states.clear()
        self._last_orphan_sweep = None

    def force_validation(self) -> None:
        """Clear alert flags and make the next check sweep orphans."""
        for state in self._states.values():
            state.alerted = False
        self._last_orphan_sweep = None
        logger.info("HEALTH_FORCE_VALIDATION", tracked=len(self._states))

    async def check_all(self, context: Optional[MarketContext] = None) -> HealthCheckSummary:
        summary = HealthCheckSummary()
        now = self.clock.now()

        positions = await self.broker.query_positions(self.instrument.symbol)
        orders = await self.broker.query_orders(self.instrument.symbol)
        live: Dict[str, Position] = {}
        for p in positions:
            live.setdefault(p.id, p)

        for position in live.values():
            if self.defer is not None and self.defer(position):
                continue
            summary.total += 1
            try:
                await self._check_position(position, orders, context, now, summary)
            except asyncio.CancelledError:
                raise
            except RepairExhausted:
                await self._escalate(position, self._states[position.id], now, summary)
            except Exception as e:
                summary.unhealthy += 1
                logger.error("HEALTH_CHECK_FAILED", position_id=position.id, error=str(e), exc_info=True)

        for pid in list(self._states):
            if pid not in live:
                del self._states[pid]

        if self._orphan_sweep_due(now):
            self._last_orphan_sweep = now
            summary.orphans_removed = await self.placer.cleanup_orphaned_orders(
                live_position_ids=set(live), orders=orders
            )

        if summary.unhealthy or summary.orphans_removed or summary.emergency_liquidations:
            logger.info(
                "HEALTH_SUMMARY",
                total=summary.total,
                healthy=summary.healthy,
                unhealthy=summary.unhealthy,
                repairs_succeeded=summary.repairs_succeeded,
                repairs_failed=summary.repairs_failed,
                emergency_liquidations=summary.emergency_liquidations,
                orphans_removed=summary.orphans_removed,
            )
        return summary

    def _orphan_sweep_due(self, now: float) -> bool:
        if self._last_orphan_sweep is None:
            return True
        return (now - self._last_orphan_sweep) * 1000 >= self.config.orphan_sweep_interval_ms

    async def _check_position(
        self,
        position: Position,
        orders: List[Order],
        context: Optional[MarketContext],
        now: float,
        summary: HealthCheckSummary,
    ) -> None:
        state = self._states.setdefault(position.id, HealthState(position_id=position.id, created_at=now))
        state.last_check = now

        validation = await self.placer.validate_protection(position, orders)
        if validation.is_valid:
            if not state.healthy:
                logger.info("POSITION_HEALTH_RESTORED", position_id=position.id)
            state.healthy = True
            state.repair_attempts = 0
            state.alerted = False
            summary.healthy += 1
            return

        state.healthy = False
        summary.unhealthy += 1
        if not state.alerted:
            state.alerted = True
            logger.critical("POSITION_UNHEALTHY", position_id=position.id, message=validation.message,
                            side=position.side.value, quantity=str(position.quantity))

        if state.repair_attempts >= self.config.max_repair_attempts:
            raise RepairExhausted(f"{position.id}: {state.repair_attempts} repair attempts spent")

        try:
            await self._repair(position, validation, state, context)
        except PlacementFailure as e:
            state.repair_attempts += 1
            summary.repairs_failed += 1
            logger.error("REPAIR_FAILED", position_id=position.id, attempt=state.repair_attempts,
                         max_attempts=self.config.max_repair_attempts, message=str(e))
            return
        state.repair_attempts = 0
        summary.repairs_succeeded += 1

    async def _escalate(self, position: Position, state: HealthState, now: float, summary: HealthCheckSummary) -> None:
        age_ms = (now - state.created_at) * 1000
        if state.liquidation_triggered:
            return
        if age_ms < self.config.emergency_flatten_threshold_ms:
            logger.warning("REPAIRS_EXHAUSTED_WAITING", position_id=position.id, age_ms=int(age_ms),
                           threshold_ms=self.config.emergency_flatten_threshold_ms)
            return

        state.liquidation_triggered = True
        summary.emergency_liquidations += 1
        logger.critical("REPAIRS_EXHAUSTED_LIQUIDATING", position_id=position.id,
                        attempts=state.repair_attempts, age_ms=int(age_ms))
        await self.liquidator.liquidate(position, "REPAIR_EXHAUSTED")

    async def _repair(
        self,
        position: Position,
        validation: ValidationResult,
        state: HealthState,
        context: Optional[MarketContext],
    ) -> None:
        """
        Place the missing leg(s) priced from the current price.

        Raises:
            PlacementFailure: a leg could not be placed (both are still attempted)
        """
        reference = position.current_price if position.current_price and position.current_price > 0 \
            else position.open_price
        prices = compute_protective_prices(
            position.side, reference, self.instrument, self.pricing_config, self.cache.resolve(context)
        )
        label = f"REPAIR_{position.id}_{state.repair_attempts + 1}"

        results = []
        if not validation.has_stop_loss:
            results.append(await self.placer.place_stop_loss(position, prices.stop_price, label))
        if not validation.has_take_profit:
            results.append(await self.placer.place_take_profit(position, prices.take_profit_price, label))
        for result in results:
            result.raise_for_failure()
        logger.warning("POSITION_REPAIRED", position_id=position.id, sl=str(prices.stop_price),
                       tp=str(prices.take_profit_price))
