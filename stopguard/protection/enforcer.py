"""
Per-tick protection invariant enforcement.

Rule 1: every live position has exactly one live stop-loss and one live
        take-profit bound to it.
Rule 2: every live protective order is bound to a live position.

Runs before any trading decision. One position query and one order query per
call; additional broker traffic only happens on repair paths.
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from stopguard.config.config import EnforcerConfig, PricingConfig
from stopguard.domain.models import Instrument, MarketContext, Order, OrderKind, Position
from stopguard.domain.protocols import BrokerGateway, Clock
from stopguard.exceptions import LiquidationFailure, UntrackedPosition
from stopguard.monitoring.logger import get_logger
from stopguard.protection.book import ProtectionBook
from stopguard.protection.liquidator import EmergencyLiquidator
from stopguard.protection.placer import ProtectiveOrderPlacer
from stopguard.protection.pricing import (
    MarketContextCache,
    ProtectivePrices,
    compute_protective_prices,
    leg_on_correct_side,
)

logger = get_logger(__name__)


@dataclass
class EnforcementReport:
    """What one enforcement pass saw and did."""
    positions: int = 0
    untracked: List[str] = field(default_factory=list)
    adopted: List[str] = field(default_factory=list)
    emergency_protected: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)
    sl_repaired: List[str] = field(default_factory=list)
    tp_repaired: List[str] = field(default_factory=list)
    tp_missing: List[str] = field(default_factory=list)
    liquidated: List[str] = field(default_factory=list)
    duplicates_cancelled: int = 0
    orphans_cancelled: int = 0
    errors: int = 0

    @property
    def clean(self) -> bool:
        return not (self.untracked or self.sl_repaired or self.tp_repaired or self.tp_missing
                    or self.liquidated or self.duplicates_cancelled or self.orphans_cancelled or self.errors)


class ProtectionInvariantEnforcer:
    """Sub-second reactive safety net over all live positions."""

    def __init__(
        self,
        broker: BrokerGateway,
        instrument: Instrument,
        placer: ProtectiveOrderPlacer,
        liquidator: EmergencyLiquidator,
        book: ProtectionBook,
        cache: MarketContextCache,
        pricing_config: PricingConfig,
        config: EnforcerConfig,
        clock: Clock,
        defer: Optional[Callable[[Position], bool]] = None,
    ):
        self.broker = broker
        self.instrument = instrument
        self.placer = placer
        self.liquidator = liquidator
        self.book = book
        self.cache = cache
        self.pricing_config = pricing_config
        self.config = config
        self.clock = clock
        self.defer = defer

    async def enforce(self, context: Optional[MarketContext] = None) -> EnforcementReport:
        report = EnforcementReport()

        raw_positions = await self.broker.query_positions(self.instrument.symbol)
        positions: Dict[str, Position] = {}
        for p in raw_positions:
            positions.setdefault(p.id, p)
        orders = await self.broker.query_orders(self.instrument.symbol)
        report.positions = len(positions)

        self.book.invalidate_missing(orders)

        # ============ RULE 1: EVERY POSITION HAS SL AND TP ============
        for position in positions.values():
            try:
                await self._enforce_position(position, orders, context, report)
            except asyncio.CancelledError:
                raise
            except UntrackedPosition as e:
                logger.critical("EMERGENCY_PROTECTION_FAILED", position_id=position.id, error=str(e))
                await self._liquidate(position, "UNTRACKED_UNPROTECTED", report)
            except Exception as e:
                report.errors += 1
                logger.error("ENFORCE_POSITION_FAILED", position_id=position.id, error=str(e), exc_info=True)

        # ============ RULE 2: EVERY SL/TP HAS A POSITION ============
        # Orders with no position id are orphans, except a leg the book recovered
        # by price for a live position: that leg is the position's protection.
        claimed = {
            leg
            for pid in self.book.tracked_ids() if pid in positions
            for leg in (self.book.get(pid).stop_order_id, self.book.get(pid).take_profit_order_id)
            if leg
        }
        report.orphans_cancelled = await self.placer.cleanup_orphaned_orders(
            live_position_ids=set(positions),
            orders=[o for o in orders if o.id not in claimed],
        )

        for pid in self.book.tracked_ids():
            if pid not in positions:
                self.book.forget(pid)

        if not report.clean:
            logger.info(
                "ENFORCEMENT_SUMMARY",
                positions=report.positions,
                untracked=len(report.untracked),
                adopted=len(report.adopted),
                sl_repaired=len(report.sl_repaired),
                tp_repaired=len(report.tp_repaired),
                liquidated=len(report.liquidated),
                orphans=report.orphans_cancelled,
                duplicates=report.duplicates_cancelled,
            )
        return report

    # -- Rule 1 --

    async def _enforce_position(
        self,
        position: Position,
        orders: List[Order],
        context: Optional[MarketContext],
        report: EnforcementReport,
    ) -> None:
        stops, limits = await self.placer.protective_orders_for(position.id, orders)

        if position.id not in self.book:
            if self.defer is not None and self.defer(position):
                report.deferred.append(position.id)
                return
            await self._handle_untracked(position, stops, limits, orders, context, report)
            return

        pair = self.book.get(position.id)
        stop = await self._resolve_leg(position, OrderKind.STOP, stops, orders, report)
        take_profit = await self._resolve_leg(position, OrderKind.LIMIT, limits, orders, report)

        if stop is None:
            await self._repair_stop_loss(position, pair.expected_stop_price, context, report)
        else:
            self.book.clear_sl_alert(position.id)

        if take_profit is None:
            if self.book.tp_repair_due(position.id, self.clock.now()):
                await self._repair_take_profit(position, pair.expected_take_profit_price, context, report)
            else:
                report.tp_missing.append(position.id)
        else:
            self.book.clear_tp_backoff(position.id)

    async def _resolve_leg(
        self,
        position: Position,
        kind: OrderKind,
        bound: List[Order],
        orders: List[Order],
        report: EnforcementReport,
    ) -> Optional[Order]:
        """Pick the single live leg of ``kind`` for a tracked position, cancelling extras."""
        pair = self.book.get(position.id)
        known_id = pair.leg_id(kind)

        keep: Optional[Order] = next((o for o in bound if o.id == known_id), None)
        if keep is None and bound:
            keep = bound[0]
        if keep is None and pair.expected_price(kind) is not None:
            keep = await self.placer.find_order_near_price(position, kind, pair.expected_price(kind), orders=orders)
            if keep is not None:
                logger.warning("LEG_RECOVERED_BY_PRICE", position_id=position.id, kind=kind.value, order_id=keep.id)

        for extra in bound:
            if keep is not None and extra.id != keep.id:
                if await self.placer.cancel_order(extra.id, "Duplicate protective order"):
                    report.duplicates_cancelled += 1

        if keep is not None and keep.id != known_id:
            self.book.record_leg(position.id, kind, keep.id, keep.price, validated=True)
        return keep

    async def _handle_untracked(
        self,
        position: Position,
        stops: List[Order],
        limits: List[Order],
        orders: List[Order],
        context: Optional[MarketContext],
        report: EnforcementReport,
    ) -> None:
        """
        Adopt whatever legs are already bound to the position, place the rest.

        Raises:
            UntrackedPosition: the stop could not be placed; the caller liquidates
        """
        report.untracked.append(position.id)
        self.book.track(position.id, label=f"{self.config.emergency_label_prefix}_{position.id}")

        adopted = False
        for kind, bound in ((OrderKind.STOP, stops), (OrderKind.LIMIT, limits)):
            if bound:
                await self._resolve_leg(position, kind, bound, orders, report)
                adopted = True

        pair = self.book.get(position.id)
        has_sl = pair.stop_order_id is not None
        has_tp = pair.take_profit_order_id is not None

        if adopted:
            report.adopted.append(position.id)
            logger.warning("UNTRACKED_POSITION_ADOPTED", position_id=position.id, has_sl=has_sl, has_tp=has_tp)
            if has_sl and has_tp:
                return

        logger.critical(
            "UNTRACKED_POSITION",
            position_id=position.id,
            side=position.side.value,
            quantity=str(position.quantity),
            open_price=str(position.open_price),
        )

        prices = self._compute(position, context)
        label = pair.label
        if not has_sl and not has_tp:
            bracket = await self.placer.place_bracket(position, prices.stop_price, prices.take_profit_price, label)
            if not bracket.success:
                raise UntrackedPosition(f"{position.id}: emergency bracket failed ({bracket.message})")
            report.emergency_protected.append(position.id)
            return

        if not has_sl:
            result = await self.placer.place_stop_loss(position, prices.stop_price, label)
            if not result.success:
                raise UntrackedPosition(f"{position.id}: emergency stop failed ({result.message})")
        if not has_tp:
            result = await self.placer.place_take_profit(position, prices.take_profit_price, label)
            if not result.success:
                report.tp_missing.append(position.id)
                self._defer_tp_repair(position.id)
                logger.error("EMERGENCY_TP_FAILED", position_id=position.id, message=result.message)
                return
        report.emergency_protected.append(position.id)

    async def _repair_stop_loss(
        self,
        position: Position,
        expected: Optional[Decimal],
        context: Optional[MarketContext],
        report: EnforcementReport,
    ) -> None:
        if self.book.mark_sl_alerted(position.id):
            logger.critical(
                "SL_MISSING",
                position_id=position.id,
                side=position.side.value,
                quantity=str(position.quantity),
                open_price=str(position.open_price),
            )

        price = expected
        if not leg_on_correct_side(position.side, position.open_price, OrderKind.STOP, price):
            price = self._compute(position, context).stop_price

        pair = self.book.get(position.id)
        result = await self.placer.place_stop_loss(position, price, pair.label or None)

        await self.clock.sleep(self.config.sl_verify_delay_ms / 1000.0)
        validation = await self.placer.validate_protection(position)

        if result.success and validation.has_stop_loss:
            logger.warning("SL_RESTORED", position_id=position.id, order_id=result.order_id, price=str(price))
            self.book.clear_sl_alert(position.id)
            report.sl_repaired.append(position.id)
            return

        logger.critical("SL_REPAIR_FAILED", position_id=position.id, message=result.message)
        await self._liquidate(position, "SL_MISSING", report)

    async def _repair_take_profit(
        self,
        position: Position,
        expected: Optional[Decimal],
        context: Optional[MarketContext],
        report: EnforcementReport,
    ) -> None:
        price = expected
        if not leg_on_correct_side(position.side, position.open_price, OrderKind.LIMIT, price):
            price = self._compute(position, context).take_profit_price

        pair = self.book.get(position.id)
        result = await self.placer.place_take_profit(position, price, pair.label or None)
        if result.success:
            logger.warning("TP_RESTORED", position_id=position.id, order_id=result.order_id, price=str(price))
            self.book.clear_tp_backoff(position.id)
            report.tp_repaired.append(position.id)
            return

        # Stop-only protection is acceptable; no liquidation for a missing TP.
        report.tp_missing.append(position.id)
        self._defer_tp_repair(position.id)
        logger.error("TP_REPAIR_FAILED", position_id=position.id, message=result.message,
                     retry_in_ms=self.config.tp_retry_interval_ms)

    def _defer_tp_repair(self, position_id: str) -> None:
        self.book.defer_tp_repair(position_id, self.clock.now() + self.config.tp_retry_interval_ms / 1000.0)

    def _compute(self, position: Position, context: Optional[MarketContext]) -> ProtectivePrices:
        resolved = self.cache.resolve(context)
        return compute_protective_prices(
            position.side, position.open_price, self.instrument, self.pricing_config, resolved
        )

    async def _liquidate(self, position: Position, reason: str, report: EnforcementReport) -> None:
        try:
            await self.liquidator.ensure_closed(position, reason)
        except LiquidationFailure as e:
            logger.critical("LIQUIDATION_FAILURE", position_id=position.id, reason=reason, error=str(e),
                            detail="position remains live; monitored on next tick")
            return
        report.liquidated.append(position.id)
        self.book.forget(position.id)
