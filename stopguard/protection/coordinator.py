"""
ProtectionCoordinator: single owner of all protection state.

Wires the placer, enforcer, health monitor, reversal coordinator and
liquidator around one broker, and serializes the two event sources (market
ticks and broker fill / position-removed callbacks) behind one asyncio.Lock.

Tick order:
1. refresh the market context cache
2. expire reversal and entry orders that can no longer complete
3. enforce protection invariants (always, before any decision)
4. health check (on its own cadence)
5. session loss guard
6. decide and execute the trade action from the fresh net position

No exception leaves ``on_tick`` or the event handlers except cancellation.
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from stopguard.config.config import Config
from stopguard.domain.models import (
    MarketContext,
    NetPosition,
    OrderKind,
    OrderRequest,
    Position,
    Side,
    Trade,
    TradeAction,
    TradeSignal,
)
from stopguard.domain.protocols import BrokerGateway, Clock, SystemClock
from stopguard.exceptions import OperationalError
from stopguard.monitoring.logger import get_logger
from stopguard.protection.book import ProtectionBook
from stopguard.protection.decision import PreTradeGuard, decide_action, get_current_net_position
from stopguard.protection.enforcer import EnforcementReport, ProtectionInvariantEnforcer
from stopguard.protection.health_monitor import HealthCheckSummary, HealthMonitor
from stopguard.protection.liquidator import EmergencyLiquidator
from stopguard.protection.placer import ProtectiveOrderPlacer
from stopguard.protection.pricing import MarketContextCache, compute_protective_prices
from stopguard.protection.reversal import ReversalCoordinator, ReversalOutcome

logger = get_logger(__name__)


@dataclass
class PendingEntry:
    """Entry market order awaiting its fills."""
    order_id: str
    side: Side
    quantity: Decimal
    context: MarketContext
    submitted_at: float
    filled: Decimal = Decimal("0")


@dataclass
class TickResult:
    action: TradeAction = TradeAction.WAIT
    enforcement: Optional[EnforcementReport] = None
    health: Optional[HealthCheckSummary] = None
    reversal: Optional[ReversalOutcome] = None
    order_id: Optional[str] = None
    message: str = ""
    error: Optional[str] = None


@dataclass
class ForceCloseResult:
    flat: bool
    orders_cancelled: int = 0
    positions_liquidated: List[str] = field(default_factory=list)
    positions_remaining: List[str] = field(default_factory=list)


class ProtectionCoordinator:
    """Construct, ``on_tick`` / ``on_trade_filled`` / ``on_position_removed``, reset, dispose."""

    def __init__(self, broker: BrokerGateway, config: Config, clock: Optional[Clock] = None):
        self.broker = broker
        self.config = config
        self.clock = clock or SystemClock()
        self.instrument = config.instrument.to_instrument()

        self.book = ProtectionBook()
        self.cache = MarketContextCache(config.pricing.default_atr_ticks)
        self.guard = PreTradeGuard(config.risk)
        self.placer = ProtectiveOrderPlacer(broker, self.instrument, config.placement, self.clock, book=self.book)
        self.liquidator = EmergencyLiquidator(broker, self.instrument, config.liquidation, self.clock)
        self.reversal = ReversalCoordinator(
            broker, self.instrument, self.placer, self.liquidator, self.guard, self.cache, self.book,
            config.pricing, config.reversal, self.clock,
        )
        self.enforcer = ProtectionInvariantEnforcer(
            broker, self.instrument, self.placer, self.liquidator, self.book, self.cache,
            config.pricing, config.enforcer, self.clock, defer=self._owned_by_pending_flow,
        )
        self.health = HealthMonitor(
            broker, self.instrument, self.placer, self.liquidator, self.cache,
            config.pricing, config.health, self.clock, defer=self._owned_by_pending_flow,
        )

        self._lock = asyncio.Lock()
        self._pending_entries: Dict[str, PendingEntry] = {}
        self._last_health_check: Optional[float] = None
        self._disposed = False

        broker.subscribe(on_trade_filled=self.on_trade_filled, on_position_removed=self.on_position_removed)
        logger.info("COORDINATOR_STARTED", symbol=self.instrument.symbol,
                    cancel_ordering=config.reversal.cancel_ordering)

    # ============ LIFECYCLE ============

    def reset(self) -> None:
        """Drop all local state. The next tick rebuilds it from the broker."""
        self.book.clear()
        self.cache.reset()
        self.health.reset()
        self.liquidator.reset()
        self.reversal.reset()
        self._pending_entries.clear()
        self._last_health_check = None
        logger.info("COORDINATOR_RESET")

    async def dispose(self) -> None:
        """Stop reacting to ticks and events; abandon any in-flight reversal."""
        if self._disposed:
            return
        self._disposed = True
        async with self._lock:
            await self.reversal.abort("coordinator disposed")
            self.reset()
        logger.info("COORDINATOR_DISPOSED")

    @property
    def pending_entries(self) -> List[PendingEntry]:
        return list(self._pending_entries.values())

    def _deferral_window_s(self) -> float:
        return (self.config.reversal.settle_after_fill_ms + self.config.reversal.new_position_wait_ms) / 1000.0

    def _owned_by_pending_flow(self, position: Position) -> bool:
        """Untracked positions that an in-flight entry or reversal will protect itself."""
        now = self.clock.now()
        window = self._deferral_window_s()
        tx = self.reversal.active
        if tx is not None and position.side == tx.target_side and now - tx.started_at < window:
            return True
        return any(
            p.side == position.side and now - p.submitted_at < window
            for p in self._pending_entries.values()
        )

    # ============ TICK ============

    async def on_tick(self, signal: TradeSignal, context: MarketContext) -> TickResult:
        if self._disposed:
            return TickResult(message="disposed")
        async with self._lock:
            try:
                return await self._tick(signal, context)
            except asyncio.CancelledError:
                raise
            except OperationalError as e:
                logger.warning("TICK_BROKER_ERROR", signal=signal.value, error=str(e))
                return TickResult(error=str(e))
            except Exception as e:
                logger.error("TICK_FAILED", signal=signal.value, error=str(e), exc_info=True)
                return TickResult(error=str(e))

    async def _tick(self, signal: TradeSignal, context: MarketContext) -> TickResult:
        result = TickResult()
        self.cache.update(context)

        await self._expire_stale_flows()
        result.enforcement = await self.enforcer.enforce(context)

        if self._health_due():
            self._last_health_check = self.clock.now()
            result.health = await self.health.check_all(context)

        net = await get_current_net_position(self.broker, self.instrument)

        if self.guard.max_loss_reached(context):
            if not net.is_flat or net.both_sides:
                logger.critical("MAX_SESSION_LOSS_FORCE_CLOSE", session_pnl=str(context.session_pnl),
                                limit=str(self.config.risk.max_session_loss))
                await self._force_close_all("MAX_SESSION_LOSS")
                result.action = TradeAction.CLOSE
                result.message = "max session loss"
            return result

        result.action = decide_action(signal, net)

        if result.action in (TradeAction.BUY, TradeAction.SELL):
            side = Side.LONG if result.action == TradeAction.BUY else Side.SHORT
            result.order_id, result.message = await self._enter(side, context, net)
        elif result.action == TradeAction.CLOSE:
            if net.both_sides:
                logger.critical("BOTH_SIDES_EXPOSED", position_ids=net.position_ids)
                closed = await self._force_close_all("BOTH_SIDES_EXPOSED")
                result.message = "force closed" if closed.flat else "force close incomplete"
            else:
                result.order_id, result.message = await self._close(net)
        elif result.action == TradeAction.REVERT:
            target = Side.SHORT if signal == TradeSignal.OPEN_SHORT else Side.LONG
            outcome = await self.reversal.execute(target, context)
            result.reversal = outcome
            result.message = outcome.reason
            if outcome.flat:
                result.action = TradeAction.BUY if target == Side.LONG else TradeAction.SELL
                result.order_id, result.message = await self._enter(target, context, net)
            elif outcome.transaction is not None and outcome.accepted:
                result.order_id = outcome.transaction.order_id
        return result

    async def _expire_stale_flows(self) -> None:
        """
        Give up on a reversal or entry order that can no longer complete.

        Dead orders (cancelled or rejected short of a full fill) go at once.
        An entry still unfilled after the deferral window is cancelled; any
        position it opened is left to the enforcer.
        """
        if self.reversal.active is None and not self._pending_entries:
            return
        orders = await self.broker.query_orders(self.instrument.symbol)
        await self.reversal.expire_stale(orders)

        now = self.clock.now()
        by_id = {o.id: o for o in orders}
        for pending in list(self._pending_entries.values()):
            order = by_id.get(pending.order_id)
            if order is not None and not order.is_live and order.filled_quantity < order.quantity:
                reason = f"entry order {order.status.value}"
            elif now - pending.submitted_at >= self._deferral_window_s():
                reason = "entry not filled within the deferral window"
                if order is not None and order.is_live:
                    await self.placer.cancel_order(order.id, "Entry expired")
            else:
                continue
            del self._pending_entries[pending.order_id]
            logger.warning("ENTRY_EXPIRED", order_id=pending.order_id, side=pending.side.value,
                           filled=str(pending.filled), reason=reason)

    def _health_due(self) -> bool:
        if self._last_health_check is None:
            return True
        return (self.clock.now() - self._last_health_check) * 1000 >= self.config.health.check_interval_ms

    # ============ ENTRY ============

    async def _enter(self, side: Side, context: MarketContext, net: NetPosition):
        if self.reversal.in_progress:
            return None, "reversal in progress"
        if any(p.side == side for p in self._pending_entries.values()):
            return None, "entry already pending"

        decision = self.guard.check(context, open_positions=len(net.position_ids))
        if not decision.allowed:
            logger.info("ENTRY_BLOCKED", side=side.value, reason=decision.reason)
            return None, decision.reason
        if not self.broker.supports_order_kind(OrderKind.MARKET):
            logger.error("ENTRY_NO_MARKET_ORDERS", side=side.value)
            return None, "No market order type available"

        quantity = self.instrument.round_quantity(self.config.risk.entry_quantity)
        if quantity < self.instrument.min_lot:
            return None, f"entry quantity {quantity} below minimum"

        request = OrderRequest(
            symbol=self.instrument.symbol,
            side=side.entry_order_side,
            kind=OrderKind.MARKET,
            quantity=quantity,
            comment=f"ENTRY_{side.value.upper()}",
        )
        result = await self.broker.place_order(request)
        if not result.success:
            logger.error("ENTRY_SUBMIT_FAILED", side=side.value, message=result.message)
            return None, f"entry failed: {result.message}"

        self._pending_entries[result.order_id] = PendingEntry(
            order_id=result.order_id, side=side, quantity=quantity, context=context,
            submitted_at=self.clock.now(),
        )
        logger.info("ENTRY_SUBMITTED", side=side.value, order_id=result.order_id, quantity=str(quantity))
        return result.order_id, "entry submitted"

    async def _protect_entry(self, pending: PendingEntry, trade: Trade) -> None:
        positions = await self.broker.query_positions(self.instrument.symbol)
        position = next((p for p in positions if p.id == trade.position_id), None)
        if position is None:
            position = next((p for p in positions if p.side == pending.side), None)
        if position is None:
            logger.warning("ENTRY_POSITION_NOT_FOUND", order_id=pending.order_id, side=pending.side.value)
            return

        old_stops, old_limits = await self.placer.protective_orders_for(position.id)
        prices = compute_protective_prices(
            position.side, position.open_price, self.instrument, self.config.pricing,
            self.cache.resolve(pending.context),
        )
        label = f"ENTRY_{position.id}"
        self.book.track(position.id, label=label)
        bracket = await self.placer.place_bracket(position, prices.stop_price, prices.take_profit_price, label)

        if bracket.success:
            # Added to an existing position: the old legs cover the old quantity only.
            for order in old_stops + old_limits:
                await self.placer.cancel_order(order.id, "Replaced by entry bracket")
            logger.info("ENTRY_PROTECTED", position_id=position.id, open_price=str(position.open_price),
                        sl=str(prices.stop_price), tp=str(prices.take_profit_price))
            return

        if old_stops:
            logger.error("ENTRY_BRACKET_FAILED_KEEPING_OLD", position_id=position.id, message=bracket.message)
            return
        logger.critical("ENTRY_PROTECTION_FAILED", position_id=position.id, message=bracket.message)
        if await self.liquidator.liquidate(position, "ENTRY_PROTECTION_FAILED"):
            self.book.forget(position.id)

    # ============ CLOSE ============

    async def _close(self, net: NetPosition):
        """Opposite market order for the net quantity. SL/TP left behind are swept as orphans."""
        fresh = await get_current_net_position(self.broker, self.instrument)
        if fresh.is_flat:
            cancelled = await self._cancel_all_orders("Close while flat")
            return None, f"already flat; {cancelled} orders cancelled"

        request = OrderRequest(
            symbol=self.instrument.symbol,
            side=fresh.side.exit_order_side,
            kind=OrderKind.MARKET,
            quantity=fresh.quantity,
            comment=f"CLOSE_{fresh.side.value.upper()}",
        )
        result = await self.broker.place_order(request)
        if not result.success:
            logger.error("CLOSE_SUBMIT_FAILED", side=fresh.side.value, message=result.message)
            return None, f"close failed: {result.message}"
        logger.info("CLOSE_SUBMITTED", side=fresh.side.value, quantity=str(fresh.quantity), order_id=result.order_id)
        return result.order_id, "close submitted"

    async def _cancel_all_orders(self, reason: str) -> int:
        orders = await self.broker.query_orders(self.instrument.symbol)
        cancelled = 0
        for order in orders:
            if order.is_live and await self.placer.cancel_order(order.id, reason):
                cancelled += 1
        return cancelled

    # ============ FORCE CLOSE ============

    async def force_close_all(self, reason: str = "MANUAL") -> ForceCloseResult:
        async with self._lock:
            return await self._force_close_all(reason)

    async def _force_close_all(self, reason: str) -> ForceCloseResult:
        """Cancel every order, liquidate every position, then poll for flat."""
        logger.critical("FORCE_CLOSE_ALL", reason=reason)
        await self.reversal.abort(f"force close: {reason}")
        self._pending_entries.clear()

        result = ForceCloseResult(flat=False)
        result.orders_cancelled = await self._cancel_all_orders(f"Force close: {reason}")

        for position in await self.broker.query_positions(self.instrument.symbol):
            if await self.liquidator.liquidate(position, reason):
                result.positions_liquidated.append(position.id)
                self.book.forget(position.id)

        for _ in range(self.config.liquidation.verify_polls):
            remaining = await self.broker.query_positions(self.instrument.symbol)
            if not remaining:
                result.flat = True
                break
            await self.clock.sleep(self.config.liquidation.verify_interval_ms / 1000.0)
        else:
            remaining = await self.broker.query_positions(self.instrument.symbol)
            result.flat = not remaining

        result.positions_remaining = [p.id for p in remaining]
        if result.flat:
            logger.warning("FORCE_CLOSE_COMPLETE", reason=reason, liquidated=result.positions_liquidated)
        else:
            logger.critical("FORCE_CLOSE_INCOMPLETE", reason=reason, remaining=result.positions_remaining)
        return result

    # ============ BROKER EVENTS ============

    async def on_trade_filled(self, trade: Trade) -> None:
        if self._disposed:
            return
        async with self._lock:
            try:
                if await self.reversal.on_trade_filled(trade):
                    return
                pending = self._pending_entries.get(trade.order_id)
                if pending is None:
                    return
                pending.filled += trade.quantity
                logger.info("ENTRY_FILL", order_id=trade.order_id, fill=str(trade.quantity),
                            price=str(trade.price), cumulative=str(pending.filled))
                if pending.filled >= pending.quantity:
                    del self._pending_entries[trade.order_id]
                    await self._protect_entry(pending, trade)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("TRADE_EVENT_FAILED", order_id=trade.order_id, error=str(e), exc_info=True)

    async def on_position_removed(self, position: Position) -> None:
        if self._disposed:
            return
        async with self._lock:
            try:
                self.book.forget(position.id)
                self.health.forget(position.id)
                self.liquidator.forget(position.id)
                logger.info("POSITION_REMOVED", position_id=position.id, side=position.side.value)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("POSITION_EVENT_FAILED", position_id=position.id, error=str(e), exc_info=True)
