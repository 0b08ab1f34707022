"""
Atomic position reversal.

A single market order of (|current| + one lot) on the opposite side flattens
the old position and opens the new one through broker netting. Everything
after submission is driven by fill events:

    Idle -> Initiated -> FlattenFilled -> FullyFilled -> Protected | Flat | Failed -> Idle

Ordering rules (enforced by cumulative fill counts, never by delay):
- old protection is cancelled only once cumulative_filled >= flatten_quantity
  (or, with cancel_ordering="before_submit", before the order goes out)
- new protection is placed only once cumulative_filled == order_quantity,
  priced from the new position's actual open price
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from stopguard.config.config import PricingConfig, ReversalConfig
from stopguard.domain.models import (
    Instrument,
    MarketContext,
    Order,
    OrderKind,
    OrderRequest,
    PlaceOrderResult,
    PlaceOrderStatus,
    Position,
    Side,
    Trade,
)
from stopguard.domain.protocols import BrokerGateway, Clock
from stopguard.exceptions import ReversalFailure
from stopguard.monitoring.logger import get_logger
from stopguard.protection.book import ProtectionBook
from stopguard.protection.decision import PreTradeGuard, get_current_net_position
from stopguard.protection.liquidator import EmergencyLiquidator
from stopguard.protection.placer import ProtectiveOrderPlacer, ValidationResult
from stopguard.protection.pricing import MarketContextCache, compute_protective_prices, leg_on_correct_side

logger = get_logger(__name__)

FILL_EPSILON = Decimal("0.001")
_CORRECTABLE_HINTS = ("tick", "increment", "not supported", "reduce")


class ReversalState(str, Enum):
    IDLE = "idle"
    INITIATED = "initiated"
    FLATTEN_FILLED = "flatten_filled"
    FULLY_FILLED = "fully_filled"
    PROTECTED = "protected"
    FLAT = "flat"          # flatten done, new leg never opened: safe terminal state
    FAILED = "failed"


TERMINAL_STATES = frozenset({ReversalState.PROTECTED, ReversalState.FLAT, ReversalState.FAILED})


class CancelOrdering(str, Enum):
    ON_FLATTEN_FILL = "on_flatten_fill"
    BEFORE_SUBMIT = "before_submit"


@dataclass
class ReversalTransaction:
    """In-flight reversal, from order submission to terminal state."""
    order_id: str
    original_side: Side
    target_side: Side
    order_quantity: Decimal
    flatten_quantity: Decimal
    old_order_ids: List[str]
    old_position_ids: List[str]
    context: MarketContext
    started_at: float
    ordering: CancelOrdering = CancelOrdering.ON_FLATTEN_FILL
    cumulative_filled: Decimal = Decimal("0")
    state: ReversalState = ReversalState.INITIATED
    old_protection_cancelled: bool = False
    new_protection_placed: bool = False
    old_cancelled_at: Optional[float] = None
    new_placed_at: Optional[float] = None
    new_position_id: Optional[str] = None
    fills: List[Decimal] = field(default_factory=list)
    failure_reason: Optional[str] = None

    @property
    def new_quantity(self) -> Decimal:
        return self.order_quantity - self.flatten_quantity

    @property
    def flatten_portion_filled(self) -> bool:
        return self.cumulative_filled >= self.flatten_quantity - FILL_EPSILON

    @property
    def fully_filled(self) -> bool:
        return abs(self.cumulative_filled - self.order_quantity) < FILL_EPSILON

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def record_fill(self, quantity: Decimal) -> None:
        if quantity <= 0:
            raise ValueError(f"Non-positive fill quantity {quantity} for reversal {self.order_id}")
        self.cumulative_filled += quantity
        self.fills.append(quantity)


@dataclass
class ReversalOutcome:
    """Result of a reversal request."""
    accepted: bool
    reason: str = ""
    flat: bool = False  # no position to reverse: caller should treat the signal as an entry
    transaction: Optional[ReversalTransaction] = None


class ReversalCoordinator:
    """Owns the single in-flight ReversalTransaction."""

    def __init__(
        self,
        broker: BrokerGateway,
        instrument: Instrument,
        placer: ProtectiveOrderPlacer,
        liquidator: EmergencyLiquidator,
        guard: PreTradeGuard,
        cache: MarketContextCache,
        book: ProtectionBook,
        pricing_config: PricingConfig,
        config: ReversalConfig,
        clock: Clock,
    ):
        self.broker = broker
        self.instrument = instrument
        self.placer = placer
        self.liquidator = liquidator
        self.guard = guard
        self.cache = cache
        self.book = book
        self.pricing_config = pricing_config
        self.config = config
        self.clock = clock
        self.ordering = CancelOrdering(config.cancel_ordering)

        self.active: Optional[ReversalTransaction] = None
        self.last_transaction: Optional[ReversalTransaction] = None

    @property
    def in_progress(self) -> bool:
        return self.active is not None

    def reset(self) -> None:
        self.active = None
        self.last_transaction = None

    # ============ INITIATION ============

    async def execute(self, target_side: Side, context: MarketContext) -> ReversalOutcome:
        """Submit the reversal order and return without waiting for fills."""
        if self.active is not None:
            logger.warning("REVERSAL_BLOCKED_DUPLICATE", active_order_id=self.active.order_id)
            return ReversalOutcome(False, f"Reversal already in progress (order {self.active.order_id})")

        net = await get_current_net_position(self.broker, self.instrument)
        if net.is_flat:
            logger.info("REVERSAL_NOT_NEEDED_FLAT", target_side=target_side.value)
            return ReversalOutcome(False, "flat", flat=True)
        if net.side == target_side:
            return ReversalOutcome(False, f"already {target_side.value}")

        flatten_qty = net.quantity
        total_qty = self.instrument.round_quantity(flatten_qty + self.config.new_position_quantity)
        if total_qty < self.instrument.min_lot or total_qty <= flatten_qty:
            logger.error("REVERSAL_ABORTED_QUANTITY", flatten=str(flatten_qty), total=str(total_qty),
                         min_lot=str(self.instrument.min_lot))
            return ReversalOutcome(False, f"total quantity {total_qty} below minimum")

        decision = self.guard.check(context, for_reversal=True)
        if not decision.allowed:
            logger.warning("REVERSAL_BLOCKED_RISK", reason=decision.reason)
            return ReversalOutcome(False, decision.reason)

        if not self.broker.supports_order_kind(OrderKind.MARKET):
            logger.error("REVERSAL_NO_MARKET_ORDERS")
            return ReversalOutcome(False, "No market order type available")

        self.cache.update(context)
        old_order_ids = await self._snapshot_old_protection(net.position_ids)

        logger.info(
            "REVERSAL_INITIATING",
            original_side=net.side.value,
            target_side=target_side.value,
            flatten=str(flatten_qty),
            new=str(total_qty - flatten_qty),
            total=str(total_qty),
            old_orders=old_order_ids,
            ordering=self.ordering.value,
        )

        cancelled_early_at: Optional[float] = None
        if self.ordering == CancelOrdering.BEFORE_SUBMIT:
            await self._cancel_old_protection(old_order_ids, net.position_ids)
            cancelled_early_at = self.clock.now()
            await self.clock.sleep(self.config.cancel_settle_ms / 1000.0)

        request = OrderRequest(
            symbol=self.instrument.symbol,
            side=target_side.entry_order_side,
            kind=OrderKind.MARKET,
            quantity=total_qty,
            comment=f"{self.config.label}_{net.side.value}_to_{target_side.value}",
        )
        tx = ReversalTransaction(
            order_id="",
            original_side=net.side,
            target_side=target_side,
            order_quantity=total_qty,
            flatten_quantity=flatten_qty,
            old_order_ids=old_order_ids,
            old_position_ids=list(net.position_ids),
            context=context,
            started_at=self.clock.now(),
            ordering=self.ordering,
        )
        if cancelled_early_at is not None:
            tx.old_protection_cancelled = True
            tx.old_cancelled_at = cancelled_early_at

        result = await self._submit_with_correction(request)
        if not result.success:
            logger.error("REVERSAL_SUBMIT_FAILED", message=result.message)
            if tx.old_protection_cancelled:
                logger.critical("REVERSAL_OLD_PROTECTION_REMOVED", position_ids=tx.old_position_ids,
                                detail="enforcer will restore protection on next tick")
            tx.state = ReversalState.FAILED
            tx.failure_reason = result.message
            self.last_transaction = tx
            return ReversalOutcome(False, f"submit failed: {result.message}", transaction=tx)

        tx.order_id = result.order_id
        self.active = tx
        logger.info("REVERSAL_SUBMITTED", order_id=tx.order_id, total=str(total_qty))
        return ReversalOutcome(True, "submitted", transaction=tx)

    async def _snapshot_old_protection(self, position_ids: List[str]) -> List[str]:
        ids: List[str] = []
        live = await self.placer.live_protective_orders()
        for order in live:
            if order.position_id in position_ids and order.id not in ids:
                ids.append(order.id)
        for pid in position_ids:
            pair = self.book.get(pid)
            if pair is None:
                continue
            for leg in (pair.stop_order_id, pair.take_profit_order_id):
                if leg and leg not in ids:
                    ids.append(leg)
        return ids

    async def _submit_with_correction(self, request: OrderRequest) -> PlaceOrderResult:
        """Submit once; retry once if the rejection looks correctable."""
        result = await self._submit(request)
        if result.success:
            return result
        message = (result.message or "").lower()
        if any(h in message for h in _CORRECTABLE_HINTS):
            logger.warning("REVERSAL_SUBMIT_RETRY", message=result.message)
            request.quantity = self.instrument.round_quantity(request.quantity)
            request.reduce_only = False
            return await self._submit(request)
        return result

    async def _submit(self, request: OrderRequest) -> PlaceOrderResult:
        try:
            return await self.broker.place_order(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return PlaceOrderResult(status=PlaceOrderStatus.FAILURE, message=str(e))

    # ============ FILL-DRIVEN PROGRESSION ============

    async def on_trade_filled(self, trade: Trade) -> bool:
        """Advance the active transaction. Returns True if the fill belonged to it."""
        tx = self.active
        if tx is None or not tx.order_id or trade.order_id != tx.order_id:
            return False

        try:
            tx.record_fill(trade.quantity)
            logger.info(
                "REVERSAL_FILL",
                order_id=tx.order_id,
                fill=str(trade.quantity),
                price=str(trade.price),
                cumulative=str(tx.cumulative_filled),
                total=str(tx.order_quantity),
                flatten=str(tx.flatten_quantity),
            )

            if tx.flatten_portion_filled and tx.state == ReversalState.INITIATED:
                tx.state = ReversalState.FLATTEN_FILLED
            if tx.flatten_portion_filled and not tx.old_protection_cancelled:
                await self._cancel_old_protection(tx.old_order_ids, tx.old_position_ids)
                tx.old_protection_cancelled = True
                tx.old_cancelled_at = self.clock.now()

            if tx.fully_filled and not tx.new_protection_placed:
                tx.state = ReversalState.FULLY_FILLED
                await self._protect_new_position(tx)
                self._finish(tx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("REVERSAL_FAILURE", order_id=tx.order_id, error=str(e), exc_info=True)
            await self.abort(str(e))
        return True

    async def _cancel_old_protection(self, order_ids: List[str], position_ids: List[str]) -> None:
        logger.info("REVERSAL_CANCEL_OLD_PROTECTION", order_ids=order_ids)
        for order_id in order_ids:
            await self.placer.cancel_order(order_id, "Reversal - old protection")
        for pid in position_ids:
            self.book.forget(pid)

    async def _protect_new_position(self, tx: ReversalTransaction) -> None:
        await self.clock.sleep(self.config.settle_after_fill_ms / 1000.0)

        position = await self._locate_new_position(tx.target_side)
        if position is None:
            net = await get_current_net_position(self.broker, self.instrument)
            await self.placer.cleanup_orphaned_orders()
            if net.is_flat:
                logger.warning("REVERSAL_FLATTEN_ONLY", order_id=tx.order_id,
                               detail="old position closed, new side not opened; awaiting next signal")
                tx.state = ReversalState.FLAT
                return
            raise ReversalFailure(
                f"Position mismatch: expected {tx.target_side.value} {tx.new_quantity}, "
                f"got {net.side.value if net.side else 'flat'} {net.quantity}"
            )

        tx.new_position_id = position.id
        resolved = self.cache.resolve(tx.context)
        prices = compute_protective_prices(
            tx.target_side, position.open_price, self.instrument, self.pricing_config, resolved
        )
        label = f"{self.config.label}_{position.id}"
        logger.info(
            "REVERSAL_NEW_POSITION",
            position_id=position.id,
            side=position.side.value,
            quantity=str(position.quantity),
            open_price=str(position.open_price),
            sl=str(prices.stop_price),
            tp=str(prices.take_profit_price),
        )

        self.book.track(position.id, label=label)
        await self.placer.place_bracket(position, prices.stop_price, prices.take_profit_price, label)
        validation = await self._verify(position)

        if not validation.is_valid:
            logger.error("REVERSAL_VERIFY_FAILED", position_id=position.id, message=validation.message)
            validation = await self._manual_failsafe(position, prices.stop_price, prices.take_profit_price,
                                                     validation, label)

        if not validation.has_stop_loss:
            logger.critical("REVERSAL_UNPROTECTED", position_id=position.id)
            tx.state = ReversalState.FAILED
            tx.failure_reason = "new position could not be protected"
            await self.liquidator.liquidate(position, "REVERSAL_PROTECTION_FAILED")
            await self._flatten_survivors(tx)
            await self.placer.cleanup_orphaned_orders()
            return

        if not validation.has_take_profit:
            logger.error("REVERSAL_TP_MISSING", position_id=position.id, detail="running with stop only")

        tx.new_protection_placed = True
        tx.new_placed_at = self.clock.now()
        tx.state = ReversalState.PROTECTED
        await self._flatten_survivors(tx)
        await self.placer.cleanup_orphaned_orders()

    async def _flatten_survivors(self, tx: ReversalTransaction) -> None:
        """Liquidate anything still open on the original side: its protection is already gone."""
        positions = await self.broker.query_positions(self.instrument.symbol)
        for survivor in positions:
            if survivor.side != tx.original_side:
                continue
            logger.critical("REVERSAL_OLD_SIDE_SURVIVED", order_id=tx.order_id, position_id=survivor.id,
                            quantity=str(survivor.quantity))
            if await self.liquidator.liquidate(survivor, "REVERSAL_OLD_SIDE_SURVIVED"):
                self.book.forget(survivor.id)

    async def _locate_new_position(self, side: Side) -> Optional[Position]:
        deadline = self.clock.now() + self.config.new_position_wait_ms / 1000.0
        poll = self.config.new_position_poll_ms / 1000.0
        while True:
            positions = await self.broker.query_positions(self.instrument.symbol)
            match = next((p for p in positions if p.side == side), None)
            if match is not None or self.clock.now() >= deadline:
                return match
            await self.clock.sleep(poll)

    async def _verify(self, position: Position) -> ValidationResult:
        """Validate both legs exist and sit on the correct side of the open price."""
        stops, limits = await self.placer.protective_orders_for(position.id)
        for order in stops + limits:
            if not leg_on_correct_side(position.side, position.open_price, order.kind, order.price):
                logger.error("REVERSAL_LEG_WRONG_SIDE", order_id=order.id, kind=order.kind.value,
                             price=str(order.price), open_price=str(position.open_price))
                await self.placer.cancel_order(order.id, "wrong side of position")
        return await self.placer.validate_protection(position)

    async def _manual_failsafe(
        self,
        position: Position,
        sl_price: Decimal,
        tp_price: Decimal,
        validation: ValidationResult,
        label: str,
    ) -> ValidationResult:
        """Place whichever legs are missing, one by one, then re-validate."""
        logger.warning("REVERSAL_FAILSAFE", position_id=position.id, message=validation.message)
        if not validation.has_stop_loss:
            await self.placer.place_stop_loss(position, sl_price, label)
        if not validation.has_take_profit:
            await self.placer.place_take_profit(position, tp_price, label)
        return await self.placer.validate_protection(position)

    def _finish(self, tx: ReversalTransaction) -> None:
        logger.info("REVERSAL_COMPLETE", order_id=tx.order_id, state=tx.state.value,
                    new_position_id=tx.new_position_id)
        self.last_transaction = tx
        self.active = None

    # ============ ABORT ============

    async def expire_stale(self, orders: Optional[List[Order]] = None) -> Optional[str]:
        """
        Abort the active transaction if it can no longer complete.

        That is when the broker shows the reversal order dead short of a full
        fill (cancelled or rejected after acceptance), or when it has been
        pending longer than max_pending_ms. Returns the abort reason, if any.
        """
        tx = self.active
        if tx is None:
            return None

        age_ms = (self.clock.now() - tx.started_at) * 1000
        reason: Optional[str] = None
        if age_ms >= self.config.max_pending_ms:
            reason = f"not fully filled after {int(age_ms)}ms"
        else:
            if orders is None:
                orders = await self.broker.query_orders(self.instrument.symbol)
            order = next((o for o in orders if o.id == tx.order_id), None)
            # A filled order with its events still in flight is not dead
            if order is not None and not order.is_live and order.filled_quantity < order.quantity:
                reason = (f"reversal order {order.status.value} after {order.filled_quantity}"
                          f" of {order.quantity} filled")

        if reason is not None:
            await self.abort(reason)
        return reason

    async def abort(self, reason: str) -> None:
        """
        Abandon the active transaction. Not retried; the caller awaits the next signal.

        Cancels the reversal order and sweeps orphans. Protective orders still
        bound to a live position stay; the enforcer owns them from here.
        """
        tx = self.active
        if tx is None:
            return
        logger.error("REVERSAL_ABORTED", order_id=tx.order_id, reason=reason,
                     cumulative=str(tx.cumulative_filled))
        tx.state = ReversalState.FAILED
        tx.failure_reason = reason
        self.active = None
        self.last_transaction = tx
        try:
            if tx.order_id:
                await self.placer.cancel_order(tx.order_id, "Reversal aborted")
            await self.placer.cleanup_orphaned_orders()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("REVERSAL_CLEANUP_FAILED", error=str(e))
