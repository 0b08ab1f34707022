"""
Protective order placement, validation and cleanup.

Every protective leg is a reduce-only order on the exit side, bound to the
position id, day time-in-force. A leg only counts as placed once the broker
shows it back with the right kind and price.
"""
import asyncio
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Iterable, List, Optional, Set, Tuple

from stopguard.config.config import PlacementConfig
from stopguard.domain.models import (
    Instrument,
    Order,
    OrderKind,
    OrderRequest,
    PlaceOrderResult,
    PlaceOrderStatus,
    Position,
)
from stopguard.domain.protocols import BrokerGateway, Clock
from stopguard.exceptions import PlacementFailure, ValidationTimeout
from stopguard.monitoring.logger import get_logger
from stopguard.protection.book import ProtectionBook

logger = get_logger(__name__)

STOP_LOSS_SUFFIX = "StopLoss"
TAKE_PROFIT_SUFFIX = "TakeProfit"

_TICK_HINTS = ("tick", "increment")
_UNSUPPORTED_HINTS = ("not supported", "reduce")


@dataclass
class PlacementResult:
    """Outcome of placing one protective leg."""
    success: bool
    order_id: Optional[str] = None
    placed_price: Optional[Decimal] = None
    message: str = ""
    attempts: int = 0

    @classmethod
    def succeeded(cls, order_id: str, price: Decimal, attempts: int = 1) -> "PlacementResult":
        return cls(success=True, order_id=order_id, placed_price=price,
                   message="Order placed successfully", attempts=attempts)

    @classmethod
    def failed(cls, message: str, attempts: int = 0) -> "PlacementResult":
        return cls(success=False, message=message, attempts=attempts)

    def raise_for_failure(self) -> "PlacementResult":
        if not self.success:
            raise PlacementFailure(self.message, attempts=self.attempts)
        return self


@dataclass
class BracketResult:
    """Outcome of an all-or-nothing SL+TP bracket."""
    success: bool
    stop_loss_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    message: str = ""


@dataclass
class ValidationResult:
    """Protection status of a position at the broker."""
    is_valid: bool
    has_stop_loss: bool
    has_take_profit: bool
    message: str


def leg_label(label: Optional[str], suffix: str) -> str:
    return f"{label}.{suffix}" if label else suffix


class ProtectiveOrderPlacer:
    """
    Places and validates stop-loss / take-profit legs.

    Retry protocol per leg:
    1. Preflight: tick-round the price; stops carry trigger price only, limits price only
    2. Submit; on rejection adjust from the message and back off retry_delay * attempt
    3. On acceptance poll the broker until the order shows with matching kind/price
    4. Validation mismatch or timeout: cancel the stray order, return Failure
    """

    def __init__(
        self,
        broker: BrokerGateway,
        instrument: Instrument,
        config: PlacementConfig,
        clock: Clock,
        book: Optional[ProtectionBook] = None,
    ):
        self.broker = broker
        self.instrument = instrument
        self.config = config
        self.clock = clock
        self.book = book

    # ============ SINGLE LEGS ============

    async def place_stop_loss(self, position: Position, price: Decimal, label: Optional[str] = None) -> PlacementResult:
        return await self._place_leg(position, OrderKind.STOP, price, leg_label(label, STOP_LOSS_SUFFIX))

    async def place_take_profit(self, position: Position, price: Decimal, label: Optional[str] = None) -> PlacementResult:
        return await self._place_leg(position, OrderKind.LIMIT, price, leg_label(label, TAKE_PROFIT_SUFFIX))

    async def _place_leg(self, position: Position, kind: OrderKind, price, comment: str) -> PlacementResult:
        leg = "StopLoss" if kind == OrderKind.STOP else "TakeProfit"

        if position is None:
            return PlacementResult.failed("Position is null")
        if isinstance(price, (int, float)):
            price = Decimal(str(price))
        if not isinstance(price, Decimal) or not price.is_finite() or price <= 0:
            return PlacementResult.failed(f"Invalid {leg} price: {price}")
        if not self.broker.supports_order_kind(kind):
            return PlacementResult.failed(f"No {kind.value} order type available")

        price = self.instrument.round_price(price)
        request = OrderRequest(
            symbol=position.symbol,
            side=position.side.exit_order_side,
            kind=kind,
            quantity=position.quantity,
            trigger_price=price if kind == OrderKind.STOP else None,
            limit_price=price if kind == OrderKind.LIMIT else None,
            position_id=position.id,
            reduce_only=True,
            comment=comment,
        )

        last_message = ""
        for attempt in range(1, self.config.max_attempts + 1):
            if attempt > 1:
                delay = self.config.retry_delay_ms * attempt / 1000.0
                logger.warning(
                    "PLACEMENT_RETRY",
                    leg=leg,
                    position_id=position.id,
                    attempt=attempt,
                    max_attempts=self.config.max_attempts,
                    delay_s=delay,
                )
                await self.clock.sleep(delay)

            request = self._preflight(request)
            result = await self._submit(request)

            if result.success:
                logger.info("PROTECTIVE_ORDER_PLACED", leg=leg, order_id=result.order_id,
                            position_id=position.id, price=str(price))
                try:
                    validated = await self._validate_placement(result.order_id, kind, price)
                except ValidationTimeout as e:
                    logger.error("PLACEMENT_VALIDATION_TIMEOUT", order_id=result.order_id, error=str(e))
                    validated = False
                if validated:
                    if self.book is not None:
                        self.book.record_leg(position.id, kind, result.order_id, price, validated=True)
                    return PlacementResult.succeeded(result.order_id, price, attempts=attempt)

                logger.error("PLACEMENT_VALIDATION_FAILED", leg=leg, order_id=result.order_id, position_id=position.id)
                await self.cancel_order(result.order_id, "validation failed")
                return PlacementResult.failed(
                    f"Order placed but validation failed: {result.order_id}", attempts=attempt
                )

            last_message = result.message or "Unknown error"
            logger.warning("PLACEMENT_REJECTED", leg=leg, position_id=position.id,
                           attempt=attempt, message=last_message)
            request = self._correct_from_message(request, last_message)

        logger.error("PLACEMENT_EXHAUSTED", leg=leg, position_id=position.id,
                     attempts=self.config.max_attempts, message=last_message)
        return PlacementResult.failed(
            f"Failed after {self.config.max_attempts} attempts: {last_message}",
            attempts=self.config.max_attempts,
        )

    def _preflight(self, request: OrderRequest) -> OrderRequest:
        if request.kind == OrderKind.STOP:
            return replace(request, trigger_price=self.instrument.round_price(request.trigger_price), limit_price=None)
        if request.kind == OrderKind.LIMIT:
            return replace(request, limit_price=self.instrument.round_price(request.limit_price), trigger_price=None)
        return request

    def _correct_from_message(self, request: OrderRequest, message: str) -> OrderRequest:
        lowered = message.lower()
        if any(h in lowered for h in _TICK_HINTS):
            return self._preflight(request)
        if any(h in lowered for h in _UNSUPPORTED_HINTS) and request.reduce_only:
            logger.warning("PLACEMENT_STRIP_OPTIONAL_PARAMS", comment=request.comment)
            return replace(request, reduce_only=False)
        return request

    async def _submit(self, request: OrderRequest) -> PlaceOrderResult:
        try:
            return await self.broker.place_order(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return PlaceOrderResult(status=PlaceOrderStatus.FAILURE, message=str(e))

    async def _validate_placement(self, order_id: str, kind: OrderKind, expected_price: Decimal) -> bool:
        """
        True once the order shows with matching kind and price, False on a mismatch.

        Raises:
            ValidationTimeout: the order never showed up
        """
        tolerance = self.instrument.tick_size * self.config.price_tolerance_ticks
        deadline = self.clock.now() + self.config.validation_timeout_ms / 1000.0
        poll = self.config.validation_poll_ms / 1000.0

        while True:
            order = await self._find_order(order_id)
            if order is not None:
                kind_matches = order.kind == kind and order.is_live
                actual = order.price
                price_matches = actual is not None and abs(actual - expected_price) < tolerance
                if kind_matches and price_matches:
                    return True
                logger.warning(
                    "PLACEMENT_VALIDATION_MISMATCH",
                    order_id=order_id,
                    kind_matches=kind_matches,
                    price_matches=price_matches,
                    expected=str(expected_price),
                    actual=str(actual),
                )
                return False
            if self.clock.now() >= deadline:
                break
            await self.clock.sleep(poll)

        raise ValidationTimeout(
            f"Order {order_id} not seen within {self.config.validation_timeout_ms}ms"
        )

    async def _find_order(self, order_id: str) -> Optional[Order]:
        try:
            orders = await self.broker.query_orders(self.instrument.symbol)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("ORDER_QUERY_FAILED", error=str(e))
            return None
        return next((o for o in orders if o.id == order_id), None)

    # ============ BRACKET ============

    async def place_bracket(
        self,
        position: Position,
        sl_price: Decimal,
        tp_price: Decimal,
        label: Optional[str] = None,
    ) -> BracketResult:
        """Place SL and TP. If only one leg lands, cancel it: no half brackets."""
        if position is None:
            return BracketResult(success=False, message="Position is null")

        logger.info("BRACKET_PLACING", position_id=position.id, sl=str(sl_price), tp=str(tp_price), label=label)

        sl = await self.place_stop_loss(position, sl_price, label)
        tp = await self.place_take_profit(position, tp_price, label)
        both = sl.success and tp.success

        if not both:
            logger.error("BRACKET_INCOMPLETE", position_id=position.id, sl_ok=sl.success, tp_ok=tp.success)
            if sl.success and sl.order_id:
                await self.cancel_order(sl.order_id, "Bracket incomplete - TP failed")
                if self.book is not None:
                    self.book.invalidate_leg(position.id, OrderKind.STOP)
            elif tp.success and tp.order_id:
                await self.cancel_order(tp.order_id, "Bracket incomplete - SL failed")
                if self.book is not None:
                    self.book.invalidate_leg(position.id, OrderKind.LIMIT)

        return BracketResult(
            success=both,
            stop_loss_order_id=sl.order_id if both else None,
            take_profit_order_id=tp.order_id if both else None,
            message="Bracket placed successfully" if both else f"SL: {sl.message}, TP: {tp.message}",
        )

    # ============ CANCEL / CLEANUP ============

    async def cancel_order(self, order_id: str, reason: str) -> bool:
        try:
            cancelled = await self.broker.cancel_order(order_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("CANCEL_FAILED", order_id=order_id, reason=reason, error=str(e))
            return False
        if cancelled:
            logger.info("ORDER_CANCELLED", order_id=order_id, reason=reason)
        return cancelled

    async def live_protective_orders(self, orders: Optional[Iterable[Order]] = None) -> List[Order]:
        """Open/partially-filled stop and limit orders for the instrument."""
        if orders is None:
            orders = await self.broker.query_orders(self.instrument.symbol)
        return [o for o in orders if o.is_live and o.is_protective and o.symbol == self.instrument.symbol]

    async def protective_orders_for(
        self, position_id: str, orders: Optional[Iterable[Order]] = None
    ) -> Tuple[List[Order], List[Order]]:
        """(stops, limits) bound to ``position_id``."""
        live = await self.live_protective_orders(orders)
        bound = [o for o in live if o.position_id == position_id]
        return (
            [o for o in bound if o.kind == OrderKind.STOP],
            [o for o in bound if o.kind == OrderKind.LIMIT],
        )

    async def cancel_protective_orders(self, position_id: str, reason: str) -> int:
        if not position_id:
            return 0
        stops, limits = await self.protective_orders_for(position_id)
        targets = stops + limits
        if targets:
            logger.info("CANCEL_PROTECTIVE", position_id=position_id, count=len(targets), reason=reason)
        cancelled = 0
        for order in targets:
            if await self.cancel_order(order.id, reason):
                cancelled += 1
        return cancelled

    async def cleanup_orphaned_orders(
        self,
        label_prefix: Optional[str] = None,
        *,
        live_position_ids: Optional[Set[str]] = None,
        orders: Optional[Iterable[Order]] = None,
    ) -> int:
        """
        Cancel protective orders bound to no position or to a position that is not live.

        Callers that already hold a fresh broker snapshot pass it in to keep the
        per-tick path to a single query.
        """
        if live_position_ids is None:
            positions = await self.broker.query_positions(self.instrument.symbol)
            live_position_ids = {p.id for p in positions}

        orphans = [
            o for o in await self.live_protective_orders(orders)
            if not o.position_id or o.position_id not in live_position_ids
        ]
        if label_prefix:
            prefix = label_prefix.lower()
            orphans = [o for o in orphans if o.comment and o.comment.lower().startswith(prefix)]

        if orphans:
            logger.warning("ORPHANS_FOUND", count=len(orphans), order_ids=[o.id for o in orphans])
        removed = 0
        for order in orphans:
            if await self.cancel_order(order.id, "Orphaned - position closed"):
                removed += 1
        return removed

    # ============ QUERIES ============

    async def validate_protection(
        self, position: Position, orders: Optional[Iterable[Order]] = None
    ) -> ValidationResult:
        if position is None:
            return ValidationResult(False, False, False, "Position is null")

        stops, limits = await self.protective_orders_for(position.id, orders)
        has_sl, has_tp = bool(stops), bool(limits)

        if not has_sl and not has_tp:
            return ValidationResult(False, False, False, "Missing both SL and TP")
        if not has_sl:
            return ValidationResult(False, False, True, "Missing SL")
        if not has_tp:
            return ValidationResult(False, True, False, "Missing TP")
        return ValidationResult(True, True, True, "Position fully protected")

    async def find_order_near_price(
        self,
        position: Position,
        kind: OrderKind,
        price: Decimal,
        tolerance_ticks: Optional[Decimal] = None,
        orders: Optional[Iterable[Order]] = None,
    ) -> Optional[Order]:
        """
        Locate a live exit-side order of ``kind`` within tolerance of ``price``.

        Used when an explicit order id is lost. Candidates bound to another
        position are excluded; the closest match wins, ties broken by order id.
        """
        ticks = tolerance_ticks if tolerance_ticks is not None else self.config.proximity_tolerance_ticks
        tolerance = self.instrument.tick_size * ticks
        exit_side = position.side.exit_order_side

        candidates = [
            o for o in await self.live_protective_orders(orders)
            if o.kind == kind
            and o.side == exit_side
            and o.position_id in (None, "", position.id)
            and o.price is not None
            and abs(o.price - price) <= tolerance
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda o: (abs(o.price - price), o.id))
