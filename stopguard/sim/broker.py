"""
SimBroker: In-memory netting broker implementing BrokerGateway.

Models:
- One net position per symbol (netting account); an opposite fill larger than
  the position closes it and opens a new position with a fresh id
- Market/limit/stop order lifecycle bound to a position id
- Manual or automatic fills, delivered as queued trade / position-removed events
- Scripted rejections (message-driven, per order kind), off-tick price rejection,
  unsupported reduce-only flag, invisible orders (validation timeouts),
  unavailable market orders and a failing direct-close primitive
- Injected broker errors: a primitive raises BrokerError for the next N calls

Events are queued and only dispatched by ``flush_events()`` (``fill()`` flushes
by default), so handlers never re-enter the caller that triggered them.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from stopguard.domain.models import (
    Instrument,
    Order,
    OrderKind,
    OrderRequest,
    OrderSide,
    OrderStatus,
    PlaceOrderResult,
    PlaceOrderStatus,
    Position,
    Side,
    Trade,
)
from stopguard.domain.protocols import PositionRemovedHandler, TradeFilledHandler
from stopguard.exceptions import BrokerError
from stopguard.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class RejectionSpec:
    """Reject the next ``times`` submissions matching ``kind`` (None = any kind)."""
    message: str
    kind: Optional[OrderKind] = None
    times: int = 1


@dataclass
class ErrorSpec:
    """Raise BrokerError from the next ``times`` calls to ``operation``."""
    operation: str
    message: str
    times: int = 1


class SimBroker:
    """Deterministic in-memory broker for tests and the ``simulate`` command."""

    def __init__(
        self,
        instrument: Instrument,
        *,
        last_price: Decimal = Decimal("0"),
        fill_market_orders: bool = True,
        enforce_tick_size: bool = True,
        reduce_only_supported: bool = True,
        market_orders_supported: bool = True,
        close_position_works: bool = True,
    ):
        self.instrument = instrument
        self.last_price = last_price
        self.fill_market_orders = fill_market_orders
        self.enforce_tick_size = enforce_tick_size
        self.reduce_only_supported = reduce_only_supported
        self.market_orders_supported = market_orders_supported
        self.close_position_works = close_position_works

        self._positions: Dict[str, Position] = {}
        self._orders: Dict[str, Order] = {}
        self._rejections: List[RejectionSpec] = []
        self._errors: List[ErrorSpec] = []
        self._invisible_kinds: Set[OrderKind] = set()
        self._events: List[Tuple[str, Any]] = []
        self._trade_handlers: List[TradeFilledHandler] = []
        self._removed_handlers: List[PositionRemovedHandler] = []
        self._seq = {"order": 0, "position": 0, "trade": 0}

        # Call log for assertions
        self.place_calls: List[OrderRequest] = []
        self.cancel_calls: List[str] = []
        self.close_calls: List[str] = []

    # -- Scripting --

    def reject(self, message: str, *, kind: Optional[OrderKind] = None, times: int = 1) -> None:
        self._rejections.append(RejectionSpec(message=message, kind=kind, times=times))

    def inject_error(self, operation: str, message: str = "Broker unavailable", *, times: int = 1) -> None:
        """Make ``operation`` (a BrokerGateway method name) raise BrokerError."""
        self._errors.append(ErrorSpec(operation=operation, message=message, times=times))

    def hide_orders(self, kind: OrderKind) -> None:
        """Accept orders of ``kind`` but never show them in queries."""
        self._invisible_kinds.add(kind)

    def set_price(self, price: Decimal) -> None:
        self.last_price = price
        for pos in self._positions.values():
            pos.current_price = price

    def open_position(
        self,
        side: Side,
        quantity: Decimal,
        price: Decimal,
        *,
        position_id: Optional[str] = None,
        symbol: Optional[str] = None,
    ) -> Position:
        """Inject a live position directly (no order, no events)."""
        pid = position_id or self._next_id("position", "POS")
        pos = Position(
            id=pid,
            symbol=symbol or self.instrument.symbol,
            side=side,
            quantity=quantity,
            open_price=price,
            current_price=self.last_price or price,
        )
        self._positions[pid] = pos
        return copy.copy(pos)

    def add_order(self, order: Order) -> Order:
        """Inject an order directly (e.g. a protective order surviving a restart)."""
        self._orders[order.id] = order
        return copy.copy(order)

    def _next_id(self, key: str, prefix: str) -> str:
        self._seq[key] += 1
        return f"{prefix}_{self._seq[key]}"

    # -- Subscriptions --

    def subscribe(
        self,
        on_trade_filled: Optional[TradeFilledHandler] = None,
        on_position_removed: Optional[PositionRemovedHandler] = None,
    ) -> None:
        if on_trade_filled:
            self._trade_handlers.append(on_trade_filled)
        if on_position_removed:
            self._removed_handlers.append(on_position_removed)

    def unsubscribe_all(self) -> None:
        self._trade_handlers.clear()
        self._removed_handlers.clear()

    async def flush_events(self) -> int:
        """Dispatch queued events in order. Returns the number dispatched."""
        dispatched = 0
        while self._events:
            kind, payload = self._events.pop(0)
            handlers = self._trade_handlers if kind == "trade" else self._removed_handlers
            for handler in list(handlers):
                await handler(payload)
            dispatched += 1
        return dispatched

    @property
    def pending_events(self) -> int:
        return len(self._events)

    # -- BrokerGateway --

    def supports_order_kind(self, kind: OrderKind) -> bool:
        if kind == OrderKind.MARKET:
            return self.market_orders_supported
        return True

    async def place_order(self, request: OrderRequest) -> PlaceOrderResult:
        self._maybe_raise("place_order")
        self.place_calls.append(copy.copy(request))

        rejection = self._take_rejection(request.kind)
        if rejection:
            return PlaceOrderResult(status=PlaceOrderStatus.FAILURE, message=rejection)

        if request.kind == OrderKind.MARKET and not self.market_orders_supported:
            return PlaceOrderResult(status=PlaceOrderStatus.FAILURE, message="Market orders are not available")

        if request.reduce_only and not self.reduce_only_supported:
            return PlaceOrderResult(
                status=PlaceOrderStatus.FAILURE,
                message="Parameter reduce-only is not supported for this account",
            )

        if request.quantity <= 0:
            return PlaceOrderResult(status=PlaceOrderStatus.FAILURE, message="Invalid quantity")

        price = request.trigger_price if request.kind == OrderKind.STOP else request.limit_price
        if request.kind != OrderKind.MARKET:
            if price is None or price <= 0:
                return PlaceOrderResult(status=PlaceOrderStatus.FAILURE, message="Invalid price")
            if self.enforce_tick_size and not self.instrument.is_on_tick(price):
                return PlaceOrderResult(
                    status=PlaceOrderStatus.FAILURE,
                    message=f"Price {price} is not a multiple of tick size {self.instrument.tick_size}",
                )

        if request.position_id and request.position_id not in self._positions:
            return PlaceOrderResult(
                status=PlaceOrderStatus.FAILURE,
                message=f"Position {request.position_id} not found",
            )

        oid = self._next_id("order", "ORD")
        order = Order(
            id=oid,
            symbol=request.symbol,
            side=request.side,
            kind=request.kind,
            quantity=request.quantity,
            trigger_price=request.trigger_price if request.kind == OrderKind.STOP else None,
            limit_price=request.limit_price if request.kind == OrderKind.LIMIT else None,
            position_id=request.position_id,
            comment=request.comment,
            reduce_only=request.reduce_only,
        )
        self._orders[oid] = order

        if order.kind == OrderKind.MARKET and self.fill_market_orders:
            self._apply_fill(order, order.quantity, self.last_price)

        return PlaceOrderResult(status=PlaceOrderStatus.SUCCESS, order_id=oid)

    async def cancel_order(self, order_id: str) -> bool:
        self._maybe_raise("cancel_order")
        self.cancel_calls.append(order_id)
        order = self._orders.get(order_id)
        if order is None or not order.is_live:
            return False
        order.status = OrderStatus.CANCELLED
        return True

    async def query_positions(self, symbol: Optional[str] = None) -> List[Position]:
        self._maybe_raise("query_positions")
        return [
            copy.copy(p) for p in self._positions.values()
            if symbol is None or p.symbol == symbol
        ]

    async def query_orders(self, symbol: Optional[str] = None) -> List[Order]:
        self._maybe_raise("query_orders")
        return [
            copy.copy(o) for o in self._orders.values()
            if (symbol is None or o.symbol == symbol) and o.kind not in self._invisible_kinds
        ]

    async def close_position(self, position_id: str) -> bool:
        self._maybe_raise("close_position")
        self.close_calls.append(position_id)
        if not self.close_position_works:
            return False
        pos = self._positions.pop(position_id, None)
        if pos is None:
            return False
        self._events.append(("removed", copy.copy(pos)))
        return True

    # -- Fills --

    async def fill(
        self,
        order_id: str,
        quantity: Decimal,
        price: Optional[Decimal] = None,
        *,
        dispatch: bool = True,
    ) -> Trade:
        """Fill ``quantity`` of a live order at ``price`` (default: last price)."""
        order = self._orders.get(order_id)
        if order is None or not order.is_live:
            raise ValueError(f"Order {order_id} is not live")
        remaining = order.quantity - order.filled_quantity
        if quantity > remaining:
            raise ValueError(f"Fill {quantity} exceeds remaining {remaining} on {order_id}")
        trade = self._apply_fill(order, quantity, price if price is not None else self.last_price)
        if dispatch:
            await self.flush_events()
        return trade

    def live_orders(self, position_id: Optional[str] = None) -> List[Order]:
        return [
            copy.copy(o) for o in self._orders.values()
            if o.is_live and (position_id is None or o.position_id == position_id)
        ]

    def get_order(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return copy.copy(order) if order else None

    def _maybe_raise(self, operation: str) -> None:
        for spec in self._errors:
            if spec.operation == operation:
                spec.times -= 1
                if spec.times <= 0:
                    self._errors.remove(spec)
                raise BrokerError(spec.message)

    def _take_rejection(self, kind: OrderKind) -> Optional[str]:
        for spec in self._rejections:
            if spec.kind is None or spec.kind == kind:
                spec.times -= 1
                if spec.times <= 0:
                    self._rejections.remove(spec)
                return spec.message
        return None

    def _net_position(self, symbol: str) -> Optional[Position]:
        for pos in self._positions.values():
            if pos.symbol == symbol:
                return pos
        return None

    def _apply_fill(self, order: Order, quantity: Decimal, price: Decimal) -> Trade:
        fill_side = Side.LONG if order.side == OrderSide.BUY else Side.SHORT
        pos = self._net_position(order.symbol)
        position_id: Optional[str] = None

        if pos is None:
            position_id = self._open_new(order.symbol, fill_side, quantity, price)
        elif pos.side == fill_side:
            total = pos.quantity + quantity
            pos.open_price = (pos.open_price * pos.quantity + price * quantity) / total
            pos.quantity = total
            position_id = pos.id
        else:
            position_id = pos.id
            if quantity < pos.quantity:
                pos.quantity -= quantity
            else:
                remainder = quantity - pos.quantity
                del self._positions[pos.id]
                self._events.append(("removed", copy.copy(pos)))
                if remainder > 0:
                    position_id = self._open_new(order.symbol, fill_side, remainder, price)

        order.filled_quantity += quantity
        order.status = (
            OrderStatus.FILLED if order.filled_quantity >= order.quantity
            else OrderStatus.PARTIALLY_FILLED
        )

        trade = Trade(
            id=self._next_id("trade", "TRD"),
            order_id=order.id,
            symbol=order.symbol,
            side=order.side,
            quantity=quantity,
            price=price,
            position_id=position_id,
        )
        self._events.append(("trade", trade))
        logger.debug("SIM_FILL", order_id=order.id, quantity=str(quantity), price=str(price), position_id=position_id)
        return trade

    def _open_new(self, symbol: str, side: Side, quantity: Decimal, price: Decimal) -> str:
        pid = self._next_id("position", "POS")
        self._positions[pid] = Position(
            id=pid,
            symbol=symbol,
            side=side,
            quantity=quantity,
            open_price=price,
            current_price=self.last_price or price,
        )
        return pid
