"""
Domain models for the protection subsystem.

Positions and orders are mirrors of broker state; the broker is the only
source of truth. Prices and quantities are Decimal throughout.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from enum import Enum
from typing import List, Optional


class Side(str, Enum):
    """Position side."""
    LONG = "long"
    SHORT = "short"

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG

    @property
    def entry_order_side(self) -> "OrderSide":
        """Order side that opens (or adds to) a position on this side."""
        return OrderSide.BUY if self is Side.LONG else OrderSide.SELL

    @property
    def exit_order_side(self) -> "OrderSide":
        """Order side that reduces a position on this side."""
        return OrderSide.SELL if self is Side.LONG else OrderSide.BUY


class OrderSide(str, Enum):
    """Order direction."""
    BUY = "buy"
    SELL = "sell"


class OrderKind(str, Enum):
    """Order type. Protective stop-loss is STOP, take-profit is LIMIT."""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"


class OrderStatus(str, Enum):
    """Broker order status."""
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


# Statuses that still reference (and can act on) a position.
LIVE_ORDER_STATUSES = frozenset({OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED})
PROTECTIVE_ORDER_KINDS = frozenset({OrderKind.STOP, OrderKind.LIMIT})


class TradeSignal(str, Enum):
    """Opaque per-tick signal from the decision layer."""
    OPEN_LONG = "open_long"
    OPEN_SHORT = "open_short"
    CLOSE_LONG = "close_long"
    CLOSE_SHORT = "close_short"
    WAIT = "wait"


class TradeAction(str, Enum):
    """Action derived from a signal and the fresh broker net position."""
    BUY = "buy"
    SELL = "sell"
    CLOSE = "close"
    REVERT = "revert"
    WAIT = "wait"


@dataclass
class Position:
    """Live broker position (mirrored, never owned)."""
    id: str
    symbol: str
    side: Side
    quantity: Decimal
    open_price: Decimal
    current_price: Optional[Decimal] = None
    account: str = "default"
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def signed_quantity(self) -> Decimal:
        return self.quantity if self.side == Side.LONG else -self.quantity


@dataclass
class Order:
    """Broker order."""
    id: str
    symbol: str
    side: OrderSide
    kind: OrderKind
    quantity: Decimal
    status: OrderStatus = OrderStatus.OPEN
    trigger_price: Optional[Decimal] = None  # stop orders
    limit_price: Optional[Decimal] = None    # limit orders
    position_id: Optional[str] = None
    comment: str = ""
    reduce_only: bool = False
    filled_quantity: Decimal = Decimal("0")

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_ORDER_STATUSES

    @property
    def is_protective(self) -> bool:
        return self.kind in PROTECTIVE_ORDER_KINDS

    @property
    def price(self) -> Optional[Decimal]:
        """Effective price: trigger for stops, limit for limits."""
        if self.kind == OrderKind.STOP:
            return self.trigger_price
        return self.limit_price


@dataclass
class Trade:
    """A single fill reported by the broker."""
    id: str
    order_id: str
    symbol: str
    side: OrderSide
    quantity: Decimal
    price: Decimal
    position_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class OrderRequest:
    """Order submission spec handed to the broker."""
    symbol: str
    side: OrderSide
    kind: OrderKind
    quantity: Decimal
    trigger_price: Optional[Decimal] = None
    limit_price: Optional[Decimal] = None
    position_id: Optional[str] = None
    reduce_only: bool = False
    comment: str = ""
    time_in_force: str = "day"


class PlaceOrderStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class PlaceOrderResult:
    """Broker response to a submission."""
    status: PlaceOrderStatus
    order_id: Optional[str] = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status == PlaceOrderStatus.SUCCESS and bool(self.order_id)


@dataclass
class MarketContext:
    """
    Market snapshot consumed from the decision layer.

    Pivots are the previous bar's high/low. Volatility is ATR in ticks.
    Session fields are computed upstream and only read here.
    """
    price: Decimal
    previous_high: Optional[Decimal] = None
    previous_low: Optional[Decimal] = None
    volatility_in_ticks: Optional[Decimal] = None
    session_active: bool = True
    session_pnl: Decimal = Decimal("0")


@dataclass
class NetPosition:
    """Signed net exposure for the instrument/account pair, read fresh from the broker."""
    quantity: Decimal
    side: Optional[Side]
    position_ids: List[str] = field(default_factory=list)
    both_sides: bool = False

    @property
    def is_flat(self) -> bool:
        return self.side is None or self.quantity <= 0


@dataclass(frozen=True)
class Instrument:
    """Instrument trading rules: tick size for prices, lot step and minimum for quantities."""
    symbol: str
    tick_size: Decimal
    lot_step: Decimal = Decimal("1")
    min_lot: Decimal = Decimal("1")

    def __post_init__(self):
        if self.tick_size <= 0:
            raise ValueError(f"Invalid tick_size {self.tick_size} for {self.symbol}")
        if self.lot_step <= 0:
            raise ValueError(f"Invalid lot_step {self.lot_step} for {self.symbol}")

    def round_price(self, price: Decimal) -> Decimal:
        """Round to the nearest tick."""
        ticks = (price / self.tick_size).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return ticks * self.tick_size

    def round_quantity(self, quantity: Decimal) -> Decimal:
        """Round down to the lot step."""
        steps = (quantity / self.lot_step).quantize(Decimal("1"), rounding=ROUND_DOWN)
        return steps * self.lot_step

    def ticks(self, count) -> Decimal:
        """Price distance of ``count`` ticks."""
        return Decimal(str(count)) * self.tick_size

    def ticks_between(self, a: Decimal, b: Decimal) -> Decimal:
        return abs(a - b) / self.tick_size

    def is_on_tick(self, price: Decimal) -> bool:
        return (price / self.tick_size) == (price / self.tick_size).to_integral_value()
