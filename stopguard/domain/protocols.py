"""
Domain protocols (interfaces) for dependency inversion.

The protection subsystem depends only on these contracts. Production wires a
real broker adapter and SystemClock; tests wire SimBroker and SimClock.
"""
import asyncio
import time
from typing import Awaitable, Callable, List, Optional, Protocol, runtime_checkable

from stopguard.domain.models import (
    Order,
    OrderKind,
    OrderRequest,
    PlaceOrderResult,
    Position,
    Trade,
)

TradeFilledHandler = Callable[[Trade], Awaitable[None]]
PositionRemovedHandler = Callable[[Position], Awaitable[None]]


@runtime_checkable
class BrokerGateway(Protocol):
    """
    Minimal broker primitives consumed by the protection subsystem.

    Queries must reflect broker truth at call time (no caching on this side).
    """

    async def place_order(self, request: OrderRequest) -> PlaceOrderResult: ...

    async def cancel_order(self, order_id: str) -> bool: ...

    async def query_positions(self, symbol: Optional[str] = None) -> List[Position]: ...

    async def query_orders(self, symbol: Optional[str] = None) -> List[Order]: ...

    async def close_position(self, position_id: str) -> bool: ...

    def supports_order_kind(self, kind: OrderKind) -> bool: ...

    def subscribe(
        self,
        on_trade_filled: Optional[TradeFilledHandler] = None,
        on_position_removed: Optional[PositionRemovedHandler] = None,
    ) -> None: ...


@runtime_checkable
class Clock(Protocol):
    """Time source. ``now`` is monotonic seconds; ``sleep`` may be simulated."""

    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock implementation backed by time.monotonic and asyncio.sleep."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
