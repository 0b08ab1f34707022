"""
Protection book: per-position record of the protective order pair.

The book is a local mirror only. Any entry can be rebuilt from broker orders
(restart recovery) and is dropped as soon as the broker reports the position
gone.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set

from stopguard.domain.models import Order, OrderKind
from stopguard.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ProtectiveOrderPair:
    """Stop-loss / take-profit orders bound to one position."""
    position_id: str
    stop_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    expected_stop_price: Optional[Decimal] = None
    expected_take_profit_price: Optional[Decimal] = None
    stop_validated: bool = False
    take_profit_validated: bool = False
    label: str = ""

    @property
    def is_complete(self) -> bool:
        return self.stop_validated and self.take_profit_validated

    def leg_id(self, kind: OrderKind) -> Optional[str]:
        return self.stop_order_id if kind == OrderKind.STOP else self.take_profit_order_id

    def expected_price(self, kind: OrderKind) -> Optional[Decimal]:
        return self.expected_stop_price if kind == OrderKind.STOP else self.expected_take_profit_price


class ProtectionBook:
    """Tracked pairs keyed by position id, the missing-SL alert set and TP repair backoff."""

    def __init__(self):
        self._pairs: Dict[str, ProtectiveOrderPair] = {}
        self._sl_alerted: Set[str] = set()
        self._tp_retry_at: Dict[str, float] = {}

    def __contains__(self, position_id: str) -> bool:
        return position_id in self._pairs

    def __len__(self) -> int:
        return len(self._pairs)

    def get(self, position_id: str) -> Optional[ProtectiveOrderPair]:
        return self._pairs.get(position_id)

    def track(self, position_id: str, label: str = "") -> ProtectiveOrderPair:
        pair = self._pairs.get(position_id)
        if pair is None:
            pair = ProtectiveOrderPair(position_id=position_id, label=label)
            self._pairs[position_id] = pair
        return pair

    def record_leg(
        self,
        position_id: str,
        kind: OrderKind,
        order_id: Optional[str],
        price: Optional[Decimal],
        validated: bool,
    ) -> ProtectiveOrderPair:
        pair = self.track(position_id)
        if kind == OrderKind.STOP:
            pair.stop_order_id = order_id
            pair.expected_stop_price = price
            pair.stop_validated = validated
        else:
            pair.take_profit_order_id = order_id
            pair.expected_take_profit_price = price
            pair.take_profit_validated = validated
        return pair

    def invalidate_leg(self, position_id: str, kind: OrderKind) -> None:
        """Forget a leg's order id (keeps the expected price for proximity discovery)."""
        pair = self._pairs.get(position_id)
        if pair is None:
            return
        if kind == OrderKind.STOP:
            pair.stop_order_id = None
            pair.stop_validated = False
        else:
            pair.take_profit_order_id = None
            pair.take_profit_validated = False

    def invalidate_missing(self, live_orders: Iterable[Order]) -> List[str]:
        """Drop leg ids that no longer match a live order. Returns affected position ids."""
        live_ids = {o.id for o in live_orders if o.is_live}
        affected: List[str] = []
        for pair in self._pairs.values():
            for kind in (OrderKind.STOP, OrderKind.LIMIT):
                leg = pair.leg_id(kind)
                if leg and leg not in live_ids:
                    self.invalidate_leg(pair.position_id, kind)
                    affected.append(pair.position_id)
        return affected

    def forget(self, position_id: str) -> None:
        self._pairs.pop(position_id, None)
        self._sl_alerted.discard(position_id)
        self._tp_retry_at.pop(position_id, None)

    def tracked_ids(self) -> List[str]:
        return list(self._pairs)

    # -- Missing-SL alert dedup --

    def mark_sl_alerted(self, position_id: str) -> bool:
        """Returns True the first time a position is alerted."""
        if position_id in self._sl_alerted:
            return False
        self._sl_alerted.add(position_id)
        return True

    def clear_sl_alert(self, position_id: str) -> None:
        self._sl_alerted.discard(position_id)

    def is_sl_alerted(self, position_id: str) -> bool:
        return position_id in self._sl_alerted

    # -- Failed TP repair backoff --

    def defer_tp_repair(self, position_id: str, until: float) -> None:
        self._tp_retry_at[position_id] = until

    def tp_repair_due(self, position_id: str, now: float) -> bool:
        until = self._tp_retry_at.get(position_id)
        return until is None or now >= until

    def clear_tp_backoff(self, position_id: str) -> None:
        self._tp_retry_at.pop(position_id, None)

    def clear(self) -> None:
        self._pairs.clear()
        self._sl_alerted.clear()
        self._tp_retry_at.clear()
