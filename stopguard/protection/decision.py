"""
Trade action decision and pre-trade guards.

Decisions always read the net position fresh from the broker; cached
exposure is never trusted when choosing between entry, close and reversal.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List

from stopguard.config.config import RiskConfig
from stopguard.domain.models import (
    Instrument,
    MarketContext,
    NetPosition,
    Position,
    Side,
    TradeAction,
    TradeSignal,
)
from stopguard.domain.protocols import BrokerGateway
from stopguard.monitoring.logger import get_logger

logger = get_logger(__name__)


def net_position_from(positions: List[Position], instrument: Instrument) -> NetPosition:
    """Signed net of de-duplicated positions. Below min lot counts as flat."""
    unique: Dict[str, Position] = {}
    for p in positions:
        if p.symbol == instrument.symbol:
            unique.setdefault(p.id, p)

    net = sum((p.signed_quantity for p in unique.values()), Decimal("0"))
    sides = {p.side for p in unique.values() if p.quantity > 0}
    both = len(sides) > 1
    ids = list(unique)

    quantity = abs(net)
    if quantity < instrument.min_lot:
        return NetPosition(quantity=quantity, side=None, position_ids=ids, both_sides=both)
    side = Side.LONG if net > 0 else Side.SHORT
    return NetPosition(quantity=quantity, side=side, position_ids=ids, both_sides=both)


async def get_current_net_position(broker: BrokerGateway, instrument: Instrument) -> NetPosition:
    positions = await broker.query_positions(instrument.symbol)
    return net_position_from(positions, instrument)


def decide_action(signal: TradeSignal, net: NetPosition) -> TradeAction:
    """Map a signal onto the fresh exposure state."""
    if net.both_sides:
        return TradeAction.CLOSE

    if net.is_flat:
        if signal == TradeSignal.OPEN_LONG:
            return TradeAction.BUY
        if signal == TradeSignal.OPEN_SHORT:
            return TradeAction.SELL
        return TradeAction.WAIT

    if net.side == Side.LONG:
        if signal == TradeSignal.OPEN_SHORT:
            logger.info("REVERSAL_DETECTED", direction="long_to_short")
            return TradeAction.REVERT
        if signal == TradeSignal.CLOSE_LONG:
            return TradeAction.CLOSE
        if signal == TradeSignal.OPEN_LONG:
            return TradeAction.BUY
        return TradeAction.WAIT

    if signal == TradeSignal.OPEN_LONG:
        logger.info("REVERSAL_DETECTED", direction="short_to_long")
        return TradeAction.REVERT
    if signal == TradeSignal.CLOSE_SHORT:
        return TradeAction.CLOSE
    if signal == TradeSignal.OPEN_SHORT:
        return TradeAction.SELL
    return TradeAction.WAIT


@dataclass
class GuardDecision:
    allowed: bool
    reason: str = ""


class PreTradeGuard:
    """Session / loss / exposure checks run before any order that adds risk."""

    def __init__(self, config: RiskConfig):
        self.config = config

    def max_loss_reached(self, context: MarketContext) -> bool:
        return context.session_pnl < 0 and abs(context.session_pnl) >= self.config.max_session_loss

    def allow_to_trade(self, context: MarketContext) -> bool:
        return context.session_active and not self.max_loss_reached(context)

    def check(self, context: MarketContext, open_positions: int = 0, *, for_reversal: bool = False) -> GuardDecision:
        """Reversals skip the open-positions limit."""
        if not context.session_active:
            return GuardDecision(False, "session inactive")
        if self.max_loss_reached(context):
            return GuardDecision(False, f"max session loss reached ({context.session_pnl})")
        if not for_reversal and open_positions >= self.config.max_open_positions:
            return GuardDecision(
                False, f"max open positions reached ({open_positions}/{self.config.max_open_positions})"
            )
        return GuardDecision(True)
