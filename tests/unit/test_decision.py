"""
Trade action decision from fresh net exposure, and pre-trade guards.
"""
import pytest
from decimal import Decimal

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
from stopguard.protection.decision import (
    PreTradeGuard,
    decide_action,
    get_current_net_position,
    net_position_from,
)

ES = Instrument(symbol="ES", tick_size=Decimal("0.25"))

FLAT = NetPosition(quantity=Decimal("0"), side=None)
LONG = NetPosition(quantity=Decimal("1"), side=Side.LONG, position_ids=["POS_1"])
SHORT = NetPosition(quantity=Decimal("1"), side=Side.SHORT, position_ids=["POS_1"])


def pos(pid, side, qty="1", symbol="ES"):
    return Position(id=pid, symbol=symbol, side=side, quantity=Decimal(qty), open_price=Decimal("100"))


class TestNetPosition:

    def test_flat_when_no_positions(self):
        assert net_position_from([], ES).is_flat

    def test_duplicate_reports_are_counted_once(self):
        net = net_position_from([pos("POS_1", Side.LONG, "2"), pos("POS_1", Side.LONG, "2")], ES)
        assert net.quantity == Decimal("2")
        assert net.side == Side.LONG
        assert net.position_ids == ["POS_1"]

    def test_other_symbols_are_ignored(self):
        net = net_position_from([pos("POS_1", Side.SHORT), pos("POS_2", Side.LONG, symbol="NQ")], ES)
        assert net.side == Side.SHORT

    def test_both_sides_flagged(self):
        net = net_position_from([pos("POS_1", Side.LONG), pos("POS_2", Side.SHORT)], ES)
        assert net.both_sides
        assert net.is_flat

    def test_below_min_lot_is_flat(self):
        net = net_position_from([pos("POS_1", Side.LONG, "0.5")], ES)
        assert net.is_flat

    @pytest.mark.asyncio
    async def test_reads_broker(self, broker):
        broker.open_position(Side.SHORT, Decimal("3"), Decimal("100"))
        net = await get_current_net_position(broker, broker.instrument)
        assert (net.side, net.quantity) == (Side.SHORT, Decimal("3"))


class TestDecideAction:

    @pytest.mark.parametrize("signal,net,expected", [
        (TradeSignal.OPEN_LONG, FLAT, TradeAction.BUY),
        (TradeSignal.OPEN_SHORT, FLAT, TradeAction.SELL),
        (TradeSignal.CLOSE_LONG, FLAT, TradeAction.WAIT),
        (TradeSignal.WAIT, FLAT, TradeAction.WAIT),
        (TradeSignal.OPEN_SHORT, LONG, TradeAction.REVERT),
        (TradeSignal.CLOSE_LONG, LONG, TradeAction.CLOSE),
        (TradeSignal.CLOSE_SHORT, LONG, TradeAction.WAIT),
        (TradeSignal.OPEN_LONG, LONG, TradeAction.BUY),
        (TradeSignal.OPEN_LONG, SHORT, TradeAction.REVERT),
        (TradeSignal.CLOSE_SHORT, SHORT, TradeAction.CLOSE),
        (TradeSignal.OPEN_SHORT, SHORT, TradeAction.SELL),
    ])
    def test_mapping(self, signal, net, expected):
        assert decide_action(signal, net) == expected

    def test_both_sides_always_closes(self):
        net = NetPosition(quantity=Decimal("0"), side=None, position_ids=["A", "B"], both_sides=True)
        assert decide_action(TradeSignal.OPEN_LONG, net) == TradeAction.CLOSE


class TestPreTradeGuard:

    def test_allows_normal_entry(self):
        guard = PreTradeGuard(RiskConfig())
        assert guard.check(MarketContext(price=Decimal("100"))).allowed

    def test_inactive_session(self):
        guard = PreTradeGuard(RiskConfig())
        decision = guard.check(MarketContext(price=Decimal("100"), session_active=False))
        assert not decision.allowed
        assert decision.reason == "session inactive"

    def test_max_session_loss(self):
        guard = PreTradeGuard(RiskConfig(max_session_loss=Decimal("500")))
        ctx = MarketContext(price=Decimal("100"), session_pnl=Decimal("-500"))
        assert guard.max_loss_reached(ctx)
        assert not guard.allow_to_trade(ctx)
        assert not guard.check(ctx).allowed

    def test_profit_never_trips_loss_limit(self):
        guard = PreTradeGuard(RiskConfig(max_session_loss=Decimal("500")))
        assert not guard.max_loss_reached(MarketContext(price=Decimal("100"), session_pnl=Decimal("900")))

    def test_open_positions_limit_skipped_for_reversals(self):
        guard = PreTradeGuard(RiskConfig(max_open_positions=1))
        ctx = MarketContext(price=Decimal("100"))
        assert not guard.check(ctx, open_positions=1).allowed
        assert guard.check(ctx, open_positions=1, for_reversal=True).allowed
