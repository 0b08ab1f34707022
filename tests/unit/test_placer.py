"""
Protective order placement: retries, message-driven corrections, validation,
all-or-nothing brackets, orphan cleanup and price-proximity discovery.
"""
import pytest
from decimal import Decimal

from stopguard.domain.models import Order, OrderKind, OrderSide, Side
from stopguard.exceptions import PlacementFailure, ValidationTimeout
from stopguard.protection.placer import ProtectiveOrderPlacer
from stopguard.sim.broker import SimBroker


def stray_order(order_id, kind=OrderKind.STOP, price="98.00", position_id=None, side=OrderSide.SELL, comment=""):
    return Order(
        id=order_id,
        symbol="ES",
        side=side,
        kind=kind,
        quantity=Decimal("1"),
        trigger_price=Decimal(price) if kind == OrderKind.STOP else None,
        limit_price=Decimal(price) if kind == OrderKind.LIMIT else None,
        position_id=position_id,
        comment=comment,
    )


@pytest.fixture
def long_position(broker):
    return broker.open_position(Side.LONG, Decimal("1"), Decimal("100.00"))


class TestSingleLeg:

    @pytest.mark.asyncio
    async def test_stop_loss_placed_and_validated(self, broker, placer, book, long_position):
        result = await placer.place_stop_loss(long_position, Decimal("98.00"), "ENTRY_POS_1")

        assert result.success
        assert result.attempts == 1
        order = broker.get_order(result.order_id)
        assert order.kind == OrderKind.STOP
        assert order.side == OrderSide.SELL
        assert order.trigger_price == Decimal("98.00")
        assert order.limit_price is None
        assert order.position_id == long_position.id
        assert order.reduce_only
        assert order.comment == "ENTRY_POS_1.StopLoss"
        assert book.get(long_position.id).stop_order_id == result.order_id

    @pytest.mark.asyncio
    async def test_take_profit_carries_limit_price_only(self, broker, placer, long_position):
        result = await placer.place_take_profit(long_position, Decimal("104.00"))

        order = broker.get_order(result.order_id)
        assert order.kind == OrderKind.LIMIT
        assert order.limit_price == Decimal("104.00")
        assert order.trigger_price is None
        assert order.comment == "TakeProfit"

    @pytest.mark.asyncio
    async def test_off_tick_price_is_rounded_before_submission(self, broker, placer, long_position):
        result = await placer.place_stop_loss(long_position, Decimal("98.10"))

        assert result.success
        assert result.placed_price == Decimal("98.00")
        assert broker.place_calls[0].trigger_price == Decimal("98.00")

    @pytest.mark.asyncio
    async def test_float_price_is_accepted(self, placer, long_position):
        result = await placer.place_stop_loss(long_position, 97.5)
        assert result.success
        assert result.placed_price == Decimal("97.50")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", [Decimal("0"), Decimal("-1"), Decimal("NaN"), None])
    async def test_invalid_price_fails_without_submission(self, broker, placer, long_position, price):
        result = await placer.place_stop_loss(long_position, price)
        assert not result.success
        assert broker.place_calls == []

    @pytest.mark.asyncio
    async def test_tick_size_rejection_three_times_returns_failure(self, broker, placer, sim_clock, long_position):
        broker.reject("Price is not a multiple of tick size", kind=OrderKind.STOP, times=3)

        result = await placer.place_stop_loss(long_position, Decimal("98.00"))

        assert not result.success
        assert result.attempts == 3
        assert "tick size" in result.message
        assert len(broker.place_calls) == 3
        assert broker.live_orders() == []
        # Backoff of 200ms * attempt before attempts 2 and 3
        assert sim_clock.elapsed == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_transient_rejection_then_success(self, broker, placer, long_position):
        broker.reject("Server busy", times=2)

        result = await placer.place_stop_loss(long_position, Decimal("98.00"))

        assert result.success
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_unsupported_reduce_only_is_stripped(self, instrument, config, sim_clock):
        broker = SimBroker(instrument, last_price=Decimal("100.00"), reduce_only_supported=False)
        position = broker.open_position(Side.LONG, Decimal("1"), Decimal("100.00"))
        placer = ProtectiveOrderPlacer(broker, instrument, config.placement, sim_clock)

        result = await placer.place_stop_loss(position, Decimal("98.00"))

        assert result.success
        assert result.attempts == 2
        assert broker.place_calls[0].reduce_only is True
        assert broker.place_calls[1].reduce_only is False

    @pytest.mark.asyncio
    async def test_validation_timeout_cancels_and_fails(self, broker, placer, sim_clock, long_position):
        broker.hide_orders(OrderKind.STOP)

        result = await placer.place_stop_loss(long_position, Decimal("98.00"))

        assert not result.success
        assert "validation failed" in result.message
        assert len(broker.place_calls) == 1
        assert broker.cancel_calls == ["ORD_1"]
        assert sim_clock.elapsed >= 2.0

    @pytest.mark.asyncio
    async def test_order_that_never_shows_raises_validation_timeout(self, placer, sim_clock):
        with pytest.raises(ValidationTimeout, match="ORD_404"):
            await placer._validate_placement("ORD_404", OrderKind.STOP, Decimal("98.00"))
        assert sim_clock.elapsed >= 2.0

    @pytest.mark.asyncio
    async def test_failed_result_raises_placement_failure(self, broker, placer, long_position):
        broker.reject("Insufficient margin", kind=OrderKind.STOP, times=3)

        result = await placer.place_stop_loss(long_position, Decimal("98.00"))

        with pytest.raises(PlacementFailure) as exc_info:
            result.raise_for_failure()
        assert exc_info.value.attempts == 3
        assert "Insufficient margin" in str(exc_info.value)

        ok = await placer.place_stop_loss(long_position, Decimal("98.00"))
        assert ok.raise_for_failure() is ok


class TestBracket:

    @pytest.mark.asyncio
    async def test_bracket_places_both_legs(self, broker, placer, book, long_position):
        result = await placer.place_bracket(long_position, Decimal("98.00"), Decimal("104.00"), "ENTRY")

        assert result.success
        assert result.stop_loss_order_id and result.take_profit_order_id
        pair = book.get(long_position.id)
        assert pair.is_complete
        assert len(broker.live_orders(long_position.id)) == 2

    @pytest.mark.asyncio
    async def test_bracket_cancels_lone_stop_when_take_profit_fails(self, broker, placer, book, long_position):
        broker.reject("Insufficient margin", kind=OrderKind.LIMIT, times=3)

        result = await placer.place_bracket(long_position, Decimal("98.00"), Decimal("104.00"))

        assert not result.success
        assert result.stop_loss_order_id is None
        assert broker.live_orders() == []
        assert book.get(long_position.id).stop_order_id is None
        assert "TP:" in result.message

    @pytest.mark.asyncio
    async def test_bracket_on_missing_position(self, placer):
        result = await placer.place_bracket(None, Decimal("98"), Decimal("104"))
        assert not result.success


class TestCleanupAndQueries:

    @pytest.mark.asyncio
    async def test_order_bound_to_absent_position_is_cancelled(self, broker, placer, long_position):
        broker.add_order(stray_order("STALE_1", position_id="POS_123"))
        await placer.place_stop_loss(long_position, Decimal("98.00"))

        removed = await placer.cleanup_orphaned_orders()

        assert removed == 1
        assert broker.get_order("STALE_1").is_live is False
        assert len(broker.live_orders(long_position.id)) == 1

    @pytest.mark.asyncio
    async def test_unbound_protective_order_is_an_orphan(self, broker, placer):
        broker.add_order(stray_order("STALE_2", position_id=None))
        assert await placer.cleanup_orphaned_orders() == 1

    @pytest.mark.asyncio
    async def test_label_prefix_filter_is_case_insensitive(self, broker, placer):
        broker.add_order(stray_order("A", position_id="POS_9", comment="EMERGENCY_POS_9.StopLoss"))
        broker.add_order(stray_order("B", position_id="POS_9", comment="MANUAL.StopLoss"))

        removed = await placer.cleanup_orphaned_orders("emergency")

        assert removed == 1
        assert broker.get_order("B").is_live

    @pytest.mark.asyncio
    async def test_market_orders_are_never_orphans(self, broker, placer):
        broker.add_order(stray_order("M", kind=OrderKind.MARKET, position_id="POS_9"))
        assert await placer.cleanup_orphaned_orders() == 0

    @pytest.mark.asyncio
    async def test_validate_protection_messages(self, broker, placer, long_position):
        v = await placer.validate_protection(long_position)
        assert (v.is_valid, v.message) == (False, "Missing both SL and TP")

        await placer.place_take_profit(long_position, Decimal("104.00"))
        v = await placer.validate_protection(long_position)
        assert (v.has_stop_loss, v.has_take_profit, v.message) == (False, True, "Missing SL")

        await placer.place_stop_loss(long_position, Decimal("98.00"))
        v = await placer.validate_protection(long_position)
        assert v.is_valid
        assert v.message == "Position fully protected"

    @pytest.mark.asyncio
    async def test_cancel_protective_orders(self, broker, placer, long_position):
        await placer.place_bracket(long_position, Decimal("98.00"), Decimal("104.00"))
        assert await placer.cancel_protective_orders(long_position.id, "test") == 2
        assert broker.live_orders() == []

    @pytest.mark.asyncio
    async def test_find_order_near_price_picks_closest_exit_side_candidate(self, broker, placer, long_position):
        broker.add_order(stray_order("FAR", price="97.50"))
        broker.add_order(stray_order("NEAR", price="98.25"))
        broker.add_order(stray_order("OTHER_POS", price="98.00", position_id="POS_77"))
        broker.add_order(stray_order("WRONG_SIDE", price="98.00", side=OrderSide.BUY))
        broker.add_order(stray_order("OUT_OF_RANGE", price="96.00"))

        found = await placer.find_order_near_price(long_position, OrderKind.STOP, Decimal("98.00"))

        assert found.id == "NEAR"

    @pytest.mark.asyncio
    async def test_find_order_near_price_ties_break_by_id(self, broker, placer, long_position):
        broker.add_order(stray_order("B_ORDER", price="98.25"))
        broker.add_order(stray_order("A_ORDER", price="97.75"))

        found = await placer.find_order_near_price(long_position, OrderKind.STOP, Decimal("98.00"))

        assert found.id == "A_ORDER"

    @pytest.mark.asyncio
    async def test_find_order_near_price_none_within_tolerance(self, broker, placer, long_position):
        broker.add_order(stray_order("FAR", price="97.00"))
        assert await placer.find_order_near_price(
            long_position, OrderKind.STOP, Decimal("98.00"), tolerance_ticks=Decimal("1")
        ) is None
