"""
Per-tick invariant enforcement: untracked positions, SL/TP repair,
restart adoption, duplicate and orphan cleanup.
"""
import pytest
from decimal import Decimal
from unittest.mock import MagicMock

from stopguard.domain.models import Order, OrderKind, OrderSide, Side
from stopguard.protection.enforcer import ProtectionInvariantEnforcer


def resting_order(order_id, kind, price, position_id=None, side=OrderSide.SELL):
    return Order(
        id=order_id,
        symbol="ES",
        side=side,
        kind=kind,
        quantity=Decimal("1"),
        trigger_price=Decimal(price) if kind == OrderKind.STOP else None,
        limit_price=Decimal(price) if kind == OrderKind.LIMIT else None,
        position_id=position_id,
    )


@pytest.fixture
def enforcer(broker, instrument, placer, liquidator, book, cache, config, sim_clock):
    return ProtectionInvariantEnforcer(
        broker, instrument, placer, liquidator, book, cache, config.pricing, config.enforcer, sim_clock,
    )


@pytest.fixture
def position(broker):
    return broker.open_position(Side.LONG, Decimal("1"), Decimal("100.00"))


class TestUntrackedPositions:

    @pytest.mark.asyncio
    async def test_untracked_position_gets_emergency_bracket(
        self, broker, enforcer, placer, book, market_context, position
    ):
        report = await enforcer.enforce(market_context)

        assert report.untracked == [position.id]
        assert report.emergency_protected == [position.id]
        legs = {o.kind: o for o in broker.live_orders(position.id)}
        assert legs[OrderKind.STOP].trigger_price == Decimal("98.00")
        assert legs[OrderKind.LIMIT].limit_price > Decimal("100.00")
        assert legs[OrderKind.STOP].comment == f"EMERGENCY_{position.id}.StopLoss"
        assert (await placer.validate_protection(position)).is_valid
        assert book.get(position.id).is_complete

        # Next cycle sees a tracked, fully protected position
        again = await enforcer.enforce(market_context)
        assert again.clean
        assert len(broker.place_calls) == 2

    @pytest.mark.asyncio
    async def test_untracked_position_that_cannot_be_protected_is_liquidated(
        self, broker, enforcer, market_context, position
    ):
        broker.reject("Insufficient margin", kind=OrderKind.STOP, times=3)

        report = await enforcer.enforce(market_context)

        assert report.liquidated == [position.id]
        assert await broker.query_positions() == []

    @pytest.mark.asyncio
    async def test_restart_adopts_existing_legs_and_cancels_duplicates(self, broker, enforcer, book, position):
        broker.add_order(resting_order("SL_A", OrderKind.STOP, "98.00", position.id))
        broker.add_order(resting_order("SL_B", OrderKind.STOP, "97.50", position.id))
        broker.add_order(resting_order("TP_A", OrderKind.LIMIT, "104.00", position.id))

        report = await enforcer.enforce()

        assert report.adopted == [position.id]
        assert report.duplicates_cancelled == 1
        assert report.emergency_protected == []
        assert broker.place_calls == []
        assert not broker.get_order("SL_B").is_live
        pair = book.get(position.id)
        assert (pair.stop_order_id, pair.take_profit_order_id) == ("SL_A", "TP_A")

    @pytest.mark.asyncio
    async def test_adopted_stop_only_gets_take_profit(self, broker, enforcer, market_context, position):
        broker.add_order(resting_order("SL_A", OrderKind.STOP, "98.00", position.id))

        report = await enforcer.enforce(market_context)

        assert report.adopted == [position.id]
        assert report.emergency_protected == [position.id]
        assert [r.kind for r in broker.place_calls] == [OrderKind.LIMIT]

    @pytest.mark.asyncio
    async def test_deferred_position_is_left_alone(
        self, broker, instrument, placer, liquidator, book, cache, config, sim_clock, position
    ):
        enforcer = ProtectionInvariantEnforcer(
            broker, instrument, placer, liquidator, book, cache, config.pricing, config.enforcer, sim_clock,
            defer=lambda p: True,
        )

        report = await enforcer.enforce()

        assert report.deferred == [position.id]
        assert report.untracked == []
        assert broker.place_calls == []
        assert position.id not in book


class TestTrackedRepairs:

    @pytest.mark.asyncio
    async def test_missing_stop_is_restored_at_expected_price(self, broker, enforcer, placer, book, position):
        book.track(position.id, label="ENTRY_POS_1")
        bracket = await placer.place_bracket(position, Decimal("98.00"), Decimal("104.00"), "ENTRY_POS_1")
        await broker.cancel_order(bracket.stop_loss_order_id)

        report = await enforcer.enforce()

        assert report.sl_repaired == [position.id]
        assert report.liquidated == []
        stops = [o for o in broker.live_orders(position.id) if o.kind == OrderKind.STOP]
        assert len(stops) == 1
        assert stops[0].trigger_price == Decimal("98.00")
        assert stops[0].comment == "ENTRY_POS_1.StopLoss"
        assert book.get(position.id).stop_order_id == stops[0].id
        assert not book.is_sl_alerted(position.id)

    @pytest.mark.asyncio
    async def test_stop_repair_failure_liquidates(self, broker, enforcer, placer, book, position):
        book.track(position.id, label="ENTRY_POS_1")
        await placer.place_take_profit(position, Decimal("104.00"), "ENTRY_POS_1")
        broker.reject("Insufficient margin", kind=OrderKind.STOP, times=3)

        report = await enforcer.enforce()

        assert report.liquidated == [position.id]
        assert await broker.query_positions() == []
        assert position.id not in book

        # The leftover take-profit is an orphan on the next cycle
        followup = await enforcer.enforce()
        assert followup.orphans_cancelled == 1
        assert broker.live_orders() == []

    @pytest.mark.asyncio
    async def test_missing_take_profit_alone_never_liquidates(self, broker, enforcer, placer, book, position):
        book.track(position.id, label="ENTRY_POS_1")
        await placer.place_stop_loss(position, Decimal("98.00"), "ENTRY_POS_1")
        broker.reject("Insufficient margin", kind=OrderKind.LIMIT, times=3)

        report = await enforcer.enforce()

        assert report.tp_missing == [position.id]
        assert report.liquidated == []
        assert len(await broker.query_positions()) == 1
        assert [o.kind for o in broker.live_orders(position.id)] == [OrderKind.STOP]

    @pytest.mark.asyncio
    async def test_failed_take_profit_repair_backs_off(self, broker, enforcer, placer, book, sim_clock, position):
        book.track(position.id, label="ENTRY_POS_1")
        await placer.place_stop_loss(position, Decimal("98.00"), "ENTRY_POS_1")
        broker.reject("Insufficient margin", kind=OrderKind.LIMIT, times=6)

        for _ in range(5):
            report = await enforcer.enforce()
            assert report.tp_missing == [position.id]

        limit_calls = [r for r in broker.place_calls if r.kind == OrderKind.LIMIT]
        assert len(limit_calls) == 3
        # Retry backoff (0.4s + 0.6s) is paid on the first pass only
        assert sim_clock.elapsed == pytest.approx(1.0)

        sim_clock.advance(seconds=30)
        await enforcer.enforce()
        assert len([r for r in broker.place_calls if r.kind == OrderKind.LIMIT]) == 6

        sim_clock.advance(seconds=30)
        report = await enforcer.enforce()
        assert report.tp_repaired == [position.id]
        assert book.tp_repair_due(position.id, sim_clock.now())

    @pytest.mark.asyncio
    async def test_missing_take_profit_is_repaired(self, broker, enforcer, placer, book, market_context, position):
        book.track(position.id, label="ENTRY_POS_1")
        await placer.place_stop_loss(position, Decimal("98.00"), "ENTRY_POS_1")

        report = await enforcer.enforce(market_context)

        assert report.tp_repaired == [position.id]
        assert (await placer.validate_protection(position)).is_valid

    @pytest.mark.asyncio
    async def test_lost_stop_id_is_recovered_by_price(self, broker, enforcer, placer, book, position):
        book.track(position.id, label="ENTRY_POS_1")
        book.record_leg(position.id, OrderKind.STOP, None, Decimal("98.00"), validated=False)
        await placer.place_take_profit(position, Decimal("104.00"), "ENTRY_POS_1")
        broker.add_order(resting_order("LOST_SL", OrderKind.STOP, "98.00", position_id=None))

        report = await enforcer.enforce()

        assert report.sl_repaired == []
        assert report.orphans_cancelled == 0
        assert broker.get_order("LOST_SL").is_live
        assert book.get(position.id).stop_order_id == "LOST_SL"
        assert len(broker.place_calls) == 1

    @pytest.mark.asyncio
    async def test_missing_stop_alert_is_raised_once(self, broker, enforcer, placer, book, position, monkeypatch):
        fake_logger = MagicMock()
        monkeypatch.setattr("stopguard.protection.enforcer.logger", fake_logger)
        book.track(position.id, label="ENTRY_POS_1")
        await placer.place_take_profit(position, Decimal("104.00"), "ENTRY_POS_1")
        # Neither repair nor liquidation can succeed
        broker.reject("Insufficient margin", kind=OrderKind.STOP, times=6)
        broker.fill_market_orders = False
        broker.close_position_works = False

        await enforcer.enforce()
        await enforcer.enforce()

        alerts = [c for c in fake_logger.critical.call_args_list if c.args[0] == "SL_MISSING"]
        assert len(alerts) == 1
        assert any(c.args[0] == "LIQUIDATION_FAILURE" for c in fake_logger.critical.call_args_list)
        assert book.is_sl_alerted(position.id)
        assert len(await broker.query_positions()) == 1


class TestOrphans:

    @pytest.mark.asyncio
    async def test_order_bound_to_vanished_position_cancelled_in_one_cycle(
        self, broker, enforcer, placer, book, position
    ):
        book.track(position.id)
        await placer.place_bracket(position, Decimal("98.00"), Decimal("104.00"))
        broker.add_order(resting_order("STALE", OrderKind.STOP, "95.00", position_id="POS_123"))

        report = await enforcer.enforce()

        assert report.orphans_cancelled == 1
        assert not broker.get_order("STALE").is_live
        assert len(broker.live_orders(position.id)) == 2

    @pytest.mark.asyncio
    async def test_book_entry_dropped_when_position_is_gone(self, broker, enforcer, book):
        book.track("POS_GONE")

        await enforcer.enforce()

        assert "POS_GONE" not in book
