"""
Emergency liquidation.

Market orders are the primary mechanism; the broker's direct close primitive
is a one-shot fallback. A per-position tracker blocks concurrent attempts and
any retry after the fallback has been spent.
"""
import asyncio
from dataclasses import dataclass
from typing import Dict, Optional

from stopguard.config.config import LiquidationConfig
from stopguard.domain.models import Instrument, OrderKind, OrderRequest, Position
from stopguard.domain.protocols import BrokerGateway, Clock
from stopguard.exceptions import LiquidationFailure
from stopguard.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class EmergencyCloseAttempt:
    """Liquidation bookkeeping for one position."""
    position_id: str
    attempt_count: int = 0
    last_attempt_time: Optional[float] = None
    last_order_id: Optional[str] = None
    fallback_used: bool = False
    in_progress: bool = False


class EmergencyLiquidator:
    """
    Forces a position closed.

    Protocol:
    1. Up to max_market_attempts market orders on the exit side for the full quantity
    2. Submission rejected: wait submit_retry_delay, next attempt
    3. Submission accepted: poll verify_polls x verify_interval for the position to vanish
    4. Still alive (or no market orders at all): direct close once, verify, return
    """

    def __init__(
        self,
        broker: BrokerGateway,
        instrument: Instrument,
        config: LiquidationConfig,
        clock: Clock,
    ):
        self.broker = broker
        self.instrument = instrument
        self.config = config
        self.clock = clock
        self._attempts: Dict[str, EmergencyCloseAttempt] = {}
        self.liquidations_total: int = 0
        self.failures_total: int = 0

    def tracker(self, position_id: str) -> Optional[EmergencyCloseAttempt]:
        return self._attempts.get(position_id)

    def forget(self, position_id: str) -> None:
        self._attempts.pop(position_id, None)

    def reset(self) -> None:
        self._attempts.clear()

    async def liquidate(self, position: Position, reason: str) -> bool:
        """Returns True once the position is confirmed gone at the broker."""
        if position is None:
            return False

        pos_id = position.id
        tracker = self._attempts.setdefault(pos_id, EmergencyCloseAttempt(position_id=pos_id))

        if tracker.fallback_used:
            logger.warning("LIQUIDATION_SKIPPED_FALLBACK_SPENT", position_id=pos_id, reason=reason)
            return False
        if tracker.in_progress:
            logger.warning("LIQUIDATION_ALREADY_IN_PROGRESS", position_id=pos_id, reason=reason)
            return False

        tracker.in_progress = True
        self.liquidations_total += 1
        try:
            if await self._market_attempts(position, tracker, reason):
                self._attempts.pop(pos_id, None)
                return True
            return await self._fallback_close(position, tracker, reason)
        finally:
            tracker.in_progress = False

    async def ensure_closed(self, position: Position, reason: str) -> None:
        """
        Liquidate and insist on the result.

        Raises:
            LiquidationFailure: the position is still live (or the attempt was refused)
        """
        if not await self.liquidate(position, reason):
            raise LiquidationFailure(f"Position {position.id} still open after liquidation ({reason})")

    async def _market_attempts(self, position: Position, tracker: EmergencyCloseAttempt, reason: str) -> bool:
        max_attempts = self.config.max_market_attempts

        while tracker.attempt_count < max_attempts:
            if not self.broker.supports_order_kind(OrderKind.MARKET):
                logger.error("LIQUIDATION_NO_MARKET_ORDERS", position_id=position.id)
                return False

            tracker.attempt_count += 1
            tracker.last_attempt_time = self.clock.now()

            logger.critical(
                "EMERGENCY_LIQUIDATION_ATTEMPT",
                position_id=position.id,
                side=position.side.value,
                quantity=str(position.quantity),
                attempt=tracker.attempt_count,
                max_attempts=max_attempts,
                reason=reason,
            )

            quantity = self.instrument.round_quantity(position.quantity)
            if quantity <= 0:
                quantity = position.quantity

            request = OrderRequest(
                symbol=position.symbol,
                side=position.side.exit_order_side,
                kind=OrderKind.MARKET,
                quantity=quantity,
                position_id=position.id,
                comment=f"EMERGENCY_{reason}_{tracker.attempt_count}",
            )

            try:
                result = await self.broker.place_order(request)
                accepted, message, order_id = result.success, result.message, result.order_id
            except asyncio.CancelledError:
                raise
            except Exception as e:
                accepted, message, order_id = False, str(e), None

            if not accepted:
                logger.error("LIQUIDATION_SUBMIT_FAILED", position_id=position.id,
                             attempt=tracker.attempt_count, message=message)
                if tracker.attempt_count < max_attempts:
                    await self.clock.sleep(self.config.submit_retry_delay_ms / 1000.0)
                continue

            tracker.last_order_id = order_id
            for poll in range(1, self.config.verify_polls + 1):
                await self.clock.sleep(self.config.verify_interval_ms / 1000.0)
                if not await self._position_exists(position.id):
                    logger.warning("LIQUIDATION_CONFIRMED", position_id=position.id,
                                   order_id=order_id, polls=poll)
                    return True
                logger.debug("LIQUIDATION_POLL", position_id=position.id, poll=poll)

            logger.error("LIQUIDATION_POSITION_SURVIVED", position_id=position.id, order_id=order_id)

        return False

    async def _fallback_close(self, position: Position, tracker: EmergencyCloseAttempt, reason: str) -> bool:
        logger.critical("LIQUIDATION_FALLBACK_CLOSE", position_id=position.id, reason=reason,
                        market_attempts=tracker.attempt_count)
        tracker.fallback_used = True
        try:
            await self.broker.close_position(position.id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.critical("LIQUIDATION_FALLBACK_FAILED", position_id=position.id, error=str(e))
            self.failures_total += 1
            return False

        await self.clock.sleep(self.config.fallback_verify_ms / 1000.0)
        if not await self._position_exists(position.id):
            logger.warning("LIQUIDATION_CONFIRMED_FALLBACK", position_id=position.id)
            self._attempts.pop(position.id, None)
            return True

        logger.critical("LIQUIDATION_FAILED", position_id=position.id,
                        detail="position still exists after direct close")
        self.failures_total += 1
        return False

    async def _position_exists(self, position_id: str) -> bool:
        try:
            positions = await self.broker.query_positions(self.instrument.symbol)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("POSITION_QUERY_FAILED", error=str(e))
            return True
        return any(p.id == position_id for p in positions)
