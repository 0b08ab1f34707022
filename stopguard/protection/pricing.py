"""
Stop-loss / take-profit price calculation.

Stops anchor on the side-correct pivot (long: previous low, short: previous
high). Take-profits are a volatility multiple from entry. Any result on the
wrong side of entry is forced to a minimum distance before it reaches the
placer; the caller always receives a placeable pair.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from typing import Optional

from stopguard.config.config import PricingConfig
from stopguard.domain.models import Instrument, MarketContext, OrderKind, Side
from stopguard.exceptions import InvalidPriceError, WrongSideCalculation
from stopguard.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ProtectivePrices:
    """Result of a stop/take-profit calculation."""
    stop_price: Decimal
    take_profit_price: Decimal
    volatility_ticks: Decimal
    volatility_source: str  # "fresh" | "cached" | "default"
    sl_corrected: bool = False
    tp_corrected: bool = False

    @property
    def corrected(self) -> bool:
        return self.sl_corrected or self.tp_corrected


@dataclass
class ResolvedContext:
    previous_high: Optional[Decimal]
    previous_low: Optional[Decimal]
    volatility_ticks: Decimal
    volatility_source: str


def _valid(value: Optional[Decimal]) -> bool:
    return value is not None and value.is_finite() and value > 0


def _round_toward(instrument: Instrument, price: Decimal, down: bool) -> Decimal:
    """Round to tick, away from entry (down for long stops, up for short stops)."""
    ticks = (price / instrument.tick_size).to_integral_value(rounding=ROUND_FLOOR if down else ROUND_CEILING)
    return ticks * instrument.tick_size


class MarketContextCache:
    """
    Last known pivots and volatility.

    Emergency protection runs on whatever context is available; when the
    current snapshot lacks a value, the last valid one is used instead.
    """

    def __init__(self, default_volatility_ticks: Decimal = Decimal("20")):
        self.default_volatility_ticks = default_volatility_ticks
        self.previous_high: Optional[Decimal] = None
        self.previous_low: Optional[Decimal] = None
        self.volatility_ticks: Optional[Decimal] = None
        self._fallback_logged = False

    def update(self, context: Optional[MarketContext]) -> None:
        if context is None:
            return
        if _valid(context.previous_high):
            self.previous_high = context.previous_high
        if _valid(context.previous_low):
            self.previous_low = context.previous_low
        if _valid(context.volatility_in_ticks):
            self.volatility_ticks = context.volatility_in_ticks

    def resolve(self, context: Optional[MarketContext]) -> ResolvedContext:
        """Fresh value, else cached, else default (volatility only)."""
        high = context.previous_high if context and _valid(context.previous_high) else self.previous_high
        low = context.previous_low if context and _valid(context.previous_low) else self.previous_low

        if context and _valid(context.volatility_in_ticks):
            vol, source = context.volatility_in_ticks, "fresh"
        elif _valid(self.volatility_ticks):
            vol, source = self.volatility_ticks, "cached"
        else:
            vol, source = self.default_volatility_ticks, "default"

        if source != "fresh" and not self._fallback_logged:
            logger.warning("CONTEXT_FALLBACK", volatility_source=source, volatility_ticks=str(vol))
            self._fallback_logged = True
        elif source == "fresh":
            self._fallback_logged = False

        return ResolvedContext(previous_high=high, previous_low=low, volatility_ticks=vol, volatility_source=source)

    def reset(self) -> None:
        self.previous_high = None
        self.previous_low = None
        self.volatility_ticks = None
        self._fallback_logged = False


def pivot_for_side(side: Side, previous_high: Optional[Decimal], previous_low: Optional[Decimal]) -> Optional[Decimal]:
    """Side-correct stop anchor: long positions stop under the low, shorts over the high."""
    return previous_low if side == Side.LONG else previous_high


def leg_on_correct_side(side: Side, entry: Decimal, kind: OrderKind, price: Optional[Decimal]) -> bool:
    """A stop sits on the losing side of entry, a take-profit on the winning side."""
    if price is None:
        return False
    below = price < entry
    above = price > entry
    if kind == OrderKind.STOP:
        return below if side == Side.LONG else above
    return above if side == Side.LONG else below


def ensure_correct_side(side: Side, entry: Decimal, kind: OrderKind, price: Optional[Decimal]) -> None:
    """
    Raises:
        WrongSideCalculation: ``price`` is not on the correct side of ``entry`` for ``kind``
    """
    if not leg_on_correct_side(side, entry, kind, price):
        leg = "stop" if kind == OrderKind.STOP else "take-profit"
        raise WrongSideCalculation(f"{side.value} {leg} {price} on wrong side of entry {entry}")


def compute_protective_prices(
    side: Side,
    entry_price: Decimal,
    instrument: Instrument,
    config: PricingConfig,
    resolved: ResolvedContext,
) -> ProtectivePrices:
    """
    Compute a tick-rounded stop/take-profit pair for a position.

    Raises:
        InvalidPriceError: entry price is not a positive finite number
    """
    if not _valid(entry_price):
        raise InvalidPriceError(f"Invalid entry price {entry_price}")

    vol = resolved.volatility_ticks
    pivot = pivot_for_side(side, resolved.previous_high, resolved.previous_low)
    offset = instrument.ticks(config.pivot_offset_ticks)
    long_side = side == Side.LONG

    if _valid(pivot):
        raw_sl = pivot - offset if long_side else pivot + offset
    else:
        distance = instrument.ticks(vol * config.sl_atr_multiplier)
        raw_sl = entry_price - distance if long_side else entry_price + distance
    stop_price = _round_toward(instrument, raw_sl, down=long_side)

    tp_distance = instrument.ticks(vol * config.tp_atr_multiplier)
    raw_tp = entry_price + tp_distance if long_side else entry_price - tp_distance
    take_profit_price = instrument.round_price(raw_tp)

    sl_corrected = tp_corrected = False

    try:
        ensure_correct_side(side, entry_price, OrderKind.STOP, stop_price)
    except WrongSideCalculation as e:
        corrected = entry_price - instrument.ticks(config.min_sl_ticks) if long_side \
            else entry_price + instrument.ticks(config.min_sl_ticks)
        logger.warning(
            "SL_WRONG_SIDE_CORRECTED",
            side=side.value,
            entry=str(entry_price),
            computed=str(stop_price),
            corrected=str(instrument.round_price(corrected)),
            error=str(e),
        )
        stop_price = _round_toward(instrument, corrected, down=long_side)
        sl_corrected = True

    try:
        ensure_correct_side(side, entry_price, OrderKind.LIMIT, take_profit_price)
    except WrongSideCalculation as e:
        corrected = entry_price + instrument.ticks(config.min_tp_ticks) if long_side \
            else entry_price - instrument.ticks(config.min_tp_ticks)
        logger.warning(
            "TP_WRONG_SIDE_CORRECTED",
            side=side.value,
            entry=str(entry_price),
            computed=str(take_profit_price),
            corrected=str(instrument.round_price(corrected)),
            error=str(e),
        )
        take_profit_price = instrument.round_price(corrected)
        tp_corrected = True

    return ProtectivePrices(
        stop_price=stop_price,
        take_profit_price=take_profit_price,
        volatility_ticks=vol,
        volatility_source=resolved.volatility_source,
        sl_corrected=sl_corrected,
        tp_corrected=tp_corrected,
    )
