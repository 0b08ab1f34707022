"""
CLI entrypoint for stopguard.

Provides commands for a simulated reversal walkthrough and config inspection.
"""
import asyncio
from decimal import Decimal
from pathlib import Path
from typing import Optional

import typer
import yaml

from stopguard.config.config import Config, load_config
from stopguard.domain.models import MarketContext, Side, TradeSignal
from stopguard.monitoring.logger import bind_trading_context, get_logger, setup_logging

app = typer.Typer(
    name="stopguard",
    help="Protective-order reconciliation and atomic reversal",
    add_completion=False,
)

logger = get_logger(__name__)


def _load(config_path: Optional[Path]) -> Config:
    config = load_config(config_path)
    setup_logging(config.monitoring)
    bind_trading_context(config.instrument.symbol, config.environment)
    return config


@app.command("show-config")
def show_config(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Print the effective configuration (YAML + environment overrides)."""
    config = load_config(config_path)
    typer.echo(yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False))


@app.command()
def simulate(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    ordering: Optional[str] = typer.Option(
        None, "--ordering", help="Reversal cancel ordering: on_flatten_fill | before_submit"
    ),
    entry_price: str = typer.Option("100.00", "--entry-price", help="Long entry fill price"),
    reversal_price: str = typer.Option("101.25", "--reversal-price", help="Reversal fill price"),
    previous_low: str = typer.Option("98.00", "--previous-low", help="Pivot low for the long stop"),
    previous_high: str = typer.Option("103.00", "--previous-high", help="Pivot high for the short stop"),
):
    """
    Run a scripted long entry followed by a long -> short reversal against SimBroker.

    Example:
        stopguard simulate --ordering before_submit --reversal-price 99.50
    """
    config = _load(config_path)
    if ordering:
        if ordering not in ("on_flatten_fill", "before_submit"):
            typer.secho(f"Unknown ordering: {ordering}", fg=typer.colors.RED)
            raise typer.Exit(1)
        config.reversal.cancel_ordering = ordering

    asyncio.run(_run_simulation(
        config,
        Decimal(entry_price),
        Decimal(reversal_price),
        Decimal(previous_low),
        Decimal(previous_high),
    ))


async def _run_simulation(
    config: Config,
    entry_price: Decimal,
    reversal_price: Decimal,
    previous_low: Decimal,
    previous_high: Decimal,
) -> None:
    # Local imports keep ``show-config`` free of the protection stack
    from stopguard.protection.coordinator import ProtectionCoordinator
    from stopguard.sim.broker import SimBroker
    from stopguard.sim.sim_clock import SimClock

    clock = SimClock()
    instrument = config.instrument.to_instrument()
    broker = SimBroker(instrument, last_price=entry_price)
    coordinator = ProtectionCoordinator(broker, config, clock)

    context = MarketContext(
        price=entry_price,
        previous_high=previous_high,
        previous_low=previous_low,
        volatility_in_ticks=Decimal("8"),
    )

    typer.echo("=" * 60)
    typer.echo(f"SIMULATION: {instrument.symbol}  ordering={config.reversal.cancel_ordering}")
    typer.echo("=" * 60)

    result = await coordinator.on_tick(TradeSignal.OPEN_LONG, context)
    await broker.flush_events()
    typer.echo(f"\n[1] {result.action.value} -> {result.message}")
    await _print_state(broker)

    broker.set_price(reversal_price)
    context = MarketContext(
        price=reversal_price,
        previous_high=previous_high,
        previous_low=previous_low,
        volatility_in_ticks=Decimal("8"),
    )
    result = await coordinator.on_tick(TradeSignal.OPEN_SHORT, context)
    await broker.flush_events()
    typer.echo(f"\n[2] {result.action.value} -> {result.message}")
    tx = coordinator.reversal.last_transaction
    if tx is not None:
        typer.echo(
            f"    reversal state={tx.state.value} fills={[str(f) for f in tx.fills]} "
            f"new_position={tx.new_position_id}"
        )
    await _print_state(broker)

    result = await coordinator.on_tick(TradeSignal.WAIT, context)
    report = result.enforcement
    typer.echo(f"\n[3] enforcement clean={report.clean if report else None} "
               f"orphans_cancelled={report.orphans_cancelled if report else 0}")
    await _print_state(broker)

    await coordinator.dispose()
    typer.echo(f"\nSimulated time elapsed: {clock.elapsed:.3f}s")


async def _print_state(broker) -> None:
    positions = await broker.query_positions()
    if not positions:
        typer.echo("    positions: flat")
    for p in positions:
        arrow = "+" if p.side == Side.LONG else "-"
        typer.echo(f"    position {p.id}: {arrow}{p.quantity} @ {p.open_price}")
    for o in broker.live_orders():
        typer.echo(f"      {o.kind.value:<6} {o.side.value:<4} {o.quantity} @ {o.price}  "
                   f"pos={o.position_id} [{o.comment}]")


if __name__ == "__main__":
    app()
