"""
CLI entrypoint for the agent position mirror.

Provides commands to follow an agent, list agents, inspect state and
run operator maintenance on the ledger.
"""
import asyncio
import typer
from typing import Optional
from pathlib import Path
from decimal import Decimal

from agent_mirror import __version__
from agent_mirror.config.config import Config, load_config
from agent_mirror.exceptions import ConfigurationError, MirrorError, describe_error
from agent_mirror.monitoring.logger import setup_logging, get_logger
from agent_mirror.storage.db import get_pool_status, init_db
from agent_mirror.storage.ledger import OrderLedger

app = typer.Typer(
    name="agent-mirror",
    help="Mirror an AI trading agent's futures positions onto a Binance account",
    add_completion=False,
)

logger = get_logger(__name__)

CONFIG_OPTION_HELP = "Path to config file (default: bundled config.yaml)"


def _load(config_path: Optional[Path]) -> Config:
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return config


def _open_ledger(config: Config) -> OrderLedger:
    return OrderLedger(init_db(config.ledger.database_url))


@app.command()
def follow(
    agent: str = typer.Argument(..., help="Agent id to mirror (see `agents`)"),
    interval: Optional[float] = typer.Option(None, "--interval", min=1.0, help="Seconds between passes"),
    total_margin: Optional[float] = typer.Option(None, "--total-margin", min=0.0, help="Global margin budget in USDT"),
    price_tolerance: Optional[float] = typer.Option(None, "--price-tolerance", help="Override price tolerance (percent)"),
    once: bool = typer.Option(False, "--once", help="Run a single pass and exit"),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
):
    """
    Follow an agent and mirror its positions.

    Example:
        agent-mirror follow deepseek-chat-v3.1 --total-margin 500
    """
    config = _load(config_path)

    if price_tolerance is not None and price_tolerance <= 0:
        typer.echo("--price-tolerance must be greater than zero", err=True)
        raise typer.Exit(1)

    from agent_mirror.data.agent_feed import AgentFeedClient
    from agent_mirror.data.binance_client import BinanceFuturesClient
    from agent_mirror.execution.coordinator import ExecutionCoordinator
    from agent_mirror.live.follow_loop import FollowLoop
    from agent_mirror.reconciliation.engine import ReconciliationEngine
    from agent_mirror.risk.price_tolerance import RiskGate

    client = BinanceFuturesClient(config.exchange)
    if not client.has_valid_credentials():
        typer.echo("BINANCE_API_KEY and BINANCE_API_SECRET must be set", err=True)
        raise typer.Exit(1)

    ledger = _open_ledger(config)
    margin = total_margin if total_margin is not None else config.follow.total_margin
    coordinator = ExecutionCoordinator(client, config.execution)
    engine = ReconciliationEngine(
        ledger,
        coordinator,
        risk_gate=RiskGate(
            config.risk,
            override_tolerance=Decimal(str(price_tolerance)) if price_tolerance is not None else None,
        ),
    )
    feed = AgentFeedClient(config.agent_feed)

    loop_runner = FollowLoop(
        agent=agent,
        feed=feed,
        engine=engine,
        interval_seconds=interval if interval is not None else config.follow.interval_seconds,
        total_margin=Decimal(str(margin)) if margin else None,
        coordinator=coordinator,
        clean_orphans=config.execution.clean_orphaned_orders,
        max_passes=1 if once else None,
    )

    async def run_follow():
        loop_runner.install_signal_handlers()
        try:
            await loop_runner.run()
        finally:
            await client.close()

    logger.info("Starting follow", agent=agent, environment=config.environment, testnet=config.exchange.use_testnet)
    asyncio.run(run_follow())
    typer.echo(f"Stopped following {agent} after {loop_runner.passes_completed} pass(es)")


@app.command()
def agents(
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
):
    """List agents available in the feed."""
    config = _load(config_path)

    from agent_mirror.data.agent_feed import AgentFeedClient

    feed = AgentFeedClient(config.agent_feed)
    try:
        agent_ids = asyncio.run(feed.list_agents())
    except MirrorError as e:
        typer.echo(f"Failed to fetch agents: {describe_error(e)}", err=True)
        raise typer.Exit(1)

    if not agent_ids:
        typer.echo("No agents found.")
        return
    typer.echo(f"Available agents ({len(agent_ids)}):")
    for agent_id in agent_ids:
        typer.echo(f"  - {agent_id}")


@app.command()
def status(
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
):
    """Show exchange positions, balance and ledger state."""
    config = _load(config_path)

    from agent_mirror.data.binance_client import BinanceFuturesClient

    db = init_db(config.ledger.database_url)
    ledger = OrderLedger(db)
    stats = ledger.get_stats()

    typer.echo("System Status")
    typer.echo("=" * 50)
    typer.echo(f"Environment: {config.environment}")
    typer.echo(f"Testnet:     {config.exchange.use_testnet}")
    typer.echo(f"Following since: {ledger.created_at().isoformat()}")
    typer.echo(f"Ledger:      {stats['active_entries']} active / {stats['total_entries']} total entries")
    pool = get_pool_status(db)
    if pool:
        typer.echo(f"DB pool:     {pool}")

    client = BinanceFuturesClient(config.exchange)
    if not client.has_valid_credentials():
        typer.echo("\nExchange credentials not configured; skipping exchange state.")
        return

    async def fetch_state():
        try:
            return await asyncio.gather(client.get_positions(), client.get_account_info())
        finally:
            await client.close()

    try:
        positions, account = asyncio.run(fetch_state())
    except MirrorError as e:
        typer.echo(f"\nFailed to fetch exchange state: {describe_error(e)}", err=True)
        raise typer.Exit(1)

    typer.echo(f"\nAvailable balance: ${account.available_balance:,.2f}")
    typer.echo(f"Wallet balance:    ${account.total_wallet_balance:,.2f}")
    if not positions:
        typer.echo("\nNo open positions.")
    for pos in positions:
        typer.echo(f"\n{pos.symbol} {pos.side.value}")
        typer.echo(f"  Size:       {abs(pos.quantity)} ({pos.leverage}x)")
        typer.echo(f"  Entry:      ${pos.entry_price:,.4f}")
        typer.echo(f"  Mark:       ${pos.mark_price:,.4f}")
        typer.echo(f"  PnL:        ${pos.unrealized_pnl:,.2f}")
    typer.echo("\n" + "=" * 50)


@app.command(name="ledger-stats")
def ledger_stats(
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
):
    """Show order ledger statistics."""
    config = _load(config_path)
    stats = _open_ledger(config).get_stats()

    typer.echo(f"Total entries:  {stats['total_entries']}")
    typer.echo(f"Active entries: {stats['active_entries']}")
    typer.echo(f"Created at:     {stats['created_at']}")
    typer.echo(f"Last updated:   {stats['last_updated'] or 'never'}")
    if stats["entries_by_agent"]:
        typer.echo("By agent:")
        for agent_id, count in sorted(stats["entries_by_agent"].items()):
            typer.echo(f"  {agent_id}: {count}")
    if stats["entries_by_symbol"]:
        typer.echo("By symbol:")
        for symbol, count in sorted(stats["entries_by_symbol"].items()):
            typer.echo(f"  {symbol}: {count}")


@app.command(name="clean-orphans")
def clean_orphans(
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
):
    """Cancel TP/SL orders left open after their position was closed."""
    config = _load(config_path)

    from agent_mirror.data.binance_client import BinanceFuturesClient
    from agent_mirror.execution.coordinator import ExecutionCoordinator

    client = BinanceFuturesClient(config.exchange)
    coordinator = ExecutionCoordinator(client, config.execution)

    async def run_cleanup():
        try:
            return await coordinator.clean_orphaned_orders()
        finally:
            await client.close()

    result = asyncio.run(run_cleanup())
    typer.echo(f"Cancelled {result.cancelled_count} orphaned order(s)")
    for error in result.errors:
        typer.echo(f"  {error}", err=True)
    if not result.success:
        raise typer.Exit(1)


@app.command(name="reset-symbol")
def reset_symbol(
    symbol: str = typer.Argument(..., help="Symbol to forget (e.g. BTC or BTCUSDT)"),
    entry_id: Optional[str] = typer.Option(None, "--entry-id", help="Only forget this entry id"),
    agent: Optional[str] = typer.Option(None, "--agent", help="Only forget entries of this agent"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
):
    """Forget processed entries so a symbol can be followed again."""
    config = _load(config_path)

    if not yes and not typer.confirm(f"Remove ledger entries for {symbol}?"):
        raise typer.Abort()

    removed = _open_ledger(config).reset_symbol(symbol, entry_id=entry_id, agent=agent)
    typer.echo(f"Removed {removed} ledger entr{'y' if removed == 1 else 'ies'} for {symbol}")


@app.command(name="cleanup-ledger")
def cleanup_ledger(
    agent: str = typer.Argument(..., help="Agent whose closed entries to prune"),
    days: Optional[int] = typer.Option(None, "--days", min=1, help="Keep entries closed within this many days"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
):
    """
    Delete closed ledger entries past the retention window.

    Entry ids still present in the agent's current snapshot are kept, so
    a position the mirror already closed is never entered again.
    """
    config = _load(config_path)
    days_to_keep = days if days is not None else config.ledger.retention_days

    from agent_mirror.data.agent_feed import AgentFeedClient

    try:
        snapshot = asyncio.run(AgentFeedClient(config.agent_feed).fetch(agent))
    except MirrorError as e:
        typer.echo(f"Failed to fetch snapshot for {agent}: {describe_error(e)}", err=True)
        raise typer.Exit(1)

    if snapshot.rejected_symbols:
        # Entry ids of unreadable records are unknown, so nothing can be proven safe to delete
        typer.echo(
            f"Snapshot for {agent} has malformed records ({', '.join(sorted(snapshot.rejected_symbols))}); not cleaning up",
            err=True,
        )
        raise typer.Exit(1)

    if not yes and not typer.confirm(f"Delete entries of {agent} closed more than {days_to_keep} days ago?"):
        raise typer.Abort()

    keep = [p.entry_id for p in snapshot.positions]
    removed = _open_ledger(config).cleanup_old_entries(days_to_keep, agent=agent, keep_entry_ids=keep)
    typer.echo(f"Removed {removed} closed ledger entr{'y' if removed == 1 else 'ies'} for {agent}")


def _version_callback(value: bool):
    if value:
        typer.echo(f"Agent Position Mirror v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
):
    """
    Agent Position Mirror

    Follows an AI trading agent and mirrors its positions on Binance USDⓈ-M futures.
    """


if __name__ == "__main__":
    app()
