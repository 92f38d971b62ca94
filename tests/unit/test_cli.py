"""
CLI commands that run without network access: version, ledger maintenance and follow pre-checks.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from agent_mirror import __version__
from agent_mirror.cli import app
from agent_mirror.domain.models import PositionSnapshot, Side
from agent_mirror.storage.ledger import LedgerEntryModel, OrderLedger

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    for name in ("LEDGER_DATABASE_URL", "BINANCE_API_KEY", "BINANCE_API_SECRET", "API_KEY", "API_SECRET"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        "ledger:\n"
        f"  database_url: sqlite:///{tmp_path / 'ledger.db'}\n"
        "monitoring:\n"
        "  log_level: WARNING\n"
        "  log_format: text\n"
    )
    return path


@pytest.fixture
def seeded_ledger(config_file, tmp_path):
    ledger = OrderLedger.from_url(f"sqlite:///{tmp_path / 'ledger.db'}")
    ledger.commit("101", "BTC", "agent-a", Side.BUY, Decimal("0.1"), Decimal("50000"))
    ledger.commit("202", "ETH", "agent-a", Side.SELL, Decimal("2"), Decimal("3000"))
    ledger.commit("303", "BTC", "agent-b", Side.BUY, Decimal("0.2"), Decimal("50100"))
    return ledger


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"Agent Position Mirror v{__version__}" in result.output


def test_missing_config_file(tmp_path):
    result = runner.invoke(app, ["ledger-stats", "--config", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
    assert "Configuration error" in result.output


def test_ledger_stats(config_file, seeded_ledger):
    result = runner.invoke(app, ["ledger-stats", "--config", str(config_file)])

    assert result.exit_code == 0, result.output
    assert "Total entries:  3" in result.output
    assert "Active entries: 3" in result.output
    assert "agent-a: 2" in result.output
    assert "BTC: 2" in result.output


def test_reset_symbol_for_one_agent(config_file, seeded_ledger):
    result = runner.invoke(app, ["reset-symbol", "BTCUSDT", "--agent", "agent-a", "--yes", "--config", str(config_file)])

    assert result.exit_code == 0, result.output
    assert "Removed 1 ledger entry for BTCUSDT" in result.output
    assert not seeded_ledger.is_processed("101", symbol="BTC", agent="agent-a")
    assert seeded_ledger.is_processed("303", symbol="BTC", agent="agent-b")


def test_reset_symbol_requires_confirmation(config_file, seeded_ledger):
    result = runner.invoke(app, ["reset-symbol", "ETH", "--config", str(config_file)], input="n\n")

    assert result.exit_code != 0
    assert seeded_ledger.is_processed("202", symbol="ETH", agent="agent-a")


def test_follow_rejects_non_positive_tolerance(config_file):
    result = runner.invoke(app, ["follow", "agent-a", "--price-tolerance", "0", "--config", str(config_file)])
    assert result.exit_code == 1
    assert "--price-tolerance must be greater than zero" in result.output


def test_follow_requires_credentials(config_file):
    result = runner.invoke(app, ["follow", "agent-a", "--once", "--config", str(config_file)])
    assert result.exit_code == 1
    assert "BINANCE_API_KEY and BINANCE_API_SECRET must be set" in result.output


def _close_and_age(ledger, days):
    for entry_id, symbol, agent in (("101", "BTC", "agent-a"), ("202", "ETH", "agent-a"), ("303", "BTC", "agent-b")):
        ledger.mark_closed(agent, symbol, entry_id, "closed")
    then = datetime.now(timezone.utc) - timedelta(days=days)
    with ledger.db.get_session() as session:
        for row in session.query(LedgerEntryModel).all():
            row.created_at = then
            row.closed_at = then


def test_cleanup_ledger_keeps_ids_in_snapshot(config_file, seeded_ledger, position_factory):
    _close_and_age(seeded_ledger, days=40)
    snapshot = PositionSnapshot(positions=[position_factory(symbol="BTC", entry_id="101")])

    with patch("agent_mirror.data.agent_feed.AgentFeedClient.fetch", new=AsyncMock(return_value=snapshot)):
        result = runner.invoke(app, ["cleanup-ledger", "agent-a", "--yes", "--config", str(config_file)])

    assert result.exit_code == 0, result.output
    assert "Removed 1 closed ledger entry for agent-a" in result.output
    assert seeded_ledger.is_processed("101", symbol="BTC", agent="agent-a")
    assert not seeded_ledger.is_processed("202", symbol="ETH", agent="agent-a")
    assert seeded_ledger.is_processed("303", symbol="BTC", agent="agent-b")


def test_cleanup_ledger_refuses_snapshot_with_rejected_records(config_file, seeded_ledger):
    _close_and_age(seeded_ledger, days=40)
    snapshot = PositionSnapshot(positions=[], rejected_symbols=frozenset({"BTC"}))

    with patch("agent_mirror.data.agent_feed.AgentFeedClient.fetch", new=AsyncMock(return_value=snapshot)):
        result = runner.invoke(app, ["cleanup-ledger", "agent-a", "--yes", "--config", str(config_file)])

    assert result.exit_code == 1
    assert "malformed records (BTC)" in result.output
    assert seeded_ledger.is_processed("101", symbol="BTC", agent="agent-a")
    assert seeded_ledger.is_processed("202", symbol="ETH", agent="agent-a")


def test_follow_does_not_prune_ledger(config_file, seeded_ledger):
    config_file.write_text(config_file.read_text() + "exchange:\n  api_key: key\n  api_secret: secret\n")
    _close_and_age(seeded_ledger, days=400)

    with patch("agent_mirror.live.follow_loop.FollowLoop.run", new=AsyncMock(return_value=[])), \
            patch("agent_mirror.live.follow_loop.FollowLoop.install_signal_handlers"):
        result = runner.invoke(app, ["follow", "agent-a", "--once", "--config", str(config_file)])

    assert result.exit_code == 0, result.output
    assert seeded_ledger.get_stats()["total_entries"] == 3
