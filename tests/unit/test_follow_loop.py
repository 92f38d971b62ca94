"""
Unit tests for FollowLoop scheduling: pass limits, stop requests, fetch failures and orphan cleanup.
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_mirror.domain.models import (
    Action,
    ActionKind,
    ActionStatus,
    ExecutedAction,
    OrphanCleanupResult,
    PositionSnapshot,
    Side,
)
from agent_mirror.exceptions import GatewayError
from agent_mirror.live.follow_loop import FollowLoop


def _executed(status: ActionStatus) -> ExecutedAction:
    action = Action(kind=ActionKind.ENTER, symbol="BTC", side=Side.BUY, quantity=Decimal("0.1"), reason="test")
    return ExecutedAction(action=action, status=status)


@pytest.fixture
def feed(position_factory):
    mock = MagicMock()
    mock.fetch = AsyncMock(return_value=PositionSnapshot(positions=[position_factory()]))
    return mock


@pytest.fixture
def coordinator():
    mock = MagicMock()
    mock.clean_orphaned_orders = AsyncMock(return_value=OrphanCleanupResult(cancelled_count=0, errors=[]))
    return mock


@pytest.fixture
def engine(coordinator):
    mock = MagicMock()
    mock.coordinator = coordinator
    mock.reconcile = AsyncMock(return_value=[])
    return mock


class TestScheduling:

    @pytest.mark.asyncio
    async def test_stops_after_max_passes(self, feed, engine):
        loop = FollowLoop("agent-a", feed, engine, interval_seconds=0, total_margin=Decimal("500"), max_passes=3)

        outcomes = await loop.run()

        assert [o.pass_number for o in outcomes] == [1, 2, 3]
        assert loop.passes_completed == 3
        assert feed.fetch.await_count == 3
        engine.reconcile.assert_awaited_with(
            "agent-a",
            feed.fetch.return_value.positions,
            total_margin=Decimal("500"),
            held_symbols=frozenset(),
        )

    @pytest.mark.asyncio
    async def test_stop_request_lets_running_pass_finish(self, feed, engine):
        loop = FollowLoop("agent-a", feed, engine, interval_seconds=60)

        async def reconcile_then_stop(agent, positions, total_margin=None, held_symbols=()):
            loop.request_stop()
            return [_executed(ActionStatus.EXECUTED)]

        engine.reconcile.side_effect = reconcile_then_stop

        outcomes = await asyncio.wait_for(loop.run(), timeout=5)

        assert len(outcomes) == 1
        assert outcomes[0].count(ActionStatus.EXECUTED) == 1
        assert loop.stop_requested

    @pytest.mark.asyncio
    async def test_stop_during_interval_wait(self, feed, engine):
        loop = FollowLoop("agent-a", feed, engine, interval_seconds=60)
        asyncio.get_running_loop().call_later(0.05, loop.request_stop)

        outcomes = await asyncio.wait_for(loop.run(), timeout=5)

        assert len(outcomes) == 1

    @pytest.mark.asyncio
    async def test_crashed_pass_does_not_stop_the_loop(self, feed, engine):
        engine.reconcile.side_effect = RuntimeError("boom")
        loop = FollowLoop("agent-a", feed, engine, interval_seconds=0, max_passes=2)

        outcomes = await loop.run()

        assert outcomes == []
        assert loop.passes_completed == 2
        assert engine.reconcile.await_count == 2


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_fetch_failure_skips_reconcile(self, feed, engine):
        feed.fetch.side_effect = GatewayError("Agent API error (503): unavailable", status_code=503)
        loop = FollowLoop("agent-a", feed, engine, interval_seconds=0)

        outcome = await loop.run_once()

        assert outcome.fetch_error == "Agent API error (503): unavailable"
        assert outcome.results == []
        engine.reconcile.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_orphans_cleaned_before_fetch(self, feed, engine, coordinator):
        coordinator.clean_orphaned_orders.return_value = OrphanCleanupResult(cancelled_count=2, errors=[])
        loop = FollowLoop("agent-a", feed, engine, interval_seconds=0)

        outcome = await loop.run_once()

        assert outcome.orphans_cancelled == 2
        coordinator.clean_orphaned_orders.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_orphan_cleanup_can_be_disabled(self, feed, engine, coordinator):
        loop = FollowLoop("agent-a", feed, engine, interval_seconds=0, clean_orphans=False)

        await loop.run_once()

        coordinator.clean_orphaned_orders.assert_not_awaited()
        engine.reconcile.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_outcome_counts(self, feed, engine):
        engine.reconcile.return_value = [
            _executed(ActionStatus.EXECUTED),
            _executed(ActionStatus.SKIPPED),
            _executed(ActionStatus.SKIPPED),
            _executed(ActionStatus.FAILED),
        ]
        loop = FollowLoop("agent-a", feed, engine, interval_seconds=0)

        outcome = await loop.run_once()

        assert outcome.count(ActionStatus.EXECUTED) == 1
        assert outcome.count(ActionStatus.SKIPPED) == 2
        assert outcome.count(ActionStatus.FAILED) == 1

    @pytest.mark.asyncio
    async def test_rejected_records_are_passed_as_held(self, feed, engine, position_factory):
        feed.fetch.return_value = PositionSnapshot(
            positions=[position_factory(symbol="ETH", entry_id="2")],
            rejected_symbols=frozenset({"BTC"}),
        )
        loop = FollowLoop("agent-a", feed, engine, interval_seconds=0)

        outcome = await loop.run_once()

        assert outcome.held_symbols == ["BTC"]
        _, kwargs = engine.reconcile.call_args
        assert kwargs["held_symbols"] == frozenset({"BTC"})
