"""
Unit tests for orphaned protective order cleanup.
"""
import pytest

from agent_mirror.exceptions import GatewayError


@pytest.mark.asyncio
async def test_no_open_orders(coordinator, exchange):
    result = await coordinator.clean_orphaned_orders()
    assert result.cancelled_count == 0
    assert result.errors == []
    assert result.success
    # positions are not even fetched
    assert ("get_all_positions",) not in exchange.calls


@pytest.mark.asyncio
async def test_cancels_protective_orders_without_position(coordinator, exchange):
    exchange.add_position("ETHUSDT", "1")
    orphan_tp = exchange.add_order("BTCUSDT", "TAKE_PROFIT_MARKET")
    orphan_sl = exchange.add_order("BTCUSDT", "STOP_MARKET")
    kept_sl = exchange.add_order("ETHUSDT", "STOP_MARKET")
    kept_limit = exchange.add_order("SOLUSDT", "LIMIT")

    result = await coordinator.clean_orphaned_orders()

    assert result.cancelled_count == 2
    assert result.errors == []
    remaining = {o.order_id for o in exchange.orders}
    assert remaining == {kept_sl, kept_limit}
    assert orphan_tp not in remaining and orphan_sl not in remaining


@pytest.mark.asyncio
async def test_zero_size_position_counts_as_no_position(coordinator, exchange):
    exchange.add_position("BTCUSDT", "0")
    exchange.add_order("BTCUSDT", "STOP")
    result = await coordinator.clean_orphaned_orders()
    assert result.cancelled_count == 1


@pytest.mark.asyncio
async def test_cancel_failures_are_collected(coordinator, exchange):
    order_id = exchange.add_order("BTCUSDT", "STOP_MARKET")
    exchange.failures["cancel_order"] = GatewayError("Unknown order sent.")

    result = await coordinator.clean_orphaned_orders()

    assert result.cancelled_count == 0
    assert result.success is False
    assert result.errors == [f"Failed to cancel order {order_id} for BTCUSDT: Unknown order sent."]


@pytest.mark.asyncio
async def test_fetch_failure_reported(coordinator, exchange):
    exchange.failures["get_open_orders"] = GatewayError("timeout")
    result = await coordinator.clean_orphaned_orders()
    assert result.cancelled_count == 0
    assert result.errors == ["timeout"]
