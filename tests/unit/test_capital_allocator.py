"""
Unit tests for proportional capital allocation.
"""
from decimal import Decimal

import pytest

from agent_mirror.domain.models import AllocationRequest, Side
from agent_mirror.portfolio.capital_allocator import CapitalAllocator


def _request(symbol, margin, quantity="1", leverage="10", side=Side.BUY):
    return AllocationRequest(
        symbol=symbol,
        margin=Decimal(str(margin)),
        quantity=Decimal(str(quantity)),
        leverage=Decimal(str(leverage)),
        side=side,
    )


def test_scales_down_to_budget():
    """Two candidates (500 + 300) under a 400 budget are halved."""
    result = CapitalAllocator().allocate(
        [_request("BTC", 500, quantity="0.2"), _request("ETH", 300, quantity="-3", side=Side.SELL)],
        Decimal("400"),
    )

    btc = result.for_symbol("BTC")
    eth = result.for_symbol("ETH")
    assert btc.allocation_ratio == Decimal("0.5")
    assert btc.allocated_margin == Decimal("250")
    assert eth.allocated_margin == Decimal("150")
    assert btc.adjusted_quantity == Decimal("0.1")
    assert eth.adjusted_quantity == Decimal("1.5")
    assert result.total_allocated_margin == Decimal("400")
    assert result.total_original_margin == Decimal("800")


def test_never_scales_up():
    result = CapitalAllocator().allocate([_request("BTC", 100, quantity="0.5")], Decimal("1000"))
    btc = result.for_symbol("BTC")
    assert btc.allocation_ratio == Decimal("1")
    assert btc.allocated_margin == Decimal("100")
    assert btc.adjusted_quantity == Decimal("0.5")


def test_notional_is_margin_times_leverage():
    result = CapitalAllocator().allocate([_request("BTC", 200, leverage="5")], Decimal("100"))
    assert result.for_symbol("BTC").notional_value == Decimal("500")
    assert result.total_notional_value == Decimal("500")


def test_zero_margin_entries_excluded():
    result = CapitalAllocator().allocate([_request("BTC", 0), _request("ETH", 100)], Decimal("50"))
    assert result.for_symbol("BTC") is None
    assert len(result.allocations) == 1


def test_empty_input():
    result = CapitalAllocator().allocate([], Decimal("100"))
    assert result.allocations == []
    assert result.total_allocated_margin == Decimal("0")


def test_non_positive_budget_zeroes_everything():
    result = CapitalAllocator().allocate([_request("BTC", 100)], Decimal("0"))
    btc = result.for_symbol("BTC")
    assert btc.allocation_ratio == Decimal("0")
    assert btc.adjusted_quantity == Decimal("0")


@pytest.mark.parametrize("budget", ["1", "33.33", "250", "799.99", "800", "5000"])
def test_allocation_bound(budget):
    requests = [_request("BTC", "123.45"), _request("ETH", "321.5"), _request("SOL", "355.04")]
    result = CapitalAllocator().allocate(requests, Decimal(budget))
    epsilon = Decimal("1e-12")
    assert result.total_allocated_margin <= Decimal(budget) + epsilon
    assert all(a.allocation_ratio <= 1 for a in result.allocations)
