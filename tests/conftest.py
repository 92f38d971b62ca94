"""
Pytest configuration and shared fixtures.
"""
import os

# Keep unit tests independent of any developer .env and of production mode
os.environ.setdefault("ENVIRONMENT", "test")

import itertools
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from agent_mirror.config.config import ExecutionConfig
from agent_mirror.data.symbol_utils import normalize_symbol, same_market
from agent_mirror.domain.models import (
    AccountInfo,
    ExchangeOrder,
    ExchangePosition,
    OrderRequest,
    OrderType,
    PlacedOrder,
    Position,
    Side,
)
from agent_mirror.execution.coordinator import ExecutionCoordinator
from agent_mirror.reconciliation.engine import ReconciliationEngine
from agent_mirror.storage.db import init_db
from agent_mirror.storage.ledger import OrderLedger

MUTATING_CALLS = frozenset({"place_order", "cancel_order", "cancel_all_orders", "set_leverage"})


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


class FakeExchange:
    """
    In-memory ExchangeGateway.

    Market orders move positions, other order types rest as open orders.
    Set failures["<method>"] (or "place_order:<TYPE>") to an exception to make
    that call raise. sticky=True makes reduce-only orders leave positions open.
    """

    def __init__(self, balance: Decimal = Decimal("1000")):
        self.positions: Dict[str, ExchangePosition] = {}
        self.orders: List[ExchangeOrder] = []
        self.balance = balance
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.sticky = False
        self.release_on_close = Decimal("0")
        self._ids = itertools.count(1000)

    # helpers

    def add_position(self, symbol: str, quantity, entry_price="100") -> None:
        key = normalize_symbol(symbol)
        self.positions[key] = ExchangePosition(
            symbol=key,
            quantity=Decimal(str(quantity)),
            entry_price=Decimal(str(entry_price)),
            mark_price=Decimal(str(entry_price)),
        )

    def add_order(self, symbol: str, order_type: str, side: Side = Side.SELL) -> str:
        order_id = str(next(self._ids))
        self.orders.append(ExchangeOrder(order_id=order_id, symbol=normalize_symbol(symbol), type=order_type, side=side))
        return order_id

    def mutating_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in MUTATING_CALLS]

    def placed(self, order_type: Optional[OrderType] = None) -> List[OrderRequest]:
        return [
            c[1] for c in self.calls
            if c[0] == "place_order" and (order_type is None or c[1].type == order_type)
        ]

    def _maybe_fail(self, name: str) -> None:
        error = self.failures.get(name)
        if error is not None:
            raise error

    # ExchangeGateway

    async def get_positions(self) -> List[ExchangePosition]:
        self.calls.append(("get_positions",))
        self._maybe_fail("get_positions")
        return [p for p in self.positions.values() if p.quantity != 0]

    async def get_all_positions(self) -> List[ExchangePosition]:
        self.calls.append(("get_all_positions",))
        self._maybe_fail("get_all_positions")
        return list(self.positions.values())

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[ExchangeOrder]:
        self.calls.append(("get_open_orders", symbol))
        self._maybe_fail("get_open_orders")
        return [o for o in self.orders if symbol is None or same_market(o.symbol, symbol)]

    async def place_order(self, order: OrderRequest) -> PlacedOrder:
        self.calls.append(("place_order", order))
        self._maybe_fail("place_order")
        self._maybe_fail(f"place_order:{order.type.value}")

        order_id = str(next(self._ids))
        key = normalize_symbol(order.symbol)
        if order.type == OrderType.MARKET:
            if not (order.reduce_only and self.sticky):
                existing = self.positions.get(key)
                current = existing.quantity if existing else Decimal("0")
                delta = order.quantity if order.side == Side.BUY else -order.quantity
                remaining = current + delta
                if remaining == 0:
                    self.positions.pop(key, None)
                    self.balance += self.release_on_close
                else:
                    self.add_position(key, remaining)
        else:
            self.orders.append(ExchangeOrder(
                order_id=order_id,
                symbol=key,
                type=order.type.value,
                side=order.side,
                stop_price=order.stop_price,
            ))
        return PlacedOrder(order_id=order_id, symbol=key, status="NEW", side=order.side, quantity=order.quantity)

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        self.calls.append(("cancel_order", symbol, order_id))
        self._maybe_fail("cancel_order")
        self.orders = [o for o in self.orders if o.order_id != order_id]

    async def cancel_all_orders(self, symbol: str) -> None:
        self.calls.append(("cancel_all_orders", symbol))
        self._maybe_fail("cancel_all_orders")
        self.orders = [o for o in self.orders if not same_market(o.symbol, symbol)]

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        self.calls.append(("set_leverage", symbol, leverage))
        self._maybe_fail("set_leverage")

    async def get_account_info(self) -> AccountInfo:
        self.calls.append(("get_account_info",))
        self._maybe_fail("get_account_info")
        return AccountInfo(available_balance=self.balance, total_wallet_balance=self.balance)


def make_position(
    symbol: str = "BTCUSDT",
    quantity="0.1",
    entry_id: str = "1",
    entry_price="50000",
    current_price=None,
    leverage="10",
    margin="0",
    exit_plan=None,
) -> Position:
    """Agent snapshot position with sensible defaults."""
    return Position(
        symbol=symbol,
        entry_price=Decimal(str(entry_price)),
        quantity=Decimal(str(quantity)),
        leverage=Decimal(str(leverage)),
        current_price=Decimal(str(current_price if current_price is not None else entry_price)),
        entry_id=str(entry_id),
        margin=Decimal(str(margin)),
        exit_plan=exit_plan,
    )


@pytest.fixture
def position_factory():
    return make_position


@pytest.fixture
def ledger():
    """Fresh in-memory ledger per test."""
    db = init_db("sqlite:///:memory:")
    yield OrderLedger(db)
    db.drop_all()
    db.dispose()


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def execution_config():
    """No waiting between close verification polls."""
    return ExecutionConfig(close_verify_attempts=3, close_verify_delay_seconds=0)


@pytest.fixture
def coordinator(exchange, execution_config):
    return ExecutionCoordinator(exchange, execution_config)


@pytest.fixture
def engine(ledger, coordinator):
    return ReconciliationEngine(ledger, coordinator)
