"""
Domain protocols (interfaces) for dependency inversion.

The reconciliation engine and execution coordinator depend on these
contracts, not on the ccxt client, the SQLAlchemy ledger or the HTTP feed.
Tests substitute in-memory or mocked implementations.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Protocol, runtime_checkable

from agent_mirror.domain.models import (
    AccountInfo,
    ExchangePosition,
    ExchangeOrder,
    LedgerEntry,
    OrderRequest,
    PlacedOrder,
    PositionSnapshot,
    Side,
)


@runtime_checkable
class ExchangeGateway(Protocol):
    """
    Futures exchange operations.

    Implemented by agent_mirror.data.binance_client.BinanceFuturesClient.
    Every method raises a GatewayError subclass on failure.
    """

    async def get_positions(self) -> List[ExchangePosition]:
        """Non-zero positions only."""
        ...

    async def get_all_positions(self) -> List[ExchangePosition]:
        """All positions including zero-size ones."""
        ...

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[ExchangeOrder]: ...

    async def place_order(self, order: OrderRequest) -> PlacedOrder: ...

    async def cancel_order(self, symbol: str, order_id: str) -> None: ...

    async def cancel_all_orders(self, symbol: str) -> None: ...

    async def set_leverage(self, symbol: str, leverage: int) -> None: ...

    async def get_account_info(self) -> AccountInfo: ...


@runtime_checkable
class Ledger(Protocol):
    """
    Persisted order history: the idempotency backbone.

    Implemented by agent_mirror.storage.ledger.OrderLedger.
    """

    def is_processed(self, entry_id: str, symbol: Optional[str] = None, agent: Optional[str] = None) -> bool: ...

    def get_active_entry(self, agent: str, symbol: str) -> Optional[LedgerEntry]: ...

    def get_active_entries(self, agent: str) -> List[LedgerEntry]: ...

    def commit(
        self,
        entry_id: str,
        symbol: str,
        agent: str,
        side: Side,
        quantity: Decimal,
        price: Decimal,
        order_id: Optional[str] = None,
    ) -> bool: ...

    def mark_closed(self, agent: str, symbol: str, entry_id: str, reason: str) -> bool: ...

    def created_at(self) -> datetime: ...


@runtime_checkable
class PositionSnapshotSource(Protocol):
    """
    The agent feed, polled once per pass.

    Implemented by agent_mirror.data.agent_feed.AgentFeedClient.
    """

    async def fetch(self, agent: str) -> PositionSnapshot: ...
