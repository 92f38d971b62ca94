"""
Domain models for the position mirror.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes; prices, quantities and
margins are Decimal.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, List, Optional


class Side(str, Enum):
    """Order side. A ledger entry records the opening side."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY

    @classmethod
    def for_quantity(cls, quantity: Decimal) -> "Side":
        """BUY for a long (positive) quantity, SELL for a short one."""
        return cls.BUY if quantity > 0 else cls.SELL


class OrderType(str, Enum):
    """Exchange order types used by the mirror."""
    MARKET = "MARKET"
    TAKE_PROFIT_MARKET = "TAKE_PROFIT_MARKET"
    STOP_MARKET = "STOP_MARKET"


# Open order types treated as protective; left open without a position they are orphans.
# The limit variants are never placed by the mirror but are cleaned up the same way.
PROTECTIVE_ORDER_TYPES = frozenset({
    OrderType.TAKE_PROFIT_MARKET.value,
    OrderType.STOP_MARKET.value,
    "TAKE_PROFIT",
    "STOP",
})


class ActionKind(str, Enum):
    """Reconciliation action type."""
    ENTER = "enter"
    EXIT = "exit"


class ActionStatus(str, Enum):
    """Outcome of an action within a reconciliation pass."""
    EXECUTED = "executed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ExitPlan:
    """Agent-declared exit levels for a position."""
    profit_target: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    invalidation_condition: Optional[str] = None


@dataclass(frozen=True)
class Position:
    """
    A position as reported by the agent snapshot.

    quantity is signed: positive = long, negative = short, zero = flat.
    A zero quantity means the position is closed regardless of other fields.
    """
    symbol: str
    entry_price: Decimal
    quantity: Decimal
    leverage: Decimal
    current_price: Decimal
    entry_id: str
    margin: Decimal = Decimal("0")
    confidence: Optional[Decimal] = None
    unrealized_pnl: Optional[Decimal] = None
    exit_plan: Optional[ExitPlan] = None
    tp_order_id: Optional[str] = None
    sl_order_id: Optional[str] = None

    @property
    def is_flat(self) -> bool:
        return self.quantity == 0

    @property
    def side(self) -> Side:
        return Side.for_quantity(self.quantity)

    @property
    def size(self) -> Decimal:
        return abs(self.quantity)


@dataclass(frozen=True)
class PositionSnapshot:
    """
    One agent snapshot after boundary validation.

    rejected_symbols names records that failed validation. Their real state
    is unknown for this pass: they are held, never read as closed.
    """
    positions: List[Position]
    rejected_symbols: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class LedgerEntry:
    """
    Durable record of one successfully executed Enter.

    At most one entry per (agent, symbol) is active (closed_at is None).
    """
    entry_id: str
    symbol: str
    agent: str
    timestamp: datetime
    side: Side
    quantity: Decimal
    price: Decimal
    order_id: Optional[str] = None
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.closed_at is None


@dataclass(frozen=True)
class ToleranceCheck:
    """Result of the price tolerance gate. Percent values."""
    entry_price: Decimal
    current_price: Decimal
    price_difference: Decimal
    tolerance: Decimal
    within_tolerance: bool
    should_execute: bool
    reason: str


@dataclass(frozen=True)
class AllocationRequest:
    """One Enter candidate handed to the capital allocator."""
    symbol: str
    margin: Decimal
    quantity: Decimal
    leverage: Decimal
    side: Side


@dataclass(frozen=True)
class Allocation:
    """Scaled margin and quantity for one Enter candidate."""
    symbol: str
    side: Side
    leverage: Decimal
    original_margin: Decimal
    allocated_margin: Decimal
    notional_value: Decimal
    adjusted_quantity: Decimal
    allocation_ratio: Decimal


@dataclass(frozen=True)
class CapitalAllocationResult:
    """Output of the capital allocator."""
    allocations: List[Allocation]
    total_allocated_margin: Decimal
    total_notional_value: Decimal
    total_original_margin: Decimal

    def for_symbol(self, symbol: str) -> Optional[Allocation]:
        for allocation in self.allocations:
            if allocation.symbol == symbol:
                return allocation
        return None


@dataclass
class Action:
    """
    A trading action produced by classification.

    A Replace is represented by an Exit and an Enter sharing replace=True;
    the Enter only runs if its Exit succeeds.
    """
    kind: ActionKind
    symbol: str
    side: Side
    quantity: Decimal
    reason: str
    entry_id: Optional[str] = None
    entry_price: Optional[Decimal] = None
    leverage: Optional[Decimal] = None
    margin: Optional[Decimal] = None
    exit_plan: Optional[ExitPlan] = None
    tolerance: Optional[ToleranceCheck] = None
    allocation: Optional[Allocation] = None
    replace: bool = False
    released_margin: Optional[Decimal] = None

    @property
    def is_enter(self) -> bool:
        return self.kind == ActionKind.ENTER

    @property
    def is_exit(self) -> bool:
        return self.kind == ActionKind.EXIT

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": str(self.quantity),
            "reason": self.reason,
            "entry_id": self.entry_id,
            "replace": self.replace,
            "allocation_ratio": str(self.allocation.allocation_ratio) if self.allocation else None,
            "released_margin": str(self.released_margin) if self.released_margin is not None else None,
        }


@dataclass(frozen=True)
class ProtectiveOrderFailure:
    """A take-profit or stop-loss leg that could not be placed."""
    leg: str  # "take_profit" | "stop_loss"
    error: str


@dataclass
class OperationResult:
    """Result of one coordinator operation (open or close)."""
    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    stop_loss_order_id: Optional[str] = None
    protective_failures: List[ProtectiveOrderFailure] = field(default_factory=list)
    # Set by close when the exchange held no position for the symbol
    already_flat: bool = False


@dataclass
class ExecutedAction:
    """An action together with what happened when the pass applied it."""
    action: Action
    status: ActionStatus
    order_id: Optional[str] = None
    error: Optional[str] = None
    protective_failures: List[ProtectiveOrderFailure] = field(default_factory=list)
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.status == ActionStatus.EXECUTED

    def to_dict(self) -> dict:
        data = self.action.to_dict()
        data.update({
            "status": self.status.value,
            "order_id": self.order_id,
            "error": self.error,
            "protective_failures": [f.leg for f in self.protective_failures],
        })
        return data


@dataclass(frozen=True)
class OrphanCleanupResult:
    """Result of cancelling protective orders left without a position."""
    cancelled_count: int
    errors: List[str]

    @property
    def success(self) -> bool:
        return not self.errors


# ============ Exchange-side records ============

@dataclass(frozen=True)
class ExchangePosition:
    """Position held on the exchange. quantity is signed."""
    symbol: str
    quantity: Decimal
    entry_price: Decimal
    mark_price: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")
    leverage: Decimal = Decimal("1")

    @property
    def side(self) -> Side:
        return Side.for_quantity(self.quantity)


@dataclass(frozen=True)
class ExchangeOrder:
    """Open order on the exchange."""
    order_id: str
    symbol: str
    type: str
    side: Side
    status: str = "NEW"
    stop_price: Optional[Decimal] = None


@dataclass(frozen=True)
class OrderRequest:
    """Order to submit through the gateway."""
    symbol: str
    side: Side
    type: OrderType
    quantity: Decimal
    stop_price: Optional[Decimal] = None
    close_position: bool = False
    reduce_only: bool = False


@dataclass(frozen=True)
class PlacedOrder:
    """Exchange acknowledgement of a submitted order."""
    order_id: str
    symbol: str
    status: str
    side: Optional[Side] = None
    quantity: Optional[Decimal] = None
    avg_price: Optional[Decimal] = None


@dataclass(frozen=True)
class AccountInfo:
    """Futures wallet balances in USDT."""
    available_balance: Decimal
    total_wallet_balance: Decimal
