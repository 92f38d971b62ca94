"""
Per-symbol position delta.

Compares what the agent holds now against the last known position
reconstructed from the ledger:

    CURRENT (agent snapshot)      LAST_KNOWN (active ledger entry)
              ↓                            ↓
                     DELTA (hold / enter / exit / replace)

State machine per (agent, symbol):
    FLAT → [enter] → OPEN(entry_id) → [exit] → FLAT
    OPEN(entry_id) → [replace] → OPEN(new_entry_id)
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from agent_mirror.domain.models import LedgerEntry, Position
from agent_mirror.utils.decimals import format_decimal

AGENT_CLOSED_REASON = "position closed by agent"


class DeltaAction(str, Enum):
    """Classification of one symbol."""
    HOLD = "hold"          # Nothing to do (flat/flat or same entry replayed)
    ENTER = "enter"        # Agent opened a position we have not mirrored
    EXIT = "exit"          # Agent closed the position we mirrored
    REPLACE = "replace"    # Agent closed and reopened under a new entry id


@dataclass
class PositionDelta:
    """Classification result for one symbol."""
    symbol: str
    action: DeltaAction
    current: Optional[Position]
    last_known: Optional[LedgerEntry]
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for logging."""
        return {
            "symbol": self.symbol,
            "action": self.action.value,
            "current_quantity": str(self.current.quantity) if self.current else None,
            "current_entry_id": self.current.entry_id if self.current else None,
            "last_known_entry_id": self.last_known.entry_id if self.last_known else None,
            "last_known_side": self.last_known.side.value if self.last_known else None,
            "reason": self.reason,
        }


def classify(symbol: str, current: Optional[Position], last_known: Optional[LedgerEntry]) -> PositionDelta:
    """
    Classify the change for one symbol. First match wins.

    A symbol missing from the snapshot is treated as quantity 0.
    """
    quantity = current.quantity if current is not None else Decimal("0")

    if quantity == 0:
        if last_known is not None:
            return PositionDelta(symbol, DeltaAction.EXIT, current, last_known, AGENT_CLOSED_REASON)
        return PositionDelta(symbol, DeltaAction.HOLD, current, last_known, "flat")

    if last_known is not None:
        if current.entry_id != last_known.entry_id:
            return PositionDelta(
                symbol,
                DeltaAction.REPLACE,
                current,
                last_known,
                f"Entry order changed (OID: {last_known.entry_id} -> {current.entry_id})",
            )
        return PositionDelta(symbol, DeltaAction.HOLD, current, last_known, "already mirrored")

    return PositionDelta(symbol, DeltaAction.ENTER, current, last_known, f"New position (OID: {current.entry_id})")


def should_exit_position(position: Optional[Position]) -> bool:
    """
    True when the agent's own exit plan says the position should be closed.

    Long: price at/above profit target or at/below stop loss.
    Short: price at/below profit target or at/above stop loss.
    """
    if position is None or position.is_flat or position.exit_plan is None:
        return False

    price = position.current_price
    tp = position.exit_plan.profit_target
    sl = position.exit_plan.stop_loss

    if position.quantity > 0:
        return (tp is not None and price >= tp) or (sl is not None and price <= sl)
    return (tp is not None and price <= tp) or (sl is not None and price >= sl)


def exit_reason(position: Position) -> str:
    """Reason string for an exit-plan close. Profit target is checked first."""
    plan = position.exit_plan
    price = position.current_price
    if plan is not None:
        tp, sl = plan.profit_target, plan.stop_loss
        if position.quantity > 0:
            if tp is not None and price >= tp:
                return f"Take profit at {format_decimal(tp)}"
            if sl is not None and price <= sl:
                return f"Stop loss at {format_decimal(sl)}"
        else:
            if tp is not None and price <= tp:
                return f"Take profit at {format_decimal(tp)}"
            if sl is not None and price >= sl:
                return f"Stop loss at {format_decimal(sl)}"
    return "Exit condition met"
