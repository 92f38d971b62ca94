"""
Reconciliation engine: one mirror pass for one agent.

Per pass:
    1. Reconstruct last known positions from the ledger
    2. Classify every symbol (enter / exit / replace / hold)
    3. Add exit-plan closes for positions open on the exchange
    4. Drop already-processed entries, gate entries on price tolerance
    5. Scale entries under the global margin budget
    6. Execute closes first, then opens
    7. Commit successful entries to the ledger

The ledger is the only durable state. A pass never raises: it returns one
ExecutedAction per action that was attempted or skipped.
"""
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from agent_mirror.data.symbol_utils import same_market
from agent_mirror.domain.models import (
    Action,
    ActionKind,
    ActionStatus,
    AllocationRequest,
    ExchangePosition,
    ExecutedAction,
    LedgerEntry,
    Position,
)
from agent_mirror.domain.protocols import Ledger
from agent_mirror.exceptions import MirrorError, describe_error
from agent_mirror.execution.coordinator import ExecutionCoordinator
from agent_mirror.monitoring.logger import get_logger, log_context
from agent_mirror.portfolio.capital_allocator import CapitalAllocator
from agent_mirror.reconciliation.position_delta import (
    DeltaAction,
    PositionDelta,
    classify,
    exit_reason,
    should_exit_position,
)
from agent_mirror.risk.price_tolerance import RiskGate
from agent_mirror.utils.decimals import format_decimal

logger = get_logger(__name__)


@dataclass
class _PlannedExit:
    action: Action
    # Ledger entry to stamp closed once the exchange is flat
    ledger_entry_id: Optional[str] = None


@dataclass
class _PassPlan:
    exits: List[_PlannedExit] = field(default_factory=list)
    enters: List[Action] = field(default_factory=list)
    skipped: List[ExecutedAction] = field(default_factory=list)
    deltas: List[PositionDelta] = field(default_factory=list)

    def has_exit(self, symbol: str) -> bool:
        return any(p.action.symbol == symbol for p in self.exits)


class ReconciliationEngine:
    """Diffs agent snapshots against the ledger and drives the coordinator."""

    def __init__(
        self,
        ledger: Ledger,
        coordinator: ExecutionCoordinator,
        risk_gate: Optional[RiskGate] = None,
        allocator: Optional[CapitalAllocator] = None,
    ):
        self.ledger = ledger
        self.coordinator = coordinator
        self.risk_gate = risk_gate or RiskGate()
        self.allocator = allocator or CapitalAllocator()

    async def reconcile(
        self,
        agent: str,
        current_positions: Sequence[Position],
        total_margin: Optional[Decimal] = None,
        held_symbols: Iterable[str] = (),
    ) -> List[ExecutedAction]:
        """
        Run one pass for an agent.

        Args:
            agent: Agent id the snapshot belongs to
            current_positions: Agent snapshot (already validated)
            total_margin: Optional global margin budget in USDT
            held_symbols: Symbols whose snapshot record was rejected; an
                active entry for one of them is left untouched this pass

        Returns:
            Executed, failed and skipped actions in execution order
        """
        results: List[ExecutedAction] = []
        held = list(held_symbols)
        with log_context(agent=agent, pass_id=uuid.uuid4().hex[:12]):
            try:
                logger.info("RECONCILE_PASS_START", positions=len(current_positions), held=held)
                plan = await self._plan(agent, current_positions, held)
                self._apply_allocation(plan, total_margin)
                results.extend(plan.skipped)
                results.extend(await self._execute(agent, plan))
            except Exception as e:
                # A pass never raises; the next scheduled pass retries from the ledger
                logger.exception("RECONCILE_PASS_FAILED", error=describe_error(e), completed=len(results))
            finally:
                self._log_summary(results)
        return results

    # ------------------------------------------------------------- planning

    async def _plan(self, agent: str, current_positions: Sequence[Position], held: Sequence[str] = ()) -> _PassPlan:
        plan = _PassPlan()

        snapshot: Dict[str, Position] = {}
        for position in current_positions:
            if position.symbol in snapshot:
                logger.warning("RECONCILE_DUPLICATE_SYMBOL", symbol=position.symbol)
            snapshot[position.symbol] = position

        active: Dict[str, LedgerEntry] = {e.symbol: e for e in self.ledger.get_active_entries(agent)}
        symbols = list(snapshot)
        for symbol in active:
            if symbol in snapshot:
                continue
            if any(same_market(symbol, h) for h in held):
                # Record was unreadable this pass, its absence says nothing
                logger.warning("RECONCILE_SYMBOL_HELD", symbol=symbol, entry_id=active[symbol].entry_id)
                continue
            symbols.append(symbol)

        exchange_positions = await self.coordinator.fetch_open_positions()

        for symbol in symbols:
            try:
                self._plan_symbol(agent, symbol, snapshot.get(symbol), active.get(symbol), exchange_positions, plan)
            except MirrorError as e:
                logger.error("RECONCILE_SYMBOL_FAILED", symbol=symbol, error=describe_error(e))

        return plan

    def _plan_symbol(
        self,
        agent: str,
        symbol: str,
        current: Optional[Position],
        last_known: Optional[LedgerEntry],
        exchange_positions: Optional[List[ExchangePosition]],
        plan: _PassPlan,
    ) -> None:
        delta = classify(symbol, current, last_known)
        plan.deltas.append(delta)
        if delta.action != DeltaAction.HOLD:
            logger.info("POSITION_DELTA", **delta.to_dict())

        on_exchange = _exchange_position(exchange_positions, symbol)

        if delta.action == DeltaAction.EXIT:
            plan.exits.append(_PlannedExit(
                action=Action(
                    kind=ActionKind.EXIT,
                    symbol=symbol,
                    side=last_known.side.opposite,
                    quantity=last_known.quantity,
                    reason=delta.reason,
                    entry_id=last_known.entry_id,
                ),
                ledger_entry_id=last_known.entry_id,
            ))

        elif delta.action == DeltaAction.REPLACE:
            plan.exits.append(_PlannedExit(
                action=Action(
                    kind=ActionKind.EXIT,
                    symbol=symbol,
                    side=last_known.side.opposite,
                    quantity=last_known.quantity,
                    reason=delta.reason,
                    entry_id=last_known.entry_id,
                    replace=True,
                ),
                ledger_entry_id=last_known.entry_id,
            ))
            self._plan_enter(agent, current, delta.reason, plan, replace=True)

        elif delta.action == DeltaAction.ENTER:
            untracked = on_exchange is not None
            planned = self._plan_enter(agent, current, delta.reason, plan, replace=untracked)
            if planned and untracked:
                # Exchange holds a position the ledger does not know about
                plan.exits.append(_PlannedExit(action=Action(
                    kind=ActionKind.EXIT,
                    symbol=symbol,
                    side=on_exchange.side.opposite,
                    quantity=abs(on_exchange.quantity),
                    reason="Closing untracked exchange position before entry",
                    replace=True,
                )))

        if on_exchange is not None and should_exit_position(current) and not plan.has_exit(symbol):
            reason = exit_reason(current)
            closing_side = last_known.side.opposite if last_known else current.side.opposite
            plan.exits.append(_PlannedExit(
                action=Action(
                    kind=ActionKind.EXIT,
                    symbol=symbol,
                    side=closing_side,
                    quantity=abs(on_exchange.quantity),
                    reason=reason,
                    entry_id=current.entry_id,
                    exit_plan=current.exit_plan,
                ),
                ledger_entry_id=last_known.entry_id if last_known else None,
            ))
            logger.info(
                "EXIT_PLAN_TRIGGERED",
                symbol=symbol,
                reason=reason,
                current_price=str(current.current_price),
            )

    def _not_processed(self, agent: str, position: Position) -> bool:
        return not self.ledger.is_processed(position.entry_id, symbol=position.symbol, agent=agent)

    def _plan_enter(self, agent: str, position: Position, reason: str, plan: _PassPlan, replace: bool = False) -> bool:
        """Queue an Enter unless already processed or outside price tolerance."""
        if not self._not_processed(agent, position):
            logger.debug("ENTER_ALREADY_PROCESSED", symbol=position.symbol, entry_id=position.entry_id)
            return False

        action = Action(
            kind=ActionKind.ENTER,
            symbol=position.symbol,
            side=position.side,
            quantity=position.size,
            reason=f"{reason} by {agent}",
            entry_id=position.entry_id,
            entry_price=position.entry_price,
            leverage=position.leverage,
            margin=position.margin,
            exit_plan=position.exit_plan,
            replace=replace,
        )

        tolerance = self.risk_gate.check(position.symbol, position.entry_price, position.current_price)
        action.tolerance = tolerance
        if not tolerance.should_execute:
            logger.warning("ENTER_SKIPPED_PRICE_TOLERANCE", symbol=position.symbol, reason=tolerance.reason)
            plan.skipped.append(ExecutedAction(
                action=action,
                status=ActionStatus.SKIPPED,
                error=f"Price not acceptable: {tolerance.reason}",
            ))
            return False

        plan.enters.append(action)
        return True

    def _apply_allocation(self, plan: _PassPlan, total_margin: Optional[Decimal]) -> None:
        if not total_margin or total_margin <= 0:
            return
        candidates = [a for a in plan.enters if a.margin is not None and a.margin > 0]
        if not candidates:
            return

        result = self.allocator.allocate(
            [
                AllocationRequest(
                    symbol=a.symbol,
                    margin=a.margin,
                    quantity=a.quantity,
                    leverage=a.leverage,
                    side=a.side,
                )
                for a in candidates
            ],
            total_margin,
        )

        for action in candidates:
            allocation = result.for_symbol(action.symbol)
            if allocation is None:
                continue
            action.allocation = allocation
            action.quantity = allocation.adjusted_quantity
            action.margin = allocation.allocated_margin
            logger.info(
                "ENTER_ALLOCATED",
                symbol=action.symbol,
                original_margin=str(allocation.original_margin),
                allocated_margin=str(allocation.allocated_margin),
                adjusted_quantity=str(allocation.adjusted_quantity),
                ratio=str(allocation.allocation_ratio),
            )

    # ------------------------------------------------------------ execution

    async def _execute(self, agent: str, plan: _PassPlan) -> List[ExecutedAction]:
        results: List[ExecutedAction] = []
        failed_closes: Set[str] = set()
        released: Dict[str, Decimal] = {}

        for planned in plan.exits:
            executed, released_margin = await self._execute_exit(agent, planned)
            results.append(executed)
            if not executed.success and planned.action.replace:
                failed_closes.add(planned.action.symbol)
            if released_margin is not None:
                released[planned.action.symbol] = released_margin

        for action in plan.enters:
            if action.replace and action.symbol in failed_closes:
                logger.error("ENTER_SKIPPED_CLOSE_FAILED", symbol=action.symbol, entry_id=action.entry_id)
                results.append(ExecutedAction(
                    action=action,
                    status=ActionStatus.SKIPPED,
                    error="Skipped: closing the previous position failed",
                ))
                continue
            if action.symbol in released:
                action.released_margin = released[action.symbol]
                action.reason = f"Reopening with released margin ${action.released_margin:.2f} (OID: {action.entry_id}) by {agent}"
            results.append(await self._execute_enter(agent, action))

        return results

    async def _execute_exit(self, agent: str, planned: _PlannedExit) -> Tuple[ExecutedAction, Optional[Decimal]]:
        action = planned.action
        balance_before = await self.coordinator.get_available_balance() if action.replace else None

        result = await self.coordinator.close_position(action.symbol, action.reason)
        if not result.success:
            logger.error("EXIT_FAILED", symbol=action.symbol, reason=action.reason, error=result.error)
            return ExecutedAction(action=action, status=ActionStatus.FAILED, error=result.error), None

        if planned.ledger_entry_id is not None:
            self._mark_closed(agent, action.symbol, planned.ledger_entry_id, action.reason)

        released_margin = None
        if balance_before is not None and not result.already_flat:
            balance_after = await self.coordinator.get_available_balance()
            if balance_after is not None and balance_after > balance_before:
                released_margin = balance_after - balance_before
                logger.info("RELEASED_MARGIN", symbol=action.symbol, released_margin=format_decimal(released_margin))

        logger.info("EXIT_EXECUTED", symbol=action.symbol, side=action.side.value, reason=action.reason, order_id=result.order_id)
        return ExecutedAction(action=action, status=ActionStatus.EXECUTED, order_id=result.order_id), released_margin

    async def _execute_enter(self, agent: str, action: Action) -> ExecutedAction:
        if action.quantity == 0:
            logger.warning("ENTER_SKIPPED_ZERO_QUANTITY", symbol=action.symbol, entry_id=action.entry_id)
            return ExecutedAction(action=action, status=ActionStatus.SKIPPED, error="Allocated quantity is zero")

        result = await self.coordinator.open_position(
            symbol=action.symbol,
            side=action.side,
            quantity=action.quantity,
            leverage=action.leverage,
            entry_price=action.entry_price,
            reason=action.reason,
            exit_plan=action.exit_plan,
        )
        if not result.success:
            logger.error("ENTER_FAILED", symbol=action.symbol, entry_id=action.entry_id, error=result.error)
            return ExecutedAction(action=action, status=ActionStatus.FAILED, error=result.error)

        try:
            self.ledger.commit(
                entry_id=action.entry_id,
                symbol=action.symbol,
                agent=agent,
                side=action.side,
                quantity=action.quantity,
                price=action.entry_price,
                order_id=result.order_id,
            )
        except SQLAlchemyError as e:
            # Order is live but unrecorded: the next pass will see it as an untracked exchange position
            logger.critical("LEDGER_COMMIT_FAILED", symbol=action.symbol, entry_id=action.entry_id, order_id=result.order_id, error=describe_error(e))
            return ExecutedAction(
                action=action,
                status=ActionStatus.FAILED,
                order_id=result.order_id,
                error=f"Order placed but ledger commit failed: {describe_error(e)}",
                protective_failures=result.protective_failures,
            )

        logger.info(
            "ENTER_EXECUTED",
            symbol=action.symbol,
            side=action.side.value,
            quantity=str(action.quantity),
            entry_id=action.entry_id,
            order_id=result.order_id,
            protective_failures=[f.leg for f in result.protective_failures],
        )
        return ExecutedAction(
            action=action,
            status=ActionStatus.EXECUTED,
            order_id=result.order_id,
            protective_failures=result.protective_failures,
        )

    def _mark_closed(self, agent: str, symbol: str, entry_id: str, reason: str) -> None:
        try:
            self.ledger.mark_closed(agent, symbol, entry_id, reason)
        except SQLAlchemyError as e:
            logger.critical("LEDGER_MARK_CLOSED_FAILED", symbol=symbol, entry_id=entry_id, error=describe_error(e))

    def _log_summary(self, results: List[ExecutedAction]) -> None:
        counts = {status.value: 0 for status in ActionStatus}
        for r in results:
            counts[r.status.value] += 1
        logger.info(
            "RECONCILE_SUMMARY",
            executed=counts[ActionStatus.EXECUTED.value],
            failed=counts[ActionStatus.FAILED.value],
            skipped=counts[ActionStatus.SKIPPED.value],
            enters=sum(1 for r in results if r.action.is_enter and r.success),
            exits=sum(1 for r in results if r.action.is_exit and r.success),
            actions=[r.to_dict() for r in results],
        )


def _exchange_position(positions: Optional[List[ExchangePosition]], symbol: str) -> Optional[ExchangePosition]:
    if not positions:
        return None
    for position in positions:
        if same_market(position.symbol, symbol) and position.quantity != 0:
            return position
    return None
