"""
Execution coordinator.

Drives the exchange for one action at a time:
- pre-validation with no network side effects
- market entries with best-effort leverage and independent TP/SL legs
- closes that cancel open orders, flatten, then verify with bounded polling
- cleanup of protective orders left behind by closed positions

Nothing here raises to the caller: every operation returns a result
carrying a normalized error string.
"""
import asyncio
from decimal import Decimal
from typing import List, Optional, Tuple

from agent_mirror.config.config import ExecutionConfig
from agent_mirror.data.symbol_utils import same_market
from agent_mirror.domain.models import (
    ExchangePosition,
    ExitPlan,
    OperationResult,
    OrderRequest,
    OrderType,
    OrphanCleanupResult,
    PROTECTIVE_ORDER_TYPES,
    ProtectiveOrderFailure,
    Side,
)
from agent_mirror.domain.protocols import ExchangeGateway
from agent_mirror.exceptions import ReconciliationInconsistency, ValidationError, describe_error
from agent_mirror.monitoring.logger import get_logger

logger = get_logger(__name__)


def validate_order_params(quantity: Decimal, leverage: Decimal, entry_price: Decimal, symbol: Optional[str] = None) -> None:
    """
    Pre-checks run before any exchange call.

    Raises:
        ValidationError: on the first failing check
    """
    if quantity == 0:
        raise ValidationError("Position quantity cannot be zero", symbol=symbol, field="quantity")
    if leverage <= 0:
        raise ValidationError("Leverage must be greater than zero", symbol=symbol, field="leverage")
    if entry_price <= 0:
        raise ValidationError("Entry price must be greater than zero", symbol=symbol, field="entry_price")


def protective_level_warnings(side: Side, entry_price: Decimal, exit_plan: Optional[ExitPlan]) -> List[str]:
    """Sanity warnings for TP/SL levels on the wrong side of the entry. Never blocking."""
    if exit_plan is None:
        return []

    warnings = []
    tp, sl = exit_plan.profit_target, exit_plan.stop_loss
    if side == Side.BUY:
        if tp is not None and tp <= entry_price:
            warnings.append("Profit target should be higher than entry price for long positions")
        if sl is not None and sl >= entry_price:
            warnings.append("Stop loss should be lower than entry price for long positions")
    else:
        if tp is not None and tp >= entry_price:
            warnings.append("Profit target should be lower than entry price for short positions")
        if sl is not None and sl <= entry_price:
            warnings.append("Stop loss should be higher than entry price for short positions")
    return warnings


class ExecutionCoordinator:
    """Open/close/verify protocol over an ExchangeGateway."""

    def __init__(self, gateway: ExchangeGateway, config: Optional[ExecutionConfig] = None):
        self.gateway = gateway
        self.config = config or ExecutionConfig()

    async def open_position(
        self,
        symbol: str,
        side: Side,
        quantity: Decimal,
        leverage: Decimal,
        entry_price: Decimal,
        reason: str,
        exit_plan: Optional[ExitPlan] = None,
    ) -> OperationResult:
        """
        Open a position with a market order and attach protective orders.

        The result is successful when the market order was accepted, even if
        one or both protective legs failed (see protective_failures).
        """
        try:
            validate_order_params(quantity, leverage, entry_price, symbol=symbol)
        except ValidationError as e:
            logger.error("OPEN_VALIDATION_FAILED", symbol=symbol, error=str(e), field=e.field)
            return OperationResult(success=False, error=str(e))

        quantity = abs(quantity)
        for warning in protective_level_warnings(side, entry_price, exit_plan):
            logger.warning("OPEN_PROTECTIVE_LEVEL_WARNING", symbol=symbol, warning=warning)

        logger.info(
            "OPEN_POSITION",
            symbol=symbol,
            side=side.value,
            quantity=str(quantity),
            leverage=str(leverage),
            entry_price=str(entry_price),
            reason=reason,
        )

        try:
            await self.gateway.set_leverage(symbol, int(leverage))
        except Exception as e:
            logger.warning("SET_LEVERAGE_FAILED", symbol=symbol, leverage=str(leverage), error=describe_error(e))

        try:
            placed = await self.gateway.place_order(OrderRequest(
                symbol=symbol,
                side=side,
                type=OrderType.MARKET,
                quantity=quantity,
            ))
        except Exception as e:
            error = describe_error(e)
            logger.error("OPEN_ORDER_FAILED", symbol=symbol, side=side.value, error=error, error_type=type(e).__name__)
            return OperationResult(success=False, error=error)

        logger.info("OPEN_ORDER_PLACED", symbol=symbol, order_id=placed.order_id, status=placed.status)

        result = OperationResult(success=True, order_id=placed.order_id)
        if self.config.protective_orders_enabled and exit_plan is not None:
            tp_id, sl_id, failures = await self.attach_protective_orders(symbol, side, quantity, exit_plan)
            result.take_profit_order_id = tp_id
            result.stop_loss_order_id = sl_id
            result.protective_failures = failures
        return result

    async def attach_protective_orders(
        self,
        symbol: str,
        side: Side,
        quantity: Decimal,
        exit_plan: ExitPlan,
    ) -> Tuple[Optional[str], Optional[str], List[ProtectiveOrderFailure]]:
        """
        Place take-profit and stop-loss legs independently.

        Returns:
            (take_profit_order_id, stop_loss_order_id, failures)
        """
        close_side = side.opposite
        legs = (
            ("take_profit", OrderType.TAKE_PROFIT_MARKET, exit_plan.profit_target),
            ("stop_loss", OrderType.STOP_MARKET, exit_plan.stop_loss),
        )

        order_ids = {}
        failures: List[ProtectiveOrderFailure] = []
        for leg, order_type, trigger in legs:
            if trigger is None or trigger <= 0:
                continue
            try:
                placed = await self.gateway.place_order(OrderRequest(
                    symbol=symbol,
                    side=close_side,
                    type=order_type,
                    quantity=quantity,
                    stop_price=trigger,
                    close_position=True,
                ))
            except Exception as e:
                error = describe_error(e)
                logger.error("PROTECTIVE_ORDER_FAILED", symbol=symbol, leg=leg, trigger=str(trigger), error=error)
                failures.append(ProtectiveOrderFailure(leg=leg, error=error))
                continue
            order_ids[leg] = placed.order_id
            logger.info("PROTECTIVE_ORDER_PLACED", symbol=symbol, leg=leg, trigger=str(trigger), order_id=placed.order_id)

        return order_ids.get("take_profit"), order_ids.get("stop_loss"), failures

    async def close_position(self, symbol: str, reason: str) -> OperationResult:
        """
        Flatten every exchange position on symbol.

        Steps: cancel open orders (abort on failure), succeed at once when
        already flat, place reduce-only market orders, then poll until flat.
        """
        logger.info("CLOSE_POSITION", symbol=symbol, reason=reason)

        try:
            positions, open_orders = await asyncio.gather(
                self.gateway.get_positions(),
                self.gateway.get_open_orders(symbol),
            )
        except Exception as e:
            error = describe_error(e)
            logger.error("CLOSE_STATE_FETCH_FAILED", symbol=symbol, error=error)
            return OperationResult(success=False, error=error)

        symbol_positions = [p for p in positions if same_market(p.symbol, symbol) and p.quantity != 0]

        if open_orders:
            try:
                await self.gateway.cancel_all_orders(symbol)
            except Exception as e:
                logger.error("CLOSE_CANCEL_ORDERS_FAILED", symbol=symbol, open_orders=len(open_orders), error=describe_error(e))
                return OperationResult(success=False, error="Failed to cancel open orders")
            logger.info("CLOSE_ORDERS_CANCELLED", symbol=symbol, count=len(open_orders))

        if not symbol_positions:
            logger.info("CLOSE_NOTHING_TO_CLOSE", symbol=symbol)
            return OperationResult(success=True, already_flat=True)

        last_order_id = None
        for position in symbol_positions:
            last_order_id = await self._close_single(symbol, position) or last_order_id

        try:
            await self._verify_flat(symbol)
        except ReconciliationInconsistency as e:
            return OperationResult(success=False, order_id=last_order_id, error=str(e))

        logger.info("CLOSE_VERIFIED", symbol=symbol, positions=len(symbol_positions))
        return OperationResult(success=True, order_id=last_order_id)

    async def _close_single(self, symbol: str, position: ExchangePosition) -> Optional[str]:
        side = position.side.opposite
        try:
            placed = await self.gateway.place_order(OrderRequest(
                symbol=symbol,
                side=side,
                type=OrderType.MARKET,
                quantity=abs(position.quantity),
                reduce_only=True,
            ))
        except Exception as e:
            logger.error("CLOSE_ORDER_FAILED", symbol=symbol, side=side.value, quantity=str(abs(position.quantity)), error=describe_error(e))
            return None
        logger.info("CLOSE_ORDER_PLACED", symbol=symbol, side=side.value, order_id=placed.order_id)
        return placed.order_id

    async def _verify_flat(self, symbol: str) -> None:
        attempts = self.config.close_verify_attempts
        residual = None
        for attempt in range(1, attempts + 1):
            await asyncio.sleep(self.config.close_verify_delay_seconds)
            try:
                positions = await self.gateway.get_positions()
            except Exception as e:
                logger.warning("CLOSE_VERIFY_FETCH_FAILED", symbol=symbol, attempt=attempt, error=describe_error(e))
                continue
            remaining = [p for p in positions if same_market(p.symbol, symbol) and p.quantity != 0]
            if not remaining:
                return
            residual = sum((p.quantity for p in remaining), Decimal("0"))
            logger.debug("CLOSE_VERIFY_PENDING", symbol=symbol, attempt=attempt, residual=str(residual))

        logger.error(
            "CLOSE_VERIFY_EXHAUSTED",
            symbol=symbol,
            attempts=attempts,
            residual=str(residual) if residual is not None else None,
        )
        raise ReconciliationInconsistency(
            f"Some positions still remain open for {symbol}",
            symbol=symbol,
            residual=residual,
        )

    async def clean_orphaned_orders(self) -> OrphanCleanupResult:
        """Cancel protective orders whose symbol has no open position."""
        try:
            open_orders = await self.gateway.get_open_orders()
            if not open_orders:
                return OrphanCleanupResult(cancelled_count=0, errors=[])
            all_positions = await self.gateway.get_all_positions()
        except Exception as e:
            error = describe_error(e)
            logger.error("ORPHAN_CLEANUP_FETCH_FAILED", error=error)
            return OrphanCleanupResult(cancelled_count=0, errors=[error])

        def has_position(order_symbol: str) -> bool:
            return any(same_market(p.symbol, order_symbol) and p.quantity != 0 for p in all_positions)

        orphans = [
            o for o in open_orders
            if o.type.upper() in PROTECTIVE_ORDER_TYPES and not has_position(o.symbol)
        ]
        if not orphans:
            logger.debug("ORPHAN_CLEANUP_NONE", open_orders=len(open_orders))
            return OrphanCleanupResult(cancelled_count=0, errors=[])

        cancelled = 0
        errors: List[str] = []
        for order in orphans:
            try:
                await self.gateway.cancel_order(order.symbol, order.order_id)
            except Exception as e:
                message = f"Failed to cancel order {order.order_id} for {order.symbol}: {describe_error(e)}"
                logger.error("ORPHAN_CANCEL_FAILED", symbol=order.symbol, order_id=order.order_id, error=message)
                errors.append(message)
                continue
            cancelled += 1
            logger.info("ORPHAN_CANCELLED", symbol=order.symbol, order_id=order.order_id, type=order.type)

        logger.info("ORPHAN_CLEANUP_COMPLETE", found=len(orphans), cancelled=cancelled, errors=len(errors))
        return OrphanCleanupResult(cancelled_count=cancelled, errors=errors)

    async def fetch_open_positions(self) -> Optional[List[ExchangePosition]]:
        """Non-zero exchange positions, or None when the lookup fails."""
        try:
            return await self.gateway.get_positions()
        except Exception as e:
            logger.warning("POSITIONS_LOOKUP_FAILED", error=describe_error(e))
            return None

    async def get_available_balance(self) -> Optional[Decimal]:
        """Available USDT balance, or None when the lookup fails."""
        try:
            info = await self.gateway.get_account_info()
        except Exception as e:
            logger.warning("BALANCE_LOOKUP_FAILED", error=describe_error(e))
            return None
        return info.available_balance
