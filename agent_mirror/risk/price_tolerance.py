"""
Price tolerance gate.

Blocks an Enter when the market has drifted too far from the agent's
entry price. Pure and deterministic: a bad input rejects, never raises.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from agent_mirror.config.config import RiskConfig
from agent_mirror.data.symbol_utils import normalize_symbol
from agent_mirror.domain.models import ToleranceCheck
from agent_mirror.monitoring.logger import get_logger
from agent_mirror.utils.decimals import format_decimal

logger = get_logger(__name__)

_HUNDRED = Decimal("100")
_TWO_PLACES = Decimal("0.01")


def calculate_price_difference(entry_price: Decimal, current_price: Decimal) -> Decimal:
    """Absolute drift of current_price from entry_price, in percent."""
    if entry_price <= 0:
        raise ValueError("Entry price must be greater than 0")
    return abs(current_price - entry_price) / entry_price * _HUNDRED


def check_tolerance(entry_price: Decimal, current_price: Decimal, tolerance: Decimal) -> ToleranceCheck:
    """
    Decide whether an entry may proceed at the current price.

    Args:
        entry_price: Agent's recorded entry price
        current_price: Current market price
        tolerance: Maximum allowed drift in percent

    Returns:
        ToleranceCheck with should_execute = price_difference <= tolerance
    """
    if entry_price <= 0 or current_price <= 0:
        return ToleranceCheck(
            entry_price=entry_price,
            current_price=current_price,
            price_difference=Decimal("0"),
            tolerance=tolerance,
            within_tolerance=False,
            should_execute=False,
            reason="Invalid price: entry and current price must be greater than 0",
        )

    difference = calculate_price_difference(entry_price, current_price)
    within = difference <= tolerance
    shown = difference.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    verdict = "is within" if within else "exceeds"

    return ToleranceCheck(
        entry_price=entry_price,
        current_price=current_price,
        price_difference=difference,
        tolerance=tolerance,
        within_tolerance=within,
        should_execute=within,
        reason=f"Price difference {shown}% {verdict} tolerance {format_decimal(tolerance)}%",
    )


class RiskGate:
    """Resolves per-symbol tolerance from RiskConfig and applies check_tolerance."""

    def __init__(self, config: Optional[RiskConfig] = None, override_tolerance: Optional[Decimal] = None):
        self.config = config or RiskConfig()
        # A CLI --price-tolerance wins over every configured value
        self.override_tolerance = override_tolerance

    def tolerance_for(self, symbol: Optional[str] = None) -> Decimal:
        if self.override_tolerance is not None:
            return self.override_tolerance
        if symbol:
            for key in (symbol.upper(), normalize_symbol(symbol)):
                if key in self.config.symbol_tolerances:
                    return self.config.tolerance_for(key)
        return self.config.tolerance_for(None)

    def check(self, symbol: str, entry_price: Decimal, current_price: Decimal) -> ToleranceCheck:
        result = check_tolerance(entry_price, current_price, self.tolerance_for(symbol))
        logger.debug(
            "RISK_TOLERANCE_CHECK",
            symbol=symbol,
            entry_price=str(entry_price),
            current_price=str(current_price),
            should_execute=result.should_execute,
            reason=result.reason,
        )
        return result
