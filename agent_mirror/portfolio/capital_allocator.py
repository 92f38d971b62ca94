"""
Proportional capital allocation under a global margin budget.

ratio = min(1, total_margin / sum(original margins)); every candidate's
margin and quantity are scaled by the same ratio, so the allocator can
shrink positions but never grow them past what the agent holds.
"""
from decimal import Decimal
from typing import Iterable, List

from agent_mirror.domain.models import Allocation, AllocationRequest, CapitalAllocationResult
from agent_mirror.monitoring.logger import get_logger

logger = get_logger(__name__)

_ZERO = Decimal("0")
_ONE = Decimal("1")


class CapitalAllocator:
    """Stateless allocator. The caller decides whether allocation applies at all."""

    def allocate(self, entries: Iterable[AllocationRequest], total_margin: Decimal) -> CapitalAllocationResult:
        """
        Scale candidate entries to fit total_margin.

        Entries with margin <= 0 are excluded from the sum and the output.
        A non-positive budget yields ratio 0 and zeroed allocations, which
        the caller must skip since a zero quantity cannot be opened.
        """
        candidates: List[AllocationRequest] = [e for e in entries if e.margin > 0]
        total_original = sum((e.margin for e in candidates), _ZERO)

        if not candidates or total_original == 0:
            return CapitalAllocationResult(
                allocations=[],
                total_allocated_margin=_ZERO,
                total_notional_value=_ZERO,
                total_original_margin=_ZERO,
            )

        budget = total_margin if total_margin > 0 else _ZERO
        ratio = min(_ONE, budget / total_original)

        allocations = []
        for entry in candidates:
            allocated_margin = entry.margin * ratio
            allocations.append(Allocation(
                symbol=entry.symbol,
                side=entry.side,
                leverage=entry.leverage,
                original_margin=entry.margin,
                allocated_margin=allocated_margin,
                notional_value=allocated_margin * entry.leverage,
                adjusted_quantity=abs(entry.quantity) * ratio,
                allocation_ratio=ratio,
            ))

        result = CapitalAllocationResult(
            allocations=allocations,
            total_allocated_margin=sum((a.allocated_margin for a in allocations), _ZERO),
            total_notional_value=sum((a.notional_value for a in allocations), _ZERO),
            total_original_margin=total_original,
        )

        logger.info(
            "CAPITAL_ALLOCATION",
            candidates=len(allocations),
            total_margin=str(total_margin),
            total_original_margin=str(total_original),
            total_allocated_margin=str(result.total_allocated_margin),
            ratio=str(ratio),
        )
        return result
