"""
Follow loop: the periodic trigger for reconciliation passes.

Passes run back-to-back with interval_seconds between the end of one pass
and the start of the next, so passes for an agent never overlap. A stop
request lets the in-flight pass finish and then ends the loop.
"""
import asyncio
import signal
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from agent_mirror.domain.models import ActionStatus, ExecutedAction
from agent_mirror.domain.protocols import PositionSnapshotSource
from agent_mirror.exceptions import describe_error
from agent_mirror.execution.coordinator import ExecutionCoordinator
from agent_mirror.monitoring.logger import get_logger
from agent_mirror.reconciliation.engine import ReconciliationEngine

logger = get_logger(__name__)


@dataclass
class PassOutcome:
    """What one tick of the loop did."""
    pass_number: int
    results: List[ExecutedAction] = field(default_factory=list)
    fetch_error: Optional[str] = None
    orphans_cancelled: int = 0
    # Symbols whose snapshot record was rejected and left untouched
    held_symbols: List[str] = field(default_factory=list)

    def count(self, status: ActionStatus) -> int:
        return sum(1 for r in self.results if r.status == status)


class FollowLoop:
    """Mirror one agent until stopped or max_passes is reached."""

    def __init__(
        self,
        agent: str,
        feed: PositionSnapshotSource,
        engine: ReconciliationEngine,
        interval_seconds: float = 30,
        total_margin: Optional[Decimal] = None,
        coordinator: Optional[ExecutionCoordinator] = None,
        clean_orphans: bool = True,
        max_passes: Optional[int] = None,
    ):
        self.agent = agent
        self.feed = feed
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.total_margin = total_margin
        # Orphan cleanup needs the coordinator; default to the engine's
        self.coordinator = coordinator or engine.coordinator
        self.clean_orphans = clean_orphans
        self.max_passes = max_passes

        self.passes_completed = 0
        self._stop_event = asyncio.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        """Stop scheduling passes. A pass already running is not interrupted."""
        if not self._stop_event.is_set():
            logger.info("FOLLOW_STOP_REQUESTED", agent=self.agent, passes_completed=self.passes_completed)
        self._stop_event.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Not available on Windows event loops
                logger.debug("Signal handlers unavailable", signal=sig.name)

    async def run(self) -> List[PassOutcome]:
        """Run passes until a stop is requested or max_passes is reached."""
        logger.info(
            "FOLLOW_START",
            agent=self.agent,
            interval_seconds=self.interval_seconds,
            total_margin=str(self.total_margin) if self.total_margin is not None else None,
            max_passes=self.max_passes,
        )
        outcomes: List[PassOutcome] = []

        while not self.stop_requested:
            try:
                outcomes.append(await self.run_once())
            except Exception as e:
                # Keep scheduling; the next pass starts again from the ledger
                logger.exception("FOLLOW_PASS_CRASHED", agent=self.agent, error=describe_error(e))

            self.passes_completed += 1
            if self.max_passes is not None and self.passes_completed >= self.max_passes:
                break
            await self._wait_interval()

        logger.info("FOLLOW_STOPPED", agent=self.agent, passes_completed=self.passes_completed)
        return outcomes

    async def _wait_interval(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> PassOutcome:
        """One tick: orphan cleanup, snapshot fetch, reconcile, summary."""
        outcome = PassOutcome(pass_number=self.passes_completed + 1)

        if self.clean_orphans and self.coordinator is not None:
            cleanup = await self.coordinator.clean_orphaned_orders()
            outcome.orphans_cancelled = cleanup.cancelled_count
            if cleanup.errors:
                logger.warning("ORPHAN_CLEANUP_ERRORS", errors=cleanup.errors)

        try:
            snapshot = await self.feed.fetch(self.agent)
        except Exception as e:
            outcome.fetch_error = describe_error(e)
            logger.warning("SNAPSHOT_FETCH_FAILED", agent=self.agent, error=outcome.fetch_error)
            return outcome

        outcome.held_symbols = sorted(snapshot.rejected_symbols)
        outcome.results = await self.engine.reconcile(
            self.agent,
            snapshot.positions,
            total_margin=self.total_margin,
            held_symbols=snapshot.rejected_symbols,
        )

        logger.info(
            "FOLLOW_PASS_SUMMARY",
            agent=self.agent,
            pass_number=outcome.pass_number,
            positions=len(snapshot.positions),
            held=outcome.held_symbols,
            executed=outcome.count(ActionStatus.EXECUTED),
            failed=outcome.count(ActionStatus.FAILED),
            skipped=outcome.count(ActionStatus.SKIPPED),
            orphans_cancelled=outcome.orphans_cancelled,
        )
        return outcome
