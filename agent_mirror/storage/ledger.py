"""
Order ledger: persisted record of every Enter the mirror has applied.

The ledger is the source of truth for "last known position" per
(agent, symbol) and for "has this entry already been executed".
Rows are never deleted by the engine; a close stamps closed_at. Retention
is an operator action (cleanup_old_entries).
"""
from sqlalchemy import Column, String, Numeric, DateTime, Integer, Index, UniqueConstraint, func
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from agent_mirror.data.symbol_utils import base_asset, normalize_symbol
from agent_mirror.domain.models import LedgerEntry, Side
from agent_mirror.monitoring.logger import get_logger
from agent_mirror.storage.db import Base, Database, init_db

logger = get_logger(__name__)

_CREATED_AT_KEY = "created_at"


class LedgerEntryModel(Base):
    """ORM model for a processed agent entry."""
    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint('agent', 'symbol', 'entry_id', name='uq_ledger_entry'),
        Index('idx_ledger_active', 'agent', 'symbol', 'closed_at'),
        Index('idx_ledger_entry_id', 'entry_id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    entry_id = Column(String, nullable=False)
    side = Column(String(4), nullable=False)
    quantity = Column(Numeric(28, 12), nullable=False)
    price = Column(Numeric(28, 12), nullable=False)
    order_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    close_reason = Column(String, nullable=True)


class LedgerMetadataModel(Base):
    """Key/value metadata (follow start time)."""
    __tablename__ = "ledger_metadata"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


class OrderLedger:
    """SQLAlchemy-backed order ledger."""

    def __init__(self, db: Database):
        self.db = db
        self._ensure_created_at()

    @classmethod
    def from_url(cls, database_url: str) -> "OrderLedger":
        return cls(init_db(database_url))

    # ---------------------------------------------------------------- reads

    def is_processed(self, entry_id: str, symbol: Optional[str] = None, agent: Optional[str] = None) -> bool:
        """True if an Enter for this entry id has already been committed."""
        with self.db.get_session() as session:
            query = session.query(LedgerEntryModel.id).filter(LedgerEntryModel.entry_id == str(entry_id))
            if symbol is not None:
                query = query.filter(LedgerEntryModel.symbol == symbol)
            if agent is not None:
                query = query.filter(LedgerEntryModel.agent == agent)
            processed = query.first() is not None

        if processed:
            logger.debug("LEDGER_ALREADY_PROCESSED", entry_id=str(entry_id), symbol=symbol, agent=agent)
        return processed

    def get_active_entry(self, agent: str, symbol: str) -> Optional[LedgerEntry]:
        """Latest unclosed entry for (agent, symbol), or None."""
        with self.db.get_session() as session:
            row = (
                session.query(LedgerEntryModel)
                .filter(
                    LedgerEntryModel.agent == agent,
                    LedgerEntryModel.symbol == symbol,
                    LedgerEntryModel.closed_at.is_(None),
                )
                .order_by(LedgerEntryModel.created_at.desc(), LedgerEntryModel.id.desc())
                .first()
            )
            return _to_domain(row) if row else None

    def get_active_entries(self, agent: str) -> List[LedgerEntry]:
        """All unclosed entries for an agent, one per symbol."""
        with self.db.get_session() as session:
            rows = (
                session.query(LedgerEntryModel)
                .filter(LedgerEntryModel.agent == agent, LedgerEntryModel.closed_at.is_(None))
                .order_by(LedgerEntryModel.created_at.desc(), LedgerEntryModel.id.desc())
                .all()
            )
            entries: Dict[str, LedgerEntry] = {}
            for row in rows:
                entries.setdefault(row.symbol, _to_domain(row))
            return list(entries.values())

    def get_entries(self, agent: Optional[str] = None, symbol: Optional[str] = None) -> List[LedgerEntry]:
        """Audit read, newest first."""
        with self.db.get_session() as session:
            query = session.query(LedgerEntryModel)
            if agent is not None:
                query = query.filter(LedgerEntryModel.agent == agent)
            if symbol is not None:
                query = query.filter(LedgerEntryModel.symbol == symbol)
            rows = query.order_by(LedgerEntryModel.created_at.desc(), LedgerEntryModel.id.desc()).all()
            return [_to_domain(r) for r in rows]

    def get_stats(self) -> Dict[str, Any]:
        with self.db.get_session() as session:
            total = session.query(func.count(LedgerEntryModel.id)).scalar() or 0
            active = (
                session.query(func.count(LedgerEntryModel.id))
                .filter(LedgerEntryModel.closed_at.is_(None))
                .scalar()
                or 0
            )
            by_agent = dict(
                session.query(LedgerEntryModel.agent, func.count(LedgerEntryModel.id))
                .group_by(LedgerEntryModel.agent)
                .all()
            )
            by_symbol = dict(
                session.query(LedgerEntryModel.symbol, func.count(LedgerEntryModel.id))
                .group_by(LedgerEntryModel.symbol)
                .all()
            )
            last_created = session.query(func.max(LedgerEntryModel.created_at)).scalar()
            last_closed = session.query(func.max(LedgerEntryModel.closed_at)).scalar()

        candidates = [_utc(t) for t in (last_created, last_closed) if t is not None]
        return {
            "total_entries": total,
            "active_entries": active,
            "entries_by_agent": by_agent,
            "entries_by_symbol": by_symbol,
            "last_updated": max(candidates) if candidates else None,
            "created_at": self.created_at(),
        }

    def created_at(self) -> datetime:
        """When following started: earliest entry, else the metadata stamp."""
        with self.db.get_session() as session:
            earliest = session.query(func.min(LedgerEntryModel.created_at)).scalar()
            meta = session.get(LedgerMetadataModel, _CREATED_AT_KEY)
            stamped = datetime.fromisoformat(meta.value) if meta else None

        candidates = [_utc(t) for t in (earliest, stamped) if t is not None]
        return min(candidates) if candidates else datetime.now(timezone.utc)

    # --------------------------------------------------------------- writes

    def commit(
        self,
        entry_id: str,
        symbol: str,
        agent: str,
        side: Side,
        quantity: Decimal,
        price: Decimal,
        order_id: Optional[str] = None,
    ) -> bool:
        """
        Record a successfully executed Enter.

        Idempotent: an (agent, symbol, entry_id) that already exists is left
        untouched and False is returned. Any other active entry for the same
        (agent, symbol) is closed as superseded.
        """
        entry_id = str(entry_id)
        now = datetime.now(timezone.utc)
        with self.db.get_session() as session:
            existing = (
                session.query(LedgerEntryModel)
                .filter(
                    LedgerEntryModel.agent == agent,
                    LedgerEntryModel.symbol == symbol,
                    LedgerEntryModel.entry_id == entry_id,
                )
                .first()
            )
            if existing is not None:
                logger.debug("LEDGER_COMMIT_DUPLICATE", agent=agent, symbol=symbol, entry_id=entry_id)
                return False

            superseded = (
                session.query(LedgerEntryModel)
                .filter(
                    LedgerEntryModel.agent == agent,
                    LedgerEntryModel.symbol == symbol,
                    LedgerEntryModel.closed_at.is_(None),
                )
                .all()
            )
            for row in superseded:
                row.closed_at = now
                row.close_reason = f"superseded by {entry_id}"

            session.add(LedgerEntryModel(
                agent=agent,
                symbol=symbol,
                entry_id=entry_id,
                side=Side(side).value,
                quantity=Decimal(quantity),
                price=Decimal(price),
                order_id=order_id,
                created_at=now,
            ))

        logger.info(
            "LEDGER_COMMIT",
            agent=agent,
            symbol=symbol,
            entry_id=entry_id,
            side=Side(side).value,
            quantity=str(quantity),
            price=str(price),
            order_id=order_id,
        )
        return True

    def mark_closed(self, agent: str, symbol: str, entry_id: str, reason: str) -> bool:
        """Stamp an entry closed. The row is kept for audit and stays processed."""
        with self.db.get_session() as session:
            row = (
                session.query(LedgerEntryModel)
                .filter(
                    LedgerEntryModel.agent == agent,
                    LedgerEntryModel.symbol == symbol,
                    LedgerEntryModel.entry_id == str(entry_id),
                    LedgerEntryModel.closed_at.is_(None),
                )
                .first()
            )
            if row is None:
                return False
            row.closed_at = datetime.now(timezone.utc)
            row.close_reason = reason

        logger.info("LEDGER_MARK_CLOSED", agent=agent, symbol=symbol, entry_id=str(entry_id), reason=reason)
        return True

    def cleanup_old_entries(
        self,
        days_to_keep: int = 30,
        agent: Optional[str] = None,
        keep_entry_ids: Iterable[str] = (),
    ) -> int:
        """
        Delete entries closed longer ago than the retention window.

        Active entries are never deleted. A deleted entry stops counting as
        processed, so ids the agent still reports go in keep_entry_ids or
        the next pass would enter them again.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_to_keep)
        keep = [str(entry_id) for entry_id in keep_entry_ids]
        with self.db.get_session() as session:
            query = session.query(LedgerEntryModel).filter(
                LedgerEntryModel.closed_at.isnot(None),
                LedgerEntryModel.closed_at < cutoff,
            )
            if agent is not None:
                query = query.filter(LedgerEntryModel.agent == agent)
            if keep:
                query = query.filter(LedgerEntryModel.entry_id.notin_(keep))
            removed = query.delete(synchronize_session=False)

        if removed:
            logger.info("LEDGER_CLEANUP", removed=removed, days_to_keep=days_to_keep, agent=agent, kept_ids=len(keep))
        return removed

    def reset_symbol(self, symbol: str, entry_id: Optional[str] = None, agent: Optional[str] = None) -> int:
        """
        Forget processed entries for a symbol so it can be followed again.

        BTC, BTCUSDT and BTC/USDT:USDT all match entries stored under any of those forms.
        """
        forms = {str(symbol).upper(), normalize_symbol(symbol), base_asset(symbol)}
        with self.db.get_session() as session:
            query = session.query(LedgerEntryModel).filter(LedgerEntryModel.symbol.in_(forms))
            if entry_id is not None:
                query = query.filter(LedgerEntryModel.entry_id == str(entry_id))
            if agent is not None:
                query = query.filter(LedgerEntryModel.agent == agent)
            removed = query.delete(synchronize_session=False)

        logger.info("LEDGER_RESET_SYMBOL", symbol=symbol, entry_id=entry_id, agent=agent, removed=removed)
        return removed

    def _ensure_created_at(self) -> None:
        with self.db.get_session() as session:
            if session.get(LedgerMetadataModel, _CREATED_AT_KEY) is None:
                session.add(LedgerMetadataModel(
                    key=_CREATED_AT_KEY,
                    value=datetime.now(timezone.utc).isoformat(),
                ))


def _utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _dec(value: Any) -> Decimal:
    d = Decimal(str(value)).normalize()
    return d.quantize(Decimal(1)) if d == d.to_integral_value() else d


def _to_domain(row: LedgerEntryModel) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row.entry_id,
        symbol=row.symbol,
        agent=row.agent,
        timestamp=_utc(row.created_at),
        side=Side(row.side),
        quantity=_dec(row.quantity),
        price=_dec(row.price),
        order_id=row.order_id,
        closed_at=_utc(row.closed_at) if row.closed_at else None,
        close_reason=row.close_reason,
    )
