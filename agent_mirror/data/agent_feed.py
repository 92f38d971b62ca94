"""
Agent position feed (nof1 account-totals API).

Implements PositionSnapshotSource. Snapshots are validated at this
boundary: a malformed position record is logged and reported by symbol,
never handed to the reconciliation engine as a position.
"""
import asyncio
import ssl
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import certifi

from agent_mirror.config.config import AgentFeedConfig
from agent_mirror.domain.models import ExitPlan, Position, PositionSnapshot
from agent_mirror.exceptions import DataError, GatewayError, RateLimitError, ValidationError
from agent_mirror.monitoring.logger import get_logger
from agent_mirror.utils.decimals import to_decimal
from agent_mirror.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

ACCOUNT_TOTALS_PATH = "/account-totals"
_HOUR_SECONDS = 3600
_MAX_CACHE_ENTRIES = 100


def hourly_marker(initial_marker_time: str, now: Optional[datetime] = None) -> int:
    """Whole hours elapsed since the feed's initial marker time."""
    start = datetime.fromisoformat(initial_marker_time.replace("Z", "+00:00"))
    now = now or datetime.now(timezone.utc)
    return int((now - start).total_seconds() // _HOUR_SECONDS)


def parse_position(symbol_key: str, raw: Dict[str, Any]) -> Position:
    """
    Validate one raw position record.

    Raises:
        ValidationError: missing or non-numeric fields, bad leverage or prices
    """
    if not isinstance(raw, dict):
        raise ValidationError("Position record is not an object", symbol=symbol_key)

    symbol = str(raw.get("symbol") or symbol_key or "").strip().upper()
    if not symbol:
        raise ValidationError("Position record has no symbol", field="symbol")

    def required(name: str):
        value = to_decimal(raw.get(name))
        if value is None:
            raise ValidationError(f"Field {name} is missing or not a finite number", symbol=symbol, field=name)
        return value

    quantity = required("quantity")
    entry_id = raw.get("entry_oid")
    if entry_id is None or str(entry_id).strip() == "":
        raise ValidationError("Field entry_oid is missing", symbol=symbol, field="entry_oid")

    entry_price = to_decimal(raw.get("entry_price"))
    leverage = to_decimal(raw.get("leverage"))
    current_price = to_decimal(raw.get("current_price"))

    if quantity != 0:
        if leverage is None or leverage <= 0:
            raise ValidationError("Leverage must be greater than zero", symbol=symbol, field="leverage")
        if entry_price is None or entry_price <= 0:
            raise ValidationError("Entry price must be greater than zero", symbol=symbol, field="entry_price")
        if current_price is None or current_price <= 0:
            raise ValidationError("Current price must be greater than zero", symbol=symbol, field="current_price")

    exit_plan = None
    raw_plan = raw.get("exit_plan")
    if isinstance(raw_plan, dict):
        profit_target = to_decimal(raw_plan.get("profit_target"))
        stop_loss = to_decimal(raw_plan.get("stop_loss"))
        invalidation = raw_plan.get("invalidation_condition")
        exit_plan = ExitPlan(
            profit_target=profit_target if profit_target and profit_target > 0 else None,
            stop_loss=stop_loss if stop_loss and stop_loss > 0 else None,
            invalidation_condition=str(invalidation) if invalidation else None,
        )

    margin = to_decimal(raw.get("margin"))
    tp_oid = raw.get("tp_oid")
    sl_oid = raw.get("sl_oid")

    return Position(
        symbol=symbol,
        entry_price=entry_price or to_decimal(0),
        quantity=quantity,
        leverage=leverage or to_decimal(0),
        current_price=current_price or to_decimal(0),
        entry_id=str(entry_id),
        margin=margin if margin is not None and margin > 0 else to_decimal(0),
        confidence=to_decimal(raw.get("confidence")),
        unrealized_pnl=to_decimal(raw.get("unrealized_pnl")),
        exit_plan=exit_plan,
        tp_order_id=str(tp_oid) if tp_oid not in (None, "", -1) else None,
        sl_order_id=str(sl_oid) if sl_oid not in (None, "", -1) else None,
    )


def parse_snapshot(raw_positions: Any, agent: str = "") -> PositionSnapshot:
    """
    Parse a positions mapping (or list).

    A malformed record is dropped from positions and its symbol reported in
    rejected_symbols, so the engine holds it instead of reading it as closed.

    Raises:
        ValidationError: a malformed record carries no symbol at all
    """
    if isinstance(raw_positions, dict):
        items = list(raw_positions.items())
    elif isinstance(raw_positions, list):
        items = [(str((p or {}).get("symbol", "")) if isinstance(p, dict) else "", p) for p in raw_positions]
    else:
        items = []

    positions = []
    rejected = set()
    for symbol_key, raw in items:
        try:
            positions.append(parse_position(symbol_key, raw))
        except ValidationError as e:
            symbol = str(e.symbol or symbol_key or "").strip().upper()
            logger.warning("SNAPSHOT_RECORD_REJECTED", agent=agent, symbol=symbol or None, field=e.field, error=str(e))
            if not symbol:
                # Nothing to hold: any ledger symbol could be the one this record describes
                raise ValidationError(f"Snapshot for {agent} has a malformed record without a symbol", field="symbol") from e
            rejected.add(symbol)
    return PositionSnapshot(positions=positions, rejected_symbols=frozenset(rejected))


def latest_accounts(account_totals: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Keep only the newest record (highest hourly marker) per model id."""
    latest: Dict[str, Dict[str, Any]] = {}
    for account in account_totals or []:
        if not isinstance(account, dict):
            continue
        model_id = account.get("model_id")
        if not model_id:
            continue
        marker = account.get("since_inception_hourly_marker") or 0
        existing = latest.get(model_id)
        if existing is None or marker > (existing.get("since_inception_hourly_marker") or 0):
            latest[model_id] = account
    return latest


class AgentFeedClient:
    """HTTP client for the agent account-totals API with a TTL cache."""

    def __init__(self, config: Optional[AgentFeedConfig] = None):
        self.config = config or AgentFeedConfig()
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self._ssl_context: Optional[ssl.SSLContext] = None

    def build_url(self, marker: Optional[int] = None) -> str:
        if marker is None:
            marker = hourly_marker(self.config.initial_marker_time)
        return f"{self.config.base_url}{ACCOUNT_TOTALS_PATH}?lastHourlyMarker={marker}"

    def clear_cache(self) -> None:
        self._cache.clear()

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    def _cached(self, url: str) -> Optional[Any]:
        entry = self._cache.get(url)
        if entry is None:
            return None
        stored_at, data = entry
        if time.monotonic() - stored_at > self.config.cache_ttl_seconds:
            del self._cache[url]
            return None
        return data

    def _store(self, url: str, data: Any) -> None:
        if len(self._cache) >= _MAX_CACHE_ENTRIES:
            oldest = min(self._cache, key=lambda k: self._cache[k][0])
            del self._cache[oldest]
        self._cache[url] = (time.monotonic(), data)

    async def _get_json(self, url: str) -> Any:
        connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        try:
            async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
                async with session.get(url, headers={"User-Agent": "agent-mirror/1.0"}) as response:
                    if response.status == 429:
                        raise RateLimitError("Agent API rate limit exceeded", endpoint=url, status_code=429)
                    if response.status != 200:
                        error_text = await response.text()
                        raise GatewayError(
                            f"Agent API error ({response.status}): {error_text[:200]}",
                            endpoint=url,
                            status_code=response.status,
                        )
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GatewayError(f"Agent API request failed: {e!r}", endpoint=url) from e

        logger.debug("Agent API response", url=url, keys=list(data.keys()) if isinstance(data, dict) else None)
        return data

    async def fetch_account_totals(self, marker: Optional[int] = None) -> List[Dict[str, Any]]:
        """Raw accountTotals records, served from cache within the TTL."""
        url = self.build_url(marker)
        cached = self._cached(url)
        if cached is not None:
            logger.debug("Using cached agent data", url=url)
            return cached

        fetch = retry_on_transient_errors(
            max_retries=self.config.max_retries,
            base_delay=self.config.retry_base_delay_seconds,
            transient_errors=(GatewayError,),
        )(self._get_json)
        data = await fetch(url)

        if not isinstance(data, dict) or not isinstance(data.get("accountTotals"), list):
            raise DataError("Agent API response has no accountTotals list")

        totals = data["accountTotals"]
        self._store(url, totals)
        return totals

    async def list_agents(self) -> List[str]:
        """Ids of every agent present in the latest snapshot."""
        totals = await self.fetch_account_totals()
        agents = sorted(latest_accounts(totals))
        logger.info("Available agents", agents=agents)
        return agents

    async def get_agent_account(self, agent: str, marker: Optional[int] = None) -> Optional[Dict[str, Any]]:
        totals = await self.fetch_account_totals(marker)
        return latest_accounts(totals).get(agent)

    async def fetch(self, agent: str) -> PositionSnapshot:
        """
        Current positions for an agent.

        Raises:
            DataError: agent absent from the feed (never reported as "no positions")
            ValidationError: a malformed record could not be tied to a symbol
            GatewayError: HTTP failure after retries
        """
        account = await self.get_agent_account(agent)
        if account is None:
            raise DataError(f"Agent {agent} not found")

        snapshot = parse_snapshot(account.get("positions"), agent=agent)
        logger.info(
            "AGENT_SNAPSHOT",
            agent=agent,
            marker=account.get("since_inception_hourly_marker"),
            positions=len(snapshot.positions),
            rejected=sorted(snapshot.rejected_symbols),
        )
        return snapshot
