"""
Binance USDⓈ-M futures client.

Implements the ExchangeGateway protocol on top of ccxt's async binanceusdm
exchange. Calls go through ccxt's raw fapi endpoints so order types,
stopPrice and closePosition reach Binance exactly as sent; ccxt handles
signing, recvWindow and rate limiting.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

import ccxt
import ccxt.async_support as ccxt_async

from agent_mirror.config.config import ExchangeConfig
from agent_mirror.data.symbol_utils import base_asset, format_quantity, normalize_symbol
from agent_mirror.domain.models import (
    AccountInfo,
    ExchangeOrder,
    ExchangePosition,
    OrderRequest,
    PlacedOrder,
    Side,
)
from agent_mirror.exceptions import (
    AuthenticationError,
    GatewayError,
    OrderExecutionError,
    RateLimitError,
)
from agent_mirror.monitoring.logger import get_logger
from agent_mirror.utils.decimals import format_decimal, to_decimal
from agent_mirror.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

_ZERO = Decimal("0")


def _dec(value: Any, default: Decimal = _ZERO) -> Decimal:
    d = to_decimal(value)
    return d if d is not None else default


def parse_position(raw: Dict[str, Any]) -> ExchangePosition:
    """Build an ExchangePosition from a /fapi/v2/positionRisk row."""
    return ExchangePosition(
        symbol=str(raw.get("symbol") or ""),
        quantity=_dec(raw.get("positionAmt")),
        entry_price=_dec(raw.get("entryPrice")),
        mark_price=_dec(raw.get("markPrice")),
        unrealized_pnl=_dec(raw.get("unRealizedProfit")),
        leverage=_dec(raw.get("leverage"), Decimal("1")),
    )


def parse_order(raw: Dict[str, Any]) -> ExchangeOrder:
    """Build an ExchangeOrder from a /fapi/v1/openOrders row."""
    stop_price = to_decimal(raw.get("stopPrice"))
    return ExchangeOrder(
        order_id=str(raw.get("orderId")),
        symbol=str(raw.get("symbol") or ""),
        type=str(raw.get("type") or "").upper(),
        side=Side(str(raw.get("side") or "BUY").upper()),
        status=str(raw.get("status") or "NEW"),
        stop_price=stop_price if stop_price else None,
    )


class BinanceFuturesClient:
    """
    Binance USDⓈ-M futures REST client (ExchangeGateway).

    Every failure surfaces as a GatewayError subclass; order rejections
    as OrderExecutionError. Read calls retry on transient errors, writes
    never do.
    """

    def __init__(self, config: ExchangeConfig):
        """
        Initialize client.

        Args:
            config: Exchange configuration (credentials, testnet, precision)
        """
        self.config = config
        self.exchange = None
        logger.info("Binance futures client configuration loaded", testnet=config.use_testnet)

    def has_valid_credentials(self) -> bool:
        return bool(self.config.api_key and self.config.api_secret)

    async def initialize(self) -> None:
        """
        Lazy initialization of the CCXT exchange.
        MUST be called inside the running event loop of the target process.
        """
        if self.exchange is not None:
            return

        self.exchange = ccxt_async.binanceusdm({
            'apiKey': self.config.api_key,
            'secret': self.config.api_secret,
            'enableRateLimit': True,
            'timeout': self.config.request_timeout_ms,
            'options': {
                'recvWindow': self.config.recv_window_ms,
                'adjustForTimeDifference': True,
            },
        })
        if self.config.use_testnet:
            try:
                self.exchange.set_sandbox_mode(True)
            except ccxt.NotSupported:
                # Newer ccxt releases moved futures testing to demo trading
                self.exchange.enable_demo_trading(True)

        logger.info("Binance futures client initialized", testnet=self.config.use_testnet)

    async def close(self) -> None:
        """Release the HTTP session."""
        if self.exchange is not None:
            await self.exchange.close()
            self.exchange = None

    async def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self.has_valid_credentials():
            raise AuthenticationError("Binance API credentials not configured", endpoint=endpoint)
        await self.initialize()

        method = getattr(self.exchange, endpoint)
        try:
            return await method(params or {})
        except ccxt.AuthenticationError as e:
            raise AuthenticationError(str(e), endpoint=endpoint) from e
        except (ccxt.RateLimitExceeded, ccxt.DDoSProtection) as e:
            raise RateLimitError(str(e), endpoint=endpoint) from e
        except (ccxt.InvalidOrder, ccxt.InsufficientFunds, ccxt.OrderNotFound) as e:
            raise OrderExecutionError(str(e), symbol=(params or {}).get("symbol")) from e
        except ccxt.BaseError as e:
            raise GatewayError(str(e), endpoint=endpoint) from e

    # ---------------------------------------------------------------- reads

    @retry_on_transient_errors(max_retries=2, base_delay=1.0, transient_errors=(GatewayError,))
    async def get_all_positions(self) -> List[ExchangePosition]:
        """All position rows, including zero-size ones."""
        raw = await self._request("fapiPrivateV2GetPositionRisk")
        positions = [parse_position(p) for p in raw or []]
        logger.debug("Fetched positions", rows=len(positions))
        return positions

    async def get_positions(self) -> List[ExchangePosition]:
        """Non-zero positions only."""
        return [p for p in await self.get_all_positions() if p.quantity != 0]

    @retry_on_transient_errors(max_retries=2, base_delay=1.0, transient_errors=(GatewayError,))
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[ExchangeOrder]:
        params = {"symbol": normalize_symbol(symbol)} if symbol else {}
        raw = await self._request("fapiPrivateGetOpenOrders", params)
        return [parse_order(o) for o in raw or []]

    @retry_on_transient_errors(max_retries=2, base_delay=1.0, transient_errors=(GatewayError,))
    async def get_account_info(self) -> AccountInfo:
        raw = await self._request("fapiPrivateV2GetAccount")
        return AccountInfo(
            available_balance=_dec(raw.get("availableBalance")),
            total_wallet_balance=_dec(raw.get("totalWalletBalance")),
        )

    # --------------------------------------------------------------- writes

    def format_quantity(self, symbol: str, quantity: Decimal) -> str:
        return format_quantity(quantity, self.config.precision_for(base_asset(symbol)))

    def build_order_params(self, order: OrderRequest) -> Dict[str, Any]:
        """Binance /fapi/v1/order parameters for an OrderRequest."""
        params: Dict[str, Any] = {
            "symbol": normalize_symbol(order.symbol),
            "side": order.side.value,
            "type": order.type.value,
        }
        # closePosition orders carry no quantity
        if not order.close_position:
            quantity = self.format_quantity(order.symbol, order.quantity)
            if Decimal(quantity) == 0:
                raise OrderExecutionError(
                    f"Quantity {order.quantity} rounds to zero for {params['symbol']}",
                    symbol=params["symbol"],
                )
            params["quantity"] = quantity
        if order.stop_price is not None:
            params["stopPrice"] = format_decimal(order.stop_price)
        if order.close_position:
            params["closePosition"] = "true"
        if order.reduce_only and not order.close_position:
            params["reduceOnly"] = "true"
        return params

    async def place_order(self, order: OrderRequest) -> PlacedOrder:
        params = self.build_order_params(order)
        logger.info("Placing futures order", **params)

        raw = await self._request("fapiPrivatePostOrder", params)
        avg_price = to_decimal(raw.get("avgPrice"))
        return PlacedOrder(
            order_id=str(raw.get("orderId")),
            symbol=str(raw.get("symbol") or params["symbol"]),
            status=str(raw.get("status") or "NEW"),
            side=order.side,
            quantity=to_decimal(raw.get("origQty")),
            avg_price=avg_price if avg_price else None,
        )

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        await self._request("fapiPrivateDeleteOrder", {
            "symbol": normalize_symbol(symbol),
            "orderId": order_id,
        })
        logger.info("Futures order cancelled", symbol=normalize_symbol(symbol), order_id=order_id)

    async def cancel_all_orders(self, symbol: str) -> None:
        await self._request("fapiPrivateDeleteAllOpenOrders", {"symbol": normalize_symbol(symbol)})
        logger.info("All futures orders cancelled", symbol=normalize_symbol(symbol))

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self._request("fapiPrivatePostLeverage", {
            "symbol": normalize_symbol(symbol),
            "leverage": int(leverage),
        })
        logger.debug("Leverage set", symbol=normalize_symbol(symbol), leverage=int(leverage))
