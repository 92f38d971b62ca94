"""
Shared symbol helpers for Binance USDⓈ-M futures.

- Agent symbols are bare assets (BTC) or raw exchange ids (BTCUSDT)
- CCXT unified ids (BTC/USDT:USDT) collapse to the same raw exchange id

This module is the single source of truth for symbol normalization. Compare
symbols across formats through normalize_symbol, never ad hoc.
"""
from __future__ import annotations

from decimal import Decimal, ROUND_DOWN

QUOTE = "USDT"


def normalize_symbol(symbol: str) -> str:
    """
    Canonical raw exchange id.

    BTC, btc, BTCUSDT, BTC/USDT, BTC/USDT:USDT -> BTCUSDT.
    """
    if not symbol:
        return ""
    s = str(symbol).upper().strip()
    s = s.split(":")[0]
    s = s.replace("/", "").replace("-", "").replace("_", "")
    if not s.endswith(QUOTE):
        s = f"{s}{QUOTE}"
    return s


def base_asset(symbol: str) -> str:
    """BTCUSDT, BTC/USDT:USDT, BTC -> BTC."""
    s = normalize_symbol(symbol)
    return s[: -len(QUOTE)]


def same_market(a: str, b: str) -> bool:
    return normalize_symbol(a) == normalize_symbol(b)


def format_quantity(quantity: Decimal, precision: int) -> str:
    """
    Truncate a quantity to the exchange step and drop trailing zeros.

    Truncation (not rounding) keeps an order from exceeding the requested size.
    """
    step = Decimal(1).scaleb(-precision)
    truncated = abs(Decimal(quantity)).quantize(step, rounding=ROUND_DOWN)
    text = format(truncated, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
