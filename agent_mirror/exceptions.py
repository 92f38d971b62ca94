"""
Custom exception hierarchy for the position mirror.

Hierarchy:

    MirrorError (base)
    ├── OperationalError   : transient/retryable (exchange, network, timeouts)
    │   ├── GatewayError   : exchange or agent-feed call failed
    │   │   ├── AuthenticationError
    │   │   └── RateLimitError
    │   └── ReconciliationInconsistency : position not flat after bounded verification
    ├── DataError          : bad input, skip symbol, don't halt
    │   ├── ValidationError
    │   └── OrderExecutionError
    └── ConfigurationError : invalid configuration, fail fast at startup

Rules:
    - OperationalError: catch, log, report the action as failed, retry next pass
    - DataError: catch, log, skip this symbol, continue the pass
    - ConfigurationError: raised at startup only, never caught by the engine
    - Everything else (AttributeError, TypeError, etc.): let crash.
"""
from typing import Any, Optional


class MirrorError(Exception):
    """Base exception for all position mirror errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(MirrorError):
    """Transient/retryable error: exchange API, network, timeouts.

    Treatment: catch, log, report the action as failed, retry on the next pass.
    """
    pass


class GatewayError(OperationalError):
    """An exchange or agent-feed call failed."""

    def __init__(self, message: str, *, endpoint: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code


class AuthenticationError(GatewayError):
    """Raised when API authentication fails.

    Callers should escalate: retrying with the same credentials never helps.
    """
    pass


class RateLimitError(GatewayError):
    """Raised when API rate limit is exceeded."""
    pass


class ReconciliationInconsistency(OperationalError):
    """Exchange position did not reach flat within the bounded verification window."""

    def __init__(self, message: str, *, symbol: str, residual: Any = None):
        super().__init__(message)
        self.symbol = symbol
        self.residual = residual


# ============ DATA (bad input, skip symbol) ============

class DataError(MirrorError):
    """Bad data: malformed snapshot record, invalid order parameters.

    Treatment: catch, log, skip this symbol, continue the pass.
    """
    pass


class ValidationError(DataError):
    """Raised when a pre-check fails. No exchange interaction has happened."""

    def __init__(self, message: str, *, symbol: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol
        self.field = field


class OrderExecutionError(DataError):
    """Raised when the exchange rejects an order (business logic rejection).

    Examples: insufficient margin, min notional not met, symbol not tradeable.
    """

    def __init__(self, message: str, *, symbol: Optional[str] = None, order_id: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol
        self.order_id = order_id


# ============ CONFIGURATION (startup) ============

class ConfigurationError(MirrorError):
    """Invalid or missing configuration."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(message)
        self.config_key = config_key


def describe_error(error: Any) -> str:
    """Normalize any raised value into a message string.

    Exceptions with an empty message fall back to their class name so the
    caller never receives a blank error.
    """
    if isinstance(error, BaseException):
        message = str(error)
        return message if message else type(error).__name__
    if error is None:
        return "Unknown error"
    return str(error)
