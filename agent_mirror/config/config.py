"""
Configuration models for the agent position mirror.

Uses Pydantic for validation and type safety.
"""
from typing import Dict, List, Literal, Mapping, Optional
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
from decimal import Decimal, InvalidOperation
import os
import re

from agent_mirror.exceptions import ConfigurationError

_ENV_PATTERN = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

# Quantity decimals accepted by Binance USDⓈ-M for the coins the agents trade
DEFAULT_QUANTITY_PRECISION: Dict[str, int] = {
    "BTC": 3,
    "ETH": 3,
    "BNB": 2,
    "XRP": 1,
    "ADA": 0,
    "DOGE": 0,
    "SOL": 2,
    "AVAX": 2,
    "DOT": 2,
    "LINK": 2,
    "UNI": 2,
    "MATIC": 1,
}


class ExchangeConfig(BaseSettings):
    """Exchange configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "binanceusdm"

    # Credentials (loaded from env or yaml)
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    use_testnet: bool = False

    request_timeout_ms: int = Field(default=30000, ge=1000, le=120000)
    recv_window_ms: int = Field(default=60000, ge=1000, le=60000, description="Binance recvWindow for signed calls")

    quantity_precision: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_QUANTITY_PRECISION))
    default_quantity_precision: int = Field(default=3, ge=0, le=8)

    @field_validator("api_key", "api_secret", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        # Unset ${VAR} placeholders survive substitution verbatim
        if isinstance(v, str) and (not v.strip() or v.startswith("$")):
            return None
        return v

    @field_validator("use_testnet", mode="before")
    @classmethod
    def unset_testnet(cls, v):
        if isinstance(v, str) and (not v.strip() or v.startswith("$")):
            return False
        return v

    def precision_for(self, base_asset: str) -> int:
        return self.quantity_precision.get(base_asset.upper(), self.default_quantity_precision)


class AgentFeedConfig(BaseSettings):
    """Agent position feed (nof1 account-totals API)."""
    model_config = SettingsConfigDict(extra="ignore")

    base_url: str = "https://nof1.ai/api"
    timeout_seconds: float = Field(default=30.0, gt=0, le=300.0)
    cache_ttl_seconds: float = Field(default=60.0, ge=0, le=3600.0)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0, le=30.0)
    initial_marker_time: str = "2025-10-17T22:30:00Z"

    @field_validator("base_url", mode="before")
    @classmethod
    def default_unset_url(cls, v):
        if not v or (isinstance(v, str) and v.startswith("$")):
            return "https://nof1.ai/api"
        return v.rstrip("/")


class RiskConfig(BaseSettings):
    """Price tolerance gate configuration (values are percentages)."""
    model_config = SettingsConfigDict(extra="ignore")

    default_price_tolerance: float = Field(default=1.0, gt=0, description="Max entry/current price drift in percent")
    symbol_tolerances: Dict[str, float] = Field(default_factory=dict)

    @field_validator("symbol_tolerances")
    @classmethod
    def positive_tolerances(cls, v: Dict[str, float]) -> Dict[str, float]:
        for symbol, tolerance in v.items():
            if tolerance <= 0:
                raise ValueError(f"Price tolerance for {symbol} must be positive")
        return {symbol.upper(): tolerance for symbol, tolerance in v.items()}

    def apply_env_overrides(self, environ: Optional[Mapping[str, str]] = None) -> None:
        """
        Apply PRICE_TOLERANCE and <SYMBOL>_TOLERANCE variables.

        Values that are not positive numbers are ignored.
        """
        environ = os.environ if environ is None else environ

        default = _positive_number(environ.get("PRICE_TOLERANCE"))
        if default is not None:
            self.default_price_tolerance = default

        for key, raw in environ.items():
            if not key.endswith("_TOLERANCE") or key == "PRICE_TOLERANCE":
                continue
            symbol = key[: -len("_TOLERANCE")]
            tolerance = _positive_number(raw)
            if symbol and tolerance is not None:
                self.symbol_tolerances[symbol.upper()] = tolerance

    def tolerance_for(self, symbol: Optional[str] = None) -> Decimal:
        if symbol and symbol.upper() in self.symbol_tolerances:
            return Decimal(str(self.symbol_tolerances[symbol.upper()]))
        return Decimal(str(self.default_price_tolerance))


class ExecutionConfig(BaseSettings):
    """Order execution configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    close_verify_attempts: int = Field(default=3, ge=1, le=20)
    close_verify_delay_seconds: float = Field(default=2.0, ge=0, le=60.0)
    protective_orders_enabled: bool = True
    clean_orphaned_orders: bool = True


class FollowConfig(BaseSettings):
    """Follow loop configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    interval_seconds: float = Field(default=30.0, ge=1.0, le=3600.0)
    total_margin: Optional[float] = Field(default=None, ge=0, description="Global margin budget in USDT")
    agents: List[str] = Field(default_factory=list)


class LedgerConfig(BaseSettings):
    """Order ledger persistence configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: str = "sqlite:///data/order_history.db"
    retention_days: int = Field(default=30, ge=1, le=3650)


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None

    @field_validator("log_file", mode="before")
    @classmethod
    def blank_log_file(cls, v):
        if isinstance(v, str) and (not v.strip() or v.startswith("$")):
            return None
        return v


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    agent_feed: AgentFeedConfig = Field(default_factory=AgentFeedConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    follow: FollowConfig = Field(default_factory=FollowConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "test", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise ConfigurationError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        expanded_content = _ENV_PATTERN.sub(replace_match, raw_content)
        try:
            config_dict = yaml.safe_load(expanded_content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {yaml_path}: {e}") from e

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("LEDGER_DATABASE_URL")
        if db_url:
            config_dict.setdefault("ledger", {})["database_url"] = db_url

        return cls._build(config_dict)

    @classmethod
    def _build(cls, config_dict: dict) -> "Config":
        try:
            config = cls(**config_dict)
        except ValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            key = ".".join(str(p) for p in first.get("loc", ()))
            raise ConfigurationError(f"Invalid configuration: {e}", config_key=key or None) from e

        config.risk.apply_env_overrides()
        return config


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses agent_mirror/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        ConfigurationError: If the file is missing or validation fails
    """
    from agent_mirror.config.dotenv_loader import load_dotenv_files

    load_dotenv_files()

    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    return Config.from_yaml(config_path)


def _positive_number(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        value = Decimal(raw.strip())
    except (InvalidOperation, AttributeError):
        return None
    if not value.is_finite() or value <= 0:
        return None
    return float(value)
