"""
perpdex TOML Configuration Loader

Loads every section of config.toml with environment variable overrides.

Environment variable mapping:
    [clearing_house] max_markets_per_account -> PERPDEX_MAX_MARKETS_PER_ACCOUNT
    [exchange] fee_ratio                     -> PERPDEX_FEE_RATIO
    [logging] level                          -> PERPDEX_LOG_LEVEL
    ...

Ratios are integers in parts per million (1_000_000 = 100%).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # type: ignore[no-redef]

from ..constants import (
    DEFAULT_DUST_POSITION_SIZE,
    DEFAULT_FEE_RATIO,
    DEFAULT_FUNDING_PERIOD,
    DEFAULT_IM_RATIO,
    DEFAULT_INSURANCE_FUND_FEE_RATIO,
    DEFAULT_MAX_FUNDING_RATE,
    DEFAULT_MAX_MARKETS_PER_ACCOUNT,
    DEFAULT_TICK_SPACING,
    DEFAULT_TWAP_INTERVAL,
    LOG_FILE_PATH,
    RATIO_ONE,
)
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# ---------------------------------------------------------------------------
# Section dataclasses, one per [section] of config.example.toml
# ---------------------------------------------------------------------------


@dataclass
class ClearingHouseConfig:
    """[clearing_house] section."""
    max_markets_per_account: int = DEFAULT_MAX_MARKETS_PER_ACCOUNT
    im_ratio: int = DEFAULT_IM_RATIO
    dust_position_size: int = DEFAULT_DUST_POSITION_SIZE
    twap_interval: int = DEFAULT_TWAP_INTERVAL

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClearingHouseConfig":
        return cls(
            max_markets_per_account=data.get("max_markets_per_account", DEFAULT_MAX_MARKETS_PER_ACCOUNT),
            im_ratio=data.get("im_ratio", DEFAULT_IM_RATIO),
            dust_position_size=data.get("dust_position_size", DEFAULT_DUST_POSITION_SIZE),
            twap_interval=data.get("twap_interval", DEFAULT_TWAP_INTERVAL),
        )

    def apply_env(self) -> None:
        """Override from environment variables."""
        if v := os.environ.get("PERPDEX_MAX_MARKETS_PER_ACCOUNT"):
            self.max_markets_per_account = int(v)
        if v := os.environ.get("PERPDEX_IM_RATIO"):
            self.im_ratio = int(v)
        if v := os.environ.get("PERPDEX_DUST_POSITION_SIZE"):
            self.dust_position_size = int(v)
        if v := os.environ.get("PERPDEX_TWAP_INTERVAL"):
            self.twap_interval = int(v)


@dataclass
class ExchangeConfig:
    """[exchange] section, defaults for newly added markets."""
    fee_ratio: int = DEFAULT_FEE_RATIO
    insurance_fund_fee_ratio: int = DEFAULT_INSURANCE_FUND_FEE_RATIO
    tick_spacing: int = DEFAULT_TICK_SPACING

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExchangeConfig":
        return cls(
            fee_ratio=data.get("fee_ratio", DEFAULT_FEE_RATIO),
            insurance_fund_fee_ratio=data.get("insurance_fund_fee_ratio", DEFAULT_INSURANCE_FUND_FEE_RATIO),
            tick_spacing=data.get("tick_spacing", DEFAULT_TICK_SPACING),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("PERPDEX_FEE_RATIO"):
            self.fee_ratio = int(v)
        if v := os.environ.get("PERPDEX_INSURANCE_FUND_FEE_RATIO"):
            self.insurance_fund_fee_ratio = int(v)
        if v := os.environ.get("PERPDEX_TICK_SPACING"):
            self.tick_spacing = int(v)


@dataclass
class FundingConfig:
    """[funding] section."""
    funding_period: int = DEFAULT_FUNDING_PERIOD
    max_funding_rate: int = DEFAULT_MAX_FUNDING_RATE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FundingConfig":
        return cls(
            funding_period=data.get("funding_period", DEFAULT_FUNDING_PERIOD),
            max_funding_rate=data.get("max_funding_rate", DEFAULT_MAX_FUNDING_RATE),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("PERPDEX_FUNDING_PERIOD"):
            self.funding_period = int(v)
        if v := os.environ.get("PERPDEX_MAX_FUNDING_RATE"):
            self.max_funding_rate = int(v)


@dataclass
class OracleConfig:
    """[oracle] section. ``max_price_change`` of 0 disables outlier rejection."""
    max_price_change: Decimal = Decimal("0.50")
    max_observations: int = 8640

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OracleConfig":
        return cls(
            max_price_change=Decimal(str(data.get("max_price_change", "0.50"))),
            max_observations=data.get("max_observations", 8640),
        )


@dataclass
class LoggingConfig:
    """[logging] section."""
    level: str = "INFO"
    console_output: bool = True
    file_output: bool = False
    file_path: str = LOG_FILE_PATH

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingConfig":
        return cls(
            level=str(data.get("level", "INFO")).upper(),
            console_output=data.get("console_output", True),
            file_output=data.get("file_output", False),
            file_path=data.get("file_path", LOG_FILE_PATH),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("PERPDEX_LOG_LEVEL"):
            self.level = v.upper()


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------

@dataclass
class PerpDexConfig:
    """
    Unified perpdex configuration.

    Loads every section of config.toml and applies environment variable
    overrides.
    """
    clearing_house: ClearingHouseConfig = field(default_factory=ClearingHouseConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    funding: FundingConfig = field(default_factory=FundingConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # --- factories --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PerpDexConfig":
        """Create a config from a parsed TOML dict."""
        return cls(
            clearing_house=ClearingHouseConfig.from_dict(data.get("clearing_house", {})),
            exchange=ExchangeConfig.from_dict(data.get("exchange", {})),
            funding=FundingConfig.from_dict(data.get("funding", {})),
            oracle=OracleConfig.from_dict(data.get("oracle", {})),
            logging=LoggingConfig.from_dict(data.get("logging", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "PerpDexConfig":
        """
        Load configuration from a TOML file.

        A missing file is not an error: defaults (plus env overrides) are used.
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        with open(path, "rb") as f:
            try:
                raw = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.clearing_house.apply_env()
        self.exchange.apply_env()
        self.funding.apply_env()
        self.logging.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Raises:
            ConfigurationError: on invalid config
        """
        for name, value in (
            ("clearing_house.im_ratio", self.clearing_house.im_ratio),
            ("exchange.fee_ratio", self.exchange.fee_ratio),
            ("exchange.insurance_fund_fee_ratio", self.exchange.insurance_fund_fee_ratio),
            ("funding.max_funding_rate", self.funding.max_funding_rate),
        ):
            if not 0 <= value < RATIO_ONE:
                raise ConfigurationError(f"{name} must be in [0, {RATIO_ONE}), got {value}")
        if self.clearing_house.max_markets_per_account < 0:
            raise ConfigurationError("max_markets_per_account must be >= 0")
        if self.clearing_house.dust_position_size < 0:
            raise ConfigurationError("dust_position_size must be >= 0")
        if self.clearing_house.twap_interval < 0:
            raise ConfigurationError("twap_interval must be >= 0")
        if self.exchange.tick_spacing <= 0:
            raise ConfigurationError("tick_spacing must be > 0")
        if self.funding.funding_period <= 0:
            raise ConfigurationError("funding_period must be > 0")
        if self.oracle.max_price_change < 0:
            raise ConfigurationError("max_price_change must be >= 0")
        if self.logging.level not in LOG_LEVELS:
            raise ConfigurationError(f"Invalid log level: {self.logging.level}")
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics)."""
        return {
            "clearing_house": {
                "max_markets_per_account": self.clearing_house.max_markets_per_account,
                "im_ratio": self.clearing_house.im_ratio,
                "dust_position_size": self.clearing_house.dust_position_size,
                "twap_interval": self.clearing_house.twap_interval,
            },
            "exchange": {
                "fee_ratio": self.exchange.fee_ratio,
                "insurance_fund_fee_ratio": self.exchange.insurance_fund_fee_ratio,
                "tick_spacing": self.exchange.tick_spacing,
            },
            "funding": {
                "funding_period": self.funding.funding_period,
                "max_funding_rate": self.funding.max_funding_rate,
            },
            "oracle": {
                "max_price_change": str(self.oracle.max_price_change),
                "max_observations": self.oracle.max_observations,
            },
            "logging": {
                "level": self.logging.level,
                "console_output": self.logging.console_output,
                "file_output": self.logging.file_output,
                "file_path": self.logging.file_path,
            },
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> PerpDexConfig:
    """
    Load and validate perpdex configuration.

    Resolution order:
        1. Explicit *path* argument
        2. PERPDEX_CONFIG env var
        3. ./config.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("PERPDEX_CONFIG", "config.toml")

    cfg = PerpDexConfig.from_file(path)
    cfg.validate()
    return cfg
