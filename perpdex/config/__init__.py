"""
perpdex Configuration

Loads all sections of config.toml.
Environment variables override TOML values.
"""

from .loader import (
    PerpDexConfig,
    ClearingHouseConfig,
    ExchangeConfig,
    FundingConfig,
    OracleConfig,
    LoggingConfig,
    load_config,
)

__all__ = [
    "PerpDexConfig",
    "ClearingHouseConfig",
    "ExchangeConfig",
    "FundingConfig",
    "OracleConfig",
    "LoggingConfig",
    "load_config",
]
