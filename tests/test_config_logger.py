"""
Test suite for perpdex configuration and logging

Covers:
  - TOML loading, defaults, missing / malformed files
  - Environment variable overrides
  - Validation errors
  - Log format validation, output sanitizing, logger configuration
"""

import logging
from decimal import Decimal

import pytest

from perpdex.config import PerpDexConfig, load_config
from perpdex.constants import DEFAULT_FEE_RATIO, DEFAULT_TICK_SPACING, LOG_FORMAT, EnvSetting
from perpdex.exceptions import ConfigurationError
from perpdex.exchange.clearing_house import ClearingHouse
from perpdex.logger import (
    TerminalSafeFormatter,
    configure_logging,
    get_logger,
    is_configured,
    validate_date_format,
    validate_log_format,
)

SAMPLE_TOML = """
[clearing_house]
max_markets_per_account = 3
im_ratio = 200000

[exchange]
fee_ratio = 3000
tick_spacing = 10

[funding]
funding_period = 3600

[oracle]
max_price_change = "0.25"

[logging]
level = "debug"
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "PERPDEX_CONFIG",
        "PERPDEX_FEE_RATIO",
        "PERPDEX_LOG_LEVEL",
        "PERPDEX_MAX_MARKETS_PER_ACCOUNT",
        "PERPDEX_FUNDING_PERIOD",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(SAMPLE_TOML)
    return path


# ============================================================================
# Loading
# ============================================================================

class TestLoading:

    def test_defaults(self):
        config = PerpDexConfig()
        assert config.exchange.fee_ratio == DEFAULT_FEE_RATIO
        assert config.exchange.tick_spacing == DEFAULT_TICK_SPACING
        assert config.clearing_house.max_markets_per_account == 0
        assert config.oracle.max_price_change == Decimal("0.50")
        assert config.validate()

    def test_from_file(self, config_file):
        config = PerpDexConfig.from_file(str(config_file))
        assert config.clearing_house.max_markets_per_account == 3
        assert config.clearing_house.im_ratio == 200000
        assert config.exchange.fee_ratio == 3000
        assert config.exchange.tick_spacing == 10
        assert config.funding.funding_period == 3600
        assert config.oracle.max_price_change == Decimal("0.25")
        assert config.logging.level == "DEBUG"
        # untouched keys keep their defaults
        assert config.funding.max_funding_rate == 100000

    def test_missing_file_uses_defaults(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING, logger="perpdex.config.loader"):
            config = PerpDexConfig.from_file(str(tmp_path / "missing.toml"))
        assert config == PerpDexConfig()
        assert "Config file not found" in caplog.text

    def test_malformed_file(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("[exchange\nfee_ratio = ")
        with pytest.raises(ConfigurationError, match="Invalid TOML"):
            PerpDexConfig.from_file(str(path))

    def test_env_overrides_file(self, config_file, monkeypatch):
        monkeypatch.setenv("PERPDEX_FEE_RATIO", "2500")
        monkeypatch.setenv("PERPDEX_LOG_LEVEL", "warning")
        config = PerpDexConfig.from_file(str(config_file))
        assert config.exchange.fee_ratio == 2500
        assert config.logging.level == "WARNING"
        assert config.exchange.tick_spacing == 10

    def test_load_config_from_env_path(self, config_file, monkeypatch):
        monkeypatch.setenv("PERPDEX_CONFIG", str(config_file))
        assert load_config().exchange.fee_ratio == 3000

    def test_load_config_validates(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[exchange]\nfee_ratio = 1000000\n")
        with pytest.raises(ConfigurationError, match="exchange.fee_ratio"):
            load_config(str(path))

    def test_to_dict_round_trip(self, config_file):
        config = PerpDexConfig.from_file(str(config_file))
        assert PerpDexConfig.from_dict(config.to_dict()) == config


class TestValidation:

    @pytest.mark.parametrize("section, key, value, message", [
        ("clearing_house", "im_ratio", 1_000_000, "clearing_house.im_ratio"),
        ("exchange", "insurance_fund_fee_ratio", -1, "insurance_fund_fee_ratio"),
        ("funding", "max_funding_rate", 2_000_000, "funding.max_funding_rate"),
        ("exchange", "tick_spacing", 0, "tick_spacing must be > 0"),
        ("funding", "funding_period", 0, "funding_period must be > 0"),
        ("clearing_house", "max_markets_per_account", -1, "max_markets_per_account"),
        ("logging", "level", "LOUD", "Invalid log level"),
    ])
    def test_invalid_values(self, section, key, value, message):
        config = PerpDexConfig()
        setattr(getattr(config, section), key, value)
        with pytest.raises(ConfigurationError, match=message):
            config.validate()

    def test_clearing_house_rejects_invalid_config(self):
        config = PerpDexConfig()
        config.exchange.fee_ratio = 1_000_000
        with pytest.raises(ConfigurationError):
            ClearingHouse(config)

    def test_configuration_error_is_value_error(self):
        assert issubclass(ConfigurationError, ValueError)


# ============================================================================
# Logging
# ============================================================================

class TestLogger:

    def test_valid_format_is_kept(self):
        fmt = "%(levelname)s %(name)s: %(message)s"
        assert validate_log_format(fmt) == fmt

    def test_malformed_format_falls_back(self, capsys):
        assert validate_log_format("(message)s") == LOG_FORMAT.default()
        assert "invalid log format" in capsys.readouterr().err

    def test_date_format(self, capsys):
        assert validate_date_format("%Y-%m-%d") == "%Y-%m-%d"
        assert validate_date_format("yesterday") == "%Y-%m-%dT%H:%M:%S"
        assert "invalid date format" in capsys.readouterr().err

    def test_sanitize_strips_escapes(self):
        assert TerminalSafeFormatter.sanitize("\x1b[31mmarket=ETH\x1b[0m\r\x07") == "market=ETH"
        assert TerminalSafeFormatter.sanitize("tab\tand\nnewline") == "tab\tand\nnewline"

    def test_get_logger(self, restore_root_logger):
        logger = get_logger("perpdex.tests")
        assert isinstance(logger, logging.Logger)
        assert logger.name == "perpdex.tests"
        assert is_configured()

    def test_console_handler_replaces_previous_ones(self, restore_root_logger):
        configure_logging(log_level="warning")
        configure_logging(log_level="warning")
        assert len(restore_root_logger.handlers) == 1
        assert restore_root_logger.level == logging.WARNING
        assert isinstance(restore_root_logger.handlers[0].formatter, TerminalSafeFormatter)

    def test_file_output(self, tmp_path, restore_root_logger):
        log_file = tmp_path / "logs" / "perpdex.log"
        configure_logging(log_level="DEBUG", log_file=log_file, console_output=False, file_output=True)
        assert restore_root_logger.level == logging.DEBUG

        logging.getLogger("perpdex.tests").debug("order placed for \x1b[31mmallory\x1b[0m")
        for handler in restore_root_logger.handlers:
            handler.flush()
        content = log_file.read_text(encoding="utf-8")
        assert "order placed for mallory" in content
        assert "\x1b" not in content

    def test_env_setting_keeps_default(self):
        setting = EnvSetting("PERPDEX_TEST_UNSET_SETTING", "False")
        assert setting == "False"
        assert setting.default() == "False"
        assert setting.key == "PERPDEX_TEST_UNSET_SETTING"
        assert not setting.enabled()
        assert EnvSetting("PERPDEX_TEST_UNSET_SETTING", " true ").enabled()
