"""
perpdex constants

Fixed-point scales and protocol defaults, plus the logging settings that a
``.env`` file in the working directory may override.
"""
from dotenv import dotenv_values

# ==================================================================================
# LOGGING (overridable from .env)
# ==================================================================================
_dotenv = dotenv_values(".env")


class EnvSetting(str):
    """
    A logging setting read from ``.env`` that remembers its built-in default.
    """
    def __new__(cls, key, default):
        value = _dotenv.get(key)
        obj = str.__new__(cls, default if value is None else value)
        obj.key = key
        obj._default = default
        return obj

    def default(self):
        return self._default

    def enabled(self):
        return self.strip().casefold() in {"true", "1", "yes", "on"}


LOG_LEVEL = EnvSetting("LOG_LEVEL", "INFO")
LOG_FORMAT = EnvSetting("LOG_FORMAT", "%(asctime)s - %(levelname)s - %(name)s - %(message)s")
LOG_DATE_FORMAT = EnvSetting("LOG_DATE_FORMAT", "%Y-%m-%dT%H:%M:%S")
LOG_CONSOLE_HIGHLIGHTING = EnvSetting("LOG_CONSOLE_HIGHLIGHTING", "True")
LOG_FILE_PATH = "logs/perpdex.log"
LOG_MAX_FILE_SIZE = 10 * 1024 * 1024 # 10MB
LOG_BACKUP_COUNT = 5


# ==================================================================================
# FIXED-POINT SCALES
# ==================================================================================
WEI = 10 ** 18  # 18-decimal base and quote amounts
RATIO_ONE = 1_000_000  # ratios are expressed in parts per million
Q96 = 2 ** 96
Q128 = 2 ** 128
MAX_UINT256 = 2 ** 256 - 1


# ==================================================================================
# EXCHANGE DEFAULTS
# ==================================================================================
DEFAULT_FEE_RATIO = 1_000  # 0.1% exchange fee, charged in quote
DEFAULT_INSURANCE_FUND_FEE_RATIO = 100_000  # 10% of every fee goes to the insurance fund
DEFAULT_TICK_SPACING = 60


# ==================================================================================
# CLEARING HOUSE DEFAULTS
# ==================================================================================
DEFAULT_IM_RATIO = 100_000  # 10% initial margin
DEFAULT_MAX_MARKETS_PER_ACCOUNT = 0  # 0 = unlimited
DEFAULT_DUST_POSITION_SIZE = 100  # wei
DEFAULT_TWAP_INTERVAL = 0  # seconds, 0 = latest index price
INSURANCE_FUND_ADDRESS = 'insurance-fund'


# ==================================================================================
# FUNDING DEFAULTS
# ==================================================================================
DEFAULT_FUNDING_PERIOD = 24 * 60 * 60
DEFAULT_MAX_FUNDING_RATE = 100_000  # premium capped at 10% of index per period

