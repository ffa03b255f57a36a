"""
perpdex Exceptions

Exception taxonomy for the settlement core. Every failure aborts the whole
operation; ``transient`` tells callers whether a retry against fresh state
could succeed.
"""


class PerpDexError(Exception):
    """Base exception for perpdex."""
    transient = False


class InvalidInput(PerpDexError, ValueError):
    """Zero amount, unknown market, malformed range or missing order."""
    pass


class SlippageExceeded(PerpDexError):
    """Min/max amount bound violated."""
    transient = True


class PriceLimitReached(SlippageExceeded):
    """Price limit violated or hit before anything could be filled."""
    pass


class InsufficientLiquidity(PerpDexError):
    """Pool or order cannot supply the requested amount."""
    transient = True


class InsufficientCollateral(PerpDexError):
    """Free collateral would be negative."""
    pass


class MarketLimitExceeded(PerpDexError):
    """Account would exceed its simultaneous market limit."""
    pass


class DeadlineExpired(PerpDexError):
    """Operation submitted after its deadline."""
    transient = True


class NumericOverflow(PerpDexError):
    """Fixed-point arithmetic left the 256-bit range."""
    pass


class ReentrancyDetected(PerpDexError):
    """Nested entry into an operation that is still in flight."""
    pass


class ConfigurationError(PerpDexError, ValueError):
    """Invalid configuration value."""
    pass
