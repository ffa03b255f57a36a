"""
perpdex Settlement Package

Core imports are lazily loaded to keep ``import perpdex`` cheap.
For direct module access, import from submodules:

    from perpdex.exchange import ClearingHouse, OpenPositionParams
    from perpdex.config import load_config
    from perpdex.exceptions import InsufficientCollateral
"""

__version__ = "0.1.0"


def __getattr__(name):
    """Lazy module loading."""
    if name == 'ClearingHouse':
        from .exchange.clearing_house import ClearingHouse
        return ClearingHouse
    elif name == 'load_config':
        from .config import load_config
        return load_config
    elif name == 'PerpDexError':
        from .exceptions import PerpDexError
        return PerpDexError
    raise AttributeError(f"module 'perpdex' has no attribute {name!r}")

__all__ = ['ClearingHouse', 'load_config', 'PerpDexError']
