"""Shared fixtures: a manual clock and clearing-house factories."""

import logging

import pytest

from perpdex.cli.simulate import ManualClock
from perpdex.config import PerpDexConfig
from perpdex.exchange.clearing_house import AddLiquidityParams, ClearingHouse
from perpdex.exchange.tick_math import get_max_tick, get_min_tick, to_wei

START_TIME = 1_700_000_000.0


@pytest.fixture
def clock():
    return ManualClock(START_TIME)


@pytest.fixture
def make_clearing_house(clock):
    """Build a clearing house; keyword arguments override [clearing_house] values."""

    def _make(**overrides):
        config = PerpDexConfig()
        for key, value in overrides.items():
            setattr(config.clearing_house, key, value)
        return ClearingHouse(config, clock=clock)

    return _make


def add_full_range_liquidity(ch, trader, market, base, quote):
    """Add ``base``/``quote`` (token units) over the full range of ``market``."""
    spacing = ch.pool_manager.get_pool(market).state.tick_spacing
    return ch.add_liquidity(trader, AddLiquidityParams(
        market=market,
        base=to_wei(base),
        quote=to_wei(quote),
        lower_tick=get_min_tick(spacing),
        upper_tick=get_max_tick(spacing),
    ))


@pytest.fixture
def restore_root_logger():
    """Put the root logger back the way it was; logging setup replaces its handlers."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
