"""
Test suite for perpdex virtual pools

Covers:
  - Pool creation & registry
  - Mint / burn over ranges, tick bookkeeping
  - Swaps: exact input / output, price limits, tick crossing
  - Snapshot / restore
"""

import pytest

from perpdex.constants import Q96, WEI
from perpdex.exceptions import InvalidInput, PriceLimitReached
from perpdex.exchange.amm import PoolManager
from perpdex.exchange.tick_math import (
    encode_price_sqrt,
    get_max_tick,
    get_min_tick,
    get_sqrt_ratio_at_tick,
)

MARKET = "ETH"
SPACING = 60
MIN_T = get_min_tick(SPACING)
MAX_T = get_max_tick(SPACING)


@pytest.fixture
def manager():
    return PoolManager()


@pytest.fixture
def pool(manager):
    return manager.create_pool(MARKET, encode_price_sqrt(1), SPACING)


class TestPoolManager:

    def test_create_pool(self, manager, pool):
        assert manager.has_pool(MARKET)
        assert manager.pool_count == 1
        assert pool.tick == 0
        assert pool.sqrt_price_x96 == Q96
        assert pool.liquidity == 0

    def test_duplicate_pool(self, manager, pool):
        with pytest.raises(InvalidInput, match="already exists"):
            manager.create_pool(MARKET, Q96, SPACING)

    def test_unknown_market(self, manager):
        with pytest.raises(InvalidInput, match="Unknown market"):
            manager.get_pool("BTC")

    def test_bad_spacing(self, manager):
        with pytest.raises(InvalidInput, match="tick_spacing"):
            manager.create_pool("BTC", Q96, 0)

    def test_snapshot_restore_in_place(self, manager, pool):
        snapshot = manager.snapshot([MARKET])
        pool.mint(MIN_T, MAX_T, 10 * WEI)
        pool.swap(True, WEI, 0)
        manager.restore(snapshot)
        assert manager.get_pool(MARKET) is pool
        assert pool.sqrt_price_x96 == Q96
        assert pool.liquidity == 0
        assert pool.state.initialized_ticks == []

    def test_snapshot_covers_only_named_markets(self, manager, pool):
        other = manager.create_pool("BTC", Q96, SPACING)
        snapshot = manager.snapshot([MARKET])
        assert list(snapshot) == [MARKET]
        other.mint(MIN_T, MAX_T, 10 * WEI)
        manager.restore(snapshot)
        assert other.liquidity == 10 * WEI


class TestLiquidity:

    def test_mint_in_range(self, pool):
        base, quote, flipped_lower, flipped_upper = pool.mint(MIN_T, MAX_T, 10 * WEI)
        assert flipped_lower and flipped_upper
        assert pool.liquidity == 10 * WEI
        # price 1: both sides roughly equal to L
        assert base == pytest.approx(10 * WEI, rel=1e-12)
        assert quote == pytest.approx(10 * WEI, rel=1e-12)

    def test_mint_above_price_is_base_only(self, pool):
        base, quote, _, _ = pool.mint(60, 120, WEI)
        assert base > 0
        assert quote == 0
        assert pool.liquidity == 0
        assert pool.is_tick_initialized(60)

    def test_mint_below_price_is_quote_only(self, pool):
        base, quote, _, _ = pool.mint(-120, -60, WEI)
        assert base == 0
        assert quote > 0

    def test_shared_tick_not_flipped_twice(self, pool):
        pool.mint(-60, 60, WEI)
        _, _, flipped_lower, flipped_upper = pool.mint(-60, 120, WEI)
        assert not flipped_lower
        assert flipped_upper
        assert pool.state.ticks[-60].liquidity_gross == 2 * WEI

    def test_burn_clears_ticks(self, pool):
        pool.mint(-60, 60, WEI)
        base, quote, flipped_lower, flipped_upper = pool.burn(-60, 60, WEI)
        assert flipped_lower and flipped_upper
        assert pool.liquidity == 0
        assert not pool.is_tick_initialized(-60)
        assert pool.state.initialized_ticks == []

    def test_burn_returns_no_more_than_minted(self, pool):
        minted_base, minted_quote, _, _ = pool.mint(-600, 600, 7 * WEI + 3)
        base, quote, _, _ = pool.burn(-600, 600, 7 * WEI + 3)
        assert base <= minted_base
        assert quote <= minted_quote

    def test_invalid_ranges(self, pool):
        with pytest.raises(InvalidInput, match="tick_lower must be < tick_upper"):
            pool.mint(60, 60, WEI)
        with pytest.raises(InvalidInput, match="multiples"):
            pool.mint(-50, 60, WEI)
        with pytest.raises(InvalidInput, match="out of range"):
            pool.mint(-887280, 60, WEI)
        with pytest.raises(InvalidInput, match="positive"):
            pool.mint(-60, 60, 0)


class TestSwap:

    def test_exact_input_consumes_amount(self, pool):
        pool.mint(MIN_T, MAX_T, 100 * WEI)
        result = pool.swap(zero_for_one=True, amount_specified=WEI, sqrt_price_limit_x96=0)
        assert result.amount_in == WEI
        assert 0 < result.amount_out < WEI
        assert pool.sqrt_price_x96 < Q96
        assert result.tick_after < 0

    def test_exact_output_receives_amount(self, pool):
        pool.mint(MIN_T, MAX_T, 100 * WEI)
        result = pool.swap(zero_for_one=False, amount_specified=-WEI, sqrt_price_limit_x96=0)
        assert result.amount_out == WEI
        assert result.amount_in > WEI
        assert pool.sqrt_price_x96 > Q96

    def test_fee_is_part_of_input(self, pool):
        pool.mint(MIN_T, MAX_T, 100 * WEI)
        result = pool.swap(False, WEI, 0, fee_pips=10000)
        assert result.amount_in == WEI
        assert result.fee_amount == WEI // 100

    def test_price_limit_wrong_side(self, pool):
        pool.mint(MIN_T, MAX_T, 100 * WEI)
        with pytest.raises(PriceLimitReached, match="below the current price"):
            pool.swap(True, WEI, Q96)
        with pytest.raises(PriceLimitReached, match="above the current price"):
            pool.swap(False, WEI, Q96 - 1)

    def test_stops_at_price_limit(self, pool):
        pool.mint(MIN_T, MAX_T, 10 * WEI)
        limit = get_sqrt_ratio_at_tick(-30)
        result = pool.swap(True, 1000 * WEI, limit)
        assert result.sqrt_price_after_x96 == limit
        assert result.amount_in < 1000 * WEI

    def test_crossing_tick_activates_liquidity(self, pool):
        pool.mint(MIN_T, MAX_T, 10 * WEI)
        pool.mint(60, 600, 5 * WEI)
        crossed = []

        def on_step(step):
            if step.crossed_tick is not None:
                crossed.append(step.crossed_tick)

        limit = get_sqrt_ratio_at_tick(120)
        pool.swap(False, 1000 * WEI, limit, on_step=on_step)
        assert crossed == [60]
        assert pool.tick == 120
        assert pool.liquidity == 15 * WEI

    def test_crossing_back_deactivates_liquidity(self, pool):
        pool.mint(MIN_T, MAX_T, 10 * WEI)
        pool.mint(60, 600, 5 * WEI)
        pool.swap(False, 1000 * WEI, get_sqrt_ratio_at_tick(120))
        pool.swap(True, 1000 * WEI, get_sqrt_ratio_at_tick(-60))
        assert pool.liquidity == 10 * WEI
        assert pool.tick == -60

    def test_zero_amount_rejected(self, pool):
        with pytest.raises(InvalidInput, match="non-zero"):
            pool.swap(True, 0, 0)
