"""
perpdex Virtual Concentrated-Liquidity Pool

Per-market virtual AMM holding no real tokens:
  - Concentrated liquidity (Uniswap V3 model): tick-based, Q64.96 sqrt-price
  - Integer-exact mint / burn with pool-favouring rounding
  - Tick-walking swap loop (exact input and exact output)
  - Sorted initialized-tick index for next-tick lookup
  - Per-step callback so fee accounting can run before each tick crossing

Fee-growth bookkeeping lives in the order book (see
``perpdex.exchange.orderbook``); the pool only moves price and liquidity.

Security features:
  - Reentrancy lock on swap + liquidity mutations
  - Price-limit validation on every swap
  - Liquidity overflow / underflow checks
"""

from __future__ import annotations

import bisect
import logging
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..exceptions import InvalidInput, PriceLimitReached, ReentrancyDetected
from .tick_math import (
    MAX_SQRT_RATIO,
    MAX_TICK,
    MIN_SQRT_RATIO,
    MIN_TICK,
    add_delta,
    compute_swap_step,
    get_amount0_delta,
    get_amount1_delta,
    get_sqrt_ratio_at_tick,
    get_tick_at_sqrt_ratio,
    sqrt_price_x96_to_price,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class TickInfo:
    """Liquidity info at a single tick boundary."""
    tick: int
    liquidity_gross: int = 0
    liquidity_net: int = 0

    @property
    def initialized(self) -> bool:
        return self.liquidity_gross > 0


@dataclass
class PoolState:
    """State of one market's virtual pool. token0 is base, token1 is quote."""
    market: str
    tick_spacing: int
    sqrt_price_x96: int = 0
    tick: int = 0
    liquidity: int = 0
    ticks: Dict[int, TickInfo] = field(default_factory=dict)
    initialized_ticks: List[int] = field(default_factory=list)

    @property
    def price(self):
        return sqrt_price_x96_to_price(self.sqrt_price_x96)


@dataclass
class SwapStep:
    """One iteration of the swap loop, reported before liquidity changes."""
    sqrt_price_start_x96: int
    sqrt_price_next_x96: int
    liquidity: int
    amount_in: int
    amount_out: int
    fee_amount: int
    crossed_tick: Optional[int] = None


@dataclass
class PoolSwapResult:
    """Totals of a pool swap. ``amount_in`` includes the curve fee."""
    zero_for_one: bool
    amount_in: int
    amount_out: int
    fee_amount: int
    sqrt_price_before_x96: int
    sqrt_price_after_x96: int
    tick_before: int
    tick_after: int
    steps: int


# ---------------------------------------------------------------------------
# Virtual Pool
# ---------------------------------------------------------------------------

class VirtualPool:
    """
    Single virtual concentrated-liquidity pool.

    Implements:
      - Initialize at a sqrt price
      - Mint / burn liquidity in [tick_lower, tick_upper)
      - Swap (exact-in / exact-out) with a price limit
    """

    def __init__(self, state: PoolState):
        self.state = state
        self._locked: bool = False

    # -- Reentrancy guard ---------------------------------------------------

    def _acquire_lock(self) -> None:
        if self._locked:
            raise ReentrancyDetected(f"Pool {self.state.market} is locked")
        self._locked = True

    def _release_lock(self) -> None:
        self._locked = False

    # -- Views --------------------------------------------------------------

    @property
    def market(self) -> str:
        return self.state.market

    @property
    def sqrt_price_x96(self) -> int:
        return self.state.sqrt_price_x96

    @property
    def tick(self) -> int:
        return self.state.tick

    @property
    def liquidity(self) -> int:
        return self.state.liquidity

    def is_tick_initialized(self, tick: int) -> bool:
        info = self.state.ticks.get(tick)
        return info is not None and info.initialized

    def validate_ticks(self, tick_lower: int, tick_upper: int) -> None:
        if tick_lower >= tick_upper:
            raise InvalidInput("tick_lower must be < tick_upper")
        if tick_lower < MIN_TICK or tick_upper > MAX_TICK:
            raise InvalidInput("Tick out of range")
        spacing = self.state.tick_spacing
        if tick_lower % spacing != 0 or tick_upper % spacing != 0:
            raise InvalidInput(f"Ticks must be multiples of tick_spacing ({spacing})")

    def next_initialized_tick(self, tick: int, lte: bool) -> Tuple[int, bool]:
        """
        Next initialized tick at or below ``tick`` (lte) or strictly above it.

        Falls back to MIN_TICK / MAX_TICK (uninitialized) when none exists.
        """
        ticks = self.state.initialized_ticks
        if lte:
            idx = bisect.bisect_right(ticks, tick) - 1
            if idx >= 0:
                return ticks[idx], True
            return MIN_TICK, False
        idx = bisect.bisect_right(ticks, tick)
        if idx < len(ticks):
            return ticks[idx], True
        return MAX_TICK, False

    # -- Liquidity ----------------------------------------------------------

    def mint(self, tick_lower: int, tick_upper: int, liquidity: int) -> Tuple[int, int, bool, bool]:
        """
        Add ``liquidity`` in [tick_lower, tick_upper).

        Returns:
            (base_owed, quote_owed, flipped_lower, flipped_upper), amounts rounded up
        """
        self.validate_ticks(tick_lower, tick_upper)
        if liquidity <= 0:
            raise InvalidInput("Liquidity amount must be positive")

        self._acquire_lock()
        try:
            flipped_lower = self._update_tick(tick_lower, liquidity, upper=False)
            flipped_upper = self._update_tick(tick_upper, liquidity, upper=True)
            base, quote = self.amounts_for_liquidity(tick_lower, tick_upper, liquidity, round_up=True)
            if tick_lower <= self.state.tick < tick_upper:
                self.state.liquidity = add_delta(self.state.liquidity, liquidity)
            return base, quote, flipped_lower, flipped_upper
        finally:
            self._release_lock()

    def burn(self, tick_lower: int, tick_upper: int, liquidity: int) -> Tuple[int, int, bool, bool]:
        """
        Remove ``liquidity`` from [tick_lower, tick_upper).

        Returns:
            (base_returned, quote_returned, flipped_lower, flipped_upper), amounts rounded down
        """
        self.validate_ticks(tick_lower, tick_upper)
        if liquidity <= 0:
            raise InvalidInput("Liquidity amount must be positive")

        self._acquire_lock()
        try:
            flipped_lower = self._update_tick(tick_lower, -liquidity, upper=False)
            flipped_upper = self._update_tick(tick_upper, -liquidity, upper=True)
            base, quote = self.amounts_for_liquidity(tick_lower, tick_upper, liquidity, round_up=False)
            if tick_lower <= self.state.tick < tick_upper:
                self.state.liquidity = add_delta(self.state.liquidity, -liquidity)
            return base, quote, flipped_lower, flipped_upper
        finally:
            self._release_lock()

    def amounts_for_liquidity(
        self, tick_lower: int, tick_upper: int, liquidity: int, round_up: bool = False
    ) -> Tuple[int, int]:
        """Base and quote backing ``liquidity`` in a range at the current price."""
        sqrt_lower = get_sqrt_ratio_at_tick(tick_lower)
        sqrt_upper = get_sqrt_ratio_at_tick(tick_upper)
        current = self.state.tick
        if current < tick_lower:
            return get_amount0_delta(sqrt_lower, sqrt_upper, liquidity, round_up), 0
        if current < tick_upper:
            sqrt_price = self.state.sqrt_price_x96
            return (
                get_amount0_delta(sqrt_price, sqrt_upper, liquidity, round_up),
                get_amount1_delta(sqrt_lower, sqrt_price, liquidity, round_up),
            )
        return 0, get_amount1_delta(sqrt_lower, sqrt_upper, liquidity, round_up)

    # -- Swap ---------------------------------------------------------------

    def swap(
        self,
        zero_for_one: bool,
        amount_specified: int,
        sqrt_price_limit_x96: int,
        fee_pips: int = 0,
        on_step: Optional[Callable[[SwapStep], None]] = None,
    ) -> PoolSwapResult:
        """
        Execute a swap on this pool.

        Args:
            zero_for_one: True if selling base (token0) for quote (token1)
            amount_specified: > 0 exact input, < 0 exact output
            sqrt_price_limit_x96: price beyond which the swap stops (0 = none)
            fee_pips: curve fee on the input side, in ppm
            on_step: called once per step, before any tick crossing is applied

        Raises:
            InvalidInput: zero amount
            PriceLimitReached: limit on the wrong side of the current price
        """
        if amount_specified == 0:
            raise InvalidInput("Swap amount must be non-zero")

        state = self.state
        if sqrt_price_limit_x96 == 0:
            sqrt_price_limit_x96 = MIN_SQRT_RATIO + 1 if zero_for_one else MAX_SQRT_RATIO - 1
        if zero_for_one:
            if not MIN_SQRT_RATIO < sqrt_price_limit_x96 < state.sqrt_price_x96:
                raise PriceLimitReached("Price limit must be below the current price")
        elif not state.sqrt_price_x96 < sqrt_price_limit_x96 < MAX_SQRT_RATIO:
            raise PriceLimitReached("Price limit must be above the current price")

        self._acquire_lock()
        try:
            return self._execute_swap(zero_for_one, amount_specified, sqrt_price_limit_x96, fee_pips, on_step)
        finally:
            self._release_lock()

    def _execute_swap(
        self,
        zero_for_one: bool,
        amount_specified: int,
        sqrt_price_limit_x96: int,
        fee_pips: int,
        on_step: Optional[Callable[[SwapStep], None]],
    ) -> PoolSwapResult:
        """Core swap loop, called under reentrancy lock."""
        state = self.state
        exact_input = amount_specified > 0
        remaining = amount_specified
        total_in = total_out = total_fee = 0
        sqrt_before, tick_before = state.sqrt_price_x96, state.tick
        steps = 0

        while remaining != 0 and state.sqrt_price_x96 != sqrt_price_limit_x96:
            sqrt_start = state.sqrt_price_x96
            tick_next, initialized = self.next_initialized_tick(state.tick, zero_for_one)
            tick_next = max(MIN_TICK, min(MAX_TICK, tick_next))
            sqrt_next_tick = get_sqrt_ratio_at_tick(tick_next)

            if zero_for_one:
                target = max(sqrt_next_tick, sqrt_price_limit_x96)
            else:
                target = min(sqrt_next_tick, sqrt_price_limit_x96)

            sqrt_after, amount_in, amount_out, fee_amount = compute_swap_step(
                sqrt_start, target, state.liquidity, remaining, fee_pips
            )

            if exact_input:
                remaining -= amount_in + fee_amount
            else:
                remaining += amount_out
            total_in += amount_in + fee_amount
            total_out += amount_out
            total_fee += fee_amount
            steps += 1

            crossing = sqrt_after == sqrt_next_tick and initialized
            step = SwapStep(
                sqrt_price_start_x96=sqrt_start,
                sqrt_price_next_x96=sqrt_after,
                liquidity=state.liquidity,
                amount_in=amount_in,
                amount_out=amount_out,
                fee_amount=fee_amount,
                crossed_tick=tick_next if crossing else None,
            )
            if on_step is not None:
                on_step(step)

            state.sqrt_price_x96 = sqrt_after
            if sqrt_after == sqrt_next_tick:
                if initialized:
                    liquidity_net = state.ticks[tick_next].liquidity_net
                    if zero_for_one:
                        liquidity_net = -liquidity_net
                    state.liquidity = add_delta(state.liquidity, liquidity_net)
                    logger.debug("market=%s crossed tick %d liquidity=%d", state.market, tick_next, state.liquidity)
                state.tick = tick_next - 1 if zero_for_one else tick_next
            elif sqrt_after != sqrt_start:
                state.tick = get_tick_at_sqrt_ratio(sqrt_after)

        return PoolSwapResult(
            zero_for_one=zero_for_one,
            amount_in=total_in,
            amount_out=total_out,
            fee_amount=total_fee,
            sqrt_price_before_x96=sqrt_before,
            sqrt_price_after_x96=state.sqrt_price_x96,
            tick_before=tick_before,
            tick_after=state.tick,
            steps=steps,
        )

    # -- Internal -----------------------------------------------------------

    def _update_tick(self, tick: int, liquidity_delta: int, upper: bool) -> bool:
        """Apply a liquidity delta to a tick boundary; returns True if it flipped."""
        state = self.state
        info = state.ticks.get(tick)
        if info is None:
            info = TickInfo(tick=tick)
            state.ticks[tick] = info

        gross_before = info.liquidity_gross
        info.liquidity_gross = add_delta(gross_before, liquidity_delta)
        if upper:
            info.liquidity_net -= liquidity_delta
        else:
            info.liquidity_net += liquidity_delta

        flipped = (gross_before == 0) != (info.liquidity_gross == 0)
        if flipped:
            if info.liquidity_gross > 0:
                bisect.insort(state.initialized_ticks, tick)
            else:
                state.initialized_ticks.remove(tick)
                del state.ticks[tick]
        return flipped


# ---------------------------------------------------------------------------
# Pool Manager  (per-market registry)
# ---------------------------------------------------------------------------

class PoolManager:
    """Registry of virtual pools, one per market."""

    def __init__(self) -> None:
        self._pools: Dict[str, VirtualPool] = {}

    @property
    def pool_count(self) -> int:
        return len(self._pools)

    def has_pool(self, market: str) -> bool:
        return market in self._pools

    def create_pool(self, market: str, sqrt_price_x96: int, tick_spacing: int) -> VirtualPool:
        """Create and initialize the virtual pool for ``market``."""
        if market in self._pools:
            raise InvalidInput(f"Pool already exists for market {market}")
        if tick_spacing <= 0:
            raise InvalidInput("tick_spacing must be positive")
        state = PoolState(
            market=market,
            tick_spacing=tick_spacing,
            sqrt_price_x96=sqrt_price_x96,
            tick=get_tick_at_sqrt_ratio(sqrt_price_x96),
        )
        pool = VirtualPool(state)
        self._pools[market] = pool
        logger.info("Pool created: market=%s tick=%d spacing=%d", market, state.tick, tick_spacing)
        return pool

    def get_pool(self, market: str) -> VirtualPool:
        pool = self._pools.get(market)
        if pool is None:
            raise InvalidInput(f"Unknown market: {market}")
        return pool

    # -- Snapshots ----------------------------------------------------------

    def snapshot(self, markets: Iterable[str]) -> Dict[str, PoolState]:
        """Copy only the pools of ``markets``; undone with :meth:`restore`."""
        return {market: deepcopy(self._pools[market].state) for market in markets if market in self._pools}

    def restore(self, snapshot: Dict[str, PoolState]) -> None:
        for market, state in snapshot.items():
            pool = self._pools[market]
            pool.state = state
            pool._release_lock()
