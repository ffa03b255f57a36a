"""
perpdex Tick & Liquidity Math  (Uniswap V3 integer model)

Pure integer helpers shared by the virtual pool, the order book and the
clearing house:
  - tick <-> Q64.96 sqrt-price conversion
  - 512-bit-safe mul_div with explicit rounding direction
  - token amount deltas for a liquidity range
  - next sqrt-price for a given input / output
  - single swap step inside one tick range
  - liquidity <-> token amount conversion
  - wraparound (mod 2**256) arithmetic for fee-growth accumulators
  - 18-decimal fixed-point helpers

Rounding always favours the pool: amounts owed to the pool round up,
amounts paid out by the pool round down.
"""

from __future__ import annotations

import math
from decimal import Decimal, ROUND_CEILING, ROUND_DOWN, ROUND_FLOOR, localcontext
from functools import lru_cache
from typing import Tuple, Union

from ..constants import MAX_UINT256, Q96, RATIO_ONE, WEI
from ..exceptions import InvalidInput, NumericOverflow

MIN_TICK = -887272
MAX_TICK = 887272
MAX_UINT128 = 2 ** 128 - 1
UINT256_MOD = 2 ** 256

_PRECISION = 90

Number = Union[Decimal, int, str]


# ---------------------------------------------------------------------------
# Full math
# ---------------------------------------------------------------------------

def mul_div(a: int, b: int, denominator: int) -> int:
    """floor(a * b / denominator) for non-negative operands."""
    if denominator == 0:
        raise NumericOverflow("mul_div: division by zero")
    result = a * b // denominator
    if result > MAX_UINT256:
        raise NumericOverflow("mul_div: result exceeds 256 bits")
    return result


def mul_div_rounding_up(a: int, b: int, denominator: int) -> int:
    """ceil(a * b / denominator) for non-negative operands."""
    if denominator == 0:
        raise NumericOverflow("mul_div: division by zero")
    result = -(-(a * b) // denominator)
    if result > MAX_UINT256:
        raise NumericOverflow("mul_div: result exceeds 256 bits")
    return result


def div_rounding_up(a: int, b: int) -> int:
    if b == 0:
        raise NumericOverflow("division by zero")
    return -(-a // b)


def signed_mul_div(a: int, b: int, denominator: int) -> int:
    """a * b / denominator rounded toward zero, any signs."""
    if denominator == 0:
        raise NumericOverflow("signed_mul_div: division by zero")
    product = a * b
    quotient = abs(product) // abs(denominator)
    if (product < 0) != (denominator < 0):
        return -quotient
    return quotient


def add_delta(x: int, y: int) -> int:
    """Apply a signed liquidity delta, staying inside uint128."""
    z = x + y
    if z < 0:
        raise NumericOverflow("liquidity underflow")
    if z > MAX_UINT128:
        raise NumericOverflow("liquidity overflow")
    return z


def wrapping_add(a: int, b: int) -> int:
    return (a + b) % UINT256_MOD


def wrapping_sub(a: int, b: int) -> int:
    return (a - b) % UINT256_MOD


# ---------------------------------------------------------------------------
# Tick math
# ---------------------------------------------------------------------------

@lru_cache(maxsize=65536)
def get_sqrt_ratio_at_tick(tick: int) -> int:
    """sqrt(1.0001 ** tick) * 2**96, rounded up."""
    if not MIN_TICK <= tick <= MAX_TICK:
        raise InvalidInput(f"Tick {tick} out of range [{MIN_TICK}, {MAX_TICK}]")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        ratio = (Decimal("1.0001") ** tick).sqrt() * Q96
        return int(ratio.to_integral_value(rounding=ROUND_CEILING))


MIN_SQRT_RATIO = get_sqrt_ratio_at_tick(MIN_TICK)
MAX_SQRT_RATIO = get_sqrt_ratio_at_tick(MAX_TICK)

with localcontext() as _ctx:
    _ctx.prec = _PRECISION
    _LN_TICK_BASE = Decimal("1.0001").ln()


def get_tick_at_sqrt_ratio(sqrt_price_x96: int) -> int:
    """Greatest tick whose sqrt ratio is <= ``sqrt_price_x96``."""
    if not MIN_SQRT_RATIO <= sqrt_price_x96 < MAX_SQRT_RATIO:
        raise InvalidInput(f"Sqrt price {sqrt_price_x96} out of range")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        log_ratio = (Decimal(sqrt_price_x96) / Q96).ln() * 2
        tick = int((log_ratio / _LN_TICK_BASE).to_integral_value(rounding=ROUND_FLOOR))

    tick = max(MIN_TICK, min(MAX_TICK, tick))
    # The estimate can be off by one at exact boundaries
    while tick > MIN_TICK and get_sqrt_ratio_at_tick(tick) > sqrt_price_x96:
        tick -= 1
    while tick < MAX_TICK and get_sqrt_ratio_at_tick(tick + 1) <= sqrt_price_x96:
        tick += 1
    return tick


def get_min_tick(tick_spacing: int) -> int:
    """Lowest usable tick for a spacing."""
    return -(-MIN_TICK // tick_spacing) * tick_spacing


def get_max_tick(tick_spacing: int) -> int:
    """Highest usable tick for a spacing."""
    return (MAX_TICK // tick_spacing) * tick_spacing


def nearest_usable_tick(tick: int, tick_spacing: int) -> int:
    rounded = int(math.floor(tick / tick_spacing + 0.5)) * tick_spacing
    if rounded < get_min_tick(tick_spacing):
        return rounded + tick_spacing
    if rounded > get_max_tick(tick_spacing):
        return rounded - tick_spacing
    return rounded


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------

def encode_price_sqrt(price: Number) -> int:
    """Human price (quote per base) -> Q64.96 sqrt price."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        value = Decimal(str(price))
        if value <= 0:
            raise InvalidInput("Price must be positive")
        sqrt_price = int((value.sqrt() * Q96).to_integral_value(rounding=ROUND_FLOOR))
    if not MIN_SQRT_RATIO <= sqrt_price < MAX_SQRT_RATIO:
        raise InvalidInput(f"Price {price} out of range")
    return sqrt_price


def sqrt_price_x96_to_price(sqrt_price_x96: int) -> Decimal:
    """Q64.96 sqrt price -> human price (quote per base)."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        ratio = Decimal(sqrt_price_x96) / Q96
        return +(ratio * ratio)


def sqrt_price_x96_to_price_x18(sqrt_price_x96: int) -> int:
    """Q64.96 sqrt price -> 18-decimal price."""
    return mul_div(sqrt_price_x96 * sqrt_price_x96, WEI, Q96 * Q96)


def price_to_tick(price: Number) -> int:
    return get_tick_at_sqrt_ratio(encode_price_sqrt(price))


# ---------------------------------------------------------------------------
# 18-decimal fixed point
# ---------------------------------------------------------------------------

def to_wei(value: Number) -> int:
    """Decimal amount -> 18-decimal integer, truncating toward zero."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        scaled = Decimal(str(value)) * WEI
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_wei(amount: int) -> Decimal:
    """18-decimal integer -> exact Decimal."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(amount).scaleb(-18)


# ---------------------------------------------------------------------------
# Amount deltas (SqrtPriceMath)
# ---------------------------------------------------------------------------

def get_amount0_delta(sqrt_a: int, sqrt_b: int, liquidity: int, round_up: bool) -> int:
    """Base amount between two sqrt prices: L * (sb - sa) / (sa * sb)."""
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    if sqrt_a <= 0:
        raise NumericOverflow("sqrt price must be positive")
    numerator1 = liquidity << 96
    numerator2 = sqrt_b - sqrt_a
    if round_up:
        return div_rounding_up(mul_div_rounding_up(numerator1, numerator2, sqrt_b), sqrt_a)
    return mul_div(numerator1, numerator2, sqrt_b) // sqrt_a


def get_amount1_delta(sqrt_a: int, sqrt_b: int, liquidity: int, round_up: bool) -> int:
    """Quote amount between two sqrt prices: L * (sb - sa)."""
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    if round_up:
        return mul_div_rounding_up(liquidity, sqrt_b - sqrt_a, Q96)
    return mul_div(liquidity, sqrt_b - sqrt_a, Q96)


def _next_sqrt_price_from_amount0_rounding_up(
    sqrt_price: int, liquidity: int, amount: int, add: bool
) -> int:
    if amount == 0:
        return sqrt_price
    numerator1 = liquidity << 96
    product = amount * sqrt_price
    if add:
        return mul_div_rounding_up(numerator1, sqrt_price, numerator1 + product)
    if numerator1 <= product:
        raise NumericOverflow("base output exceeds virtual reserves")
    return mul_div_rounding_up(numerator1, sqrt_price, numerator1 - product)


def _next_sqrt_price_from_amount1_rounding_down(
    sqrt_price: int, liquidity: int, amount: int, add: bool
) -> int:
    if add:
        return sqrt_price + (amount << 96) // liquidity
    quotient = div_rounding_up(amount << 96, liquidity)
    if sqrt_price <= quotient:
        raise NumericOverflow("quote output exceeds virtual reserves")
    return sqrt_price - quotient


def get_next_sqrt_price_from_input(
    sqrt_price: int, liquidity: int, amount_in: int, zero_for_one: bool
) -> int:
    if sqrt_price <= 0 or liquidity <= 0:
        raise NumericOverflow("sqrt price and liquidity must be positive")
    if zero_for_one:
        return _next_sqrt_price_from_amount0_rounding_up(sqrt_price, liquidity, amount_in, True)
    return _next_sqrt_price_from_amount1_rounding_down(sqrt_price, liquidity, amount_in, True)


def get_next_sqrt_price_from_output(
    sqrt_price: int, liquidity: int, amount_out: int, zero_for_one: bool
) -> int:
    if sqrt_price <= 0 or liquidity <= 0:
        raise NumericOverflow("sqrt price and liquidity must be positive")
    if zero_for_one:
        return _next_sqrt_price_from_amount1_rounding_down(sqrt_price, liquidity, amount_out, False)
    return _next_sqrt_price_from_amount0_rounding_up(sqrt_price, liquidity, amount_out, False)


# ---------------------------------------------------------------------------
# Swap step (SwapMath)
# ---------------------------------------------------------------------------

def compute_swap_step(
    sqrt_price_current: int,
    sqrt_price_target: int,
    liquidity: int,
    amount_remaining: int,
    fee_pips: int,
) -> Tuple[int, int, int, int]:
    """
    Swap inside a single tick range.

    ``amount_remaining`` >= 0 is an exact input, < 0 an exact output.
    ``fee_pips`` is charged on the input side.

    Returns:
        (sqrt_price_next, amount_in, amount_out, fee_amount)
    """
    zero_for_one = sqrt_price_current >= sqrt_price_target
    exact_in = amount_remaining >= 0
    amount_in = 0
    amount_out = 0

    if exact_in:
        remaining_less_fee = mul_div(amount_remaining, RATIO_ONE - fee_pips, RATIO_ONE)
        if zero_for_one:
            amount_in = get_amount0_delta(sqrt_price_target, sqrt_price_current, liquidity, True)
        else:
            amount_in = get_amount1_delta(sqrt_price_current, sqrt_price_target, liquidity, True)
        if remaining_less_fee >= amount_in:
            sqrt_price_next = sqrt_price_target
        else:
            sqrt_price_next = get_next_sqrt_price_from_input(
                sqrt_price_current, liquidity, remaining_less_fee, zero_for_one
            )
    else:
        if zero_for_one:
            amount_out = get_amount1_delta(sqrt_price_target, sqrt_price_current, liquidity, False)
        else:
            amount_out = get_amount0_delta(sqrt_price_current, sqrt_price_target, liquidity, False)
        if -amount_remaining >= amount_out:
            sqrt_price_next = sqrt_price_target
        else:
            sqrt_price_next = get_next_sqrt_price_from_output(
                sqrt_price_current, liquidity, -amount_remaining, zero_for_one
            )

    reached_target = sqrt_price_target == sqrt_price_next

    if zero_for_one:
        if not (reached_target and exact_in):
            amount_in = get_amount0_delta(sqrt_price_next, sqrt_price_current, liquidity, True)
        if not (reached_target and not exact_in):
            amount_out = get_amount1_delta(sqrt_price_next, sqrt_price_current, liquidity, False)
    else:
        if not (reached_target and exact_in):
            amount_in = get_amount1_delta(sqrt_price_current, sqrt_price_next, liquidity, True)
        if not (reached_target and not exact_in):
            amount_out = get_amount0_delta(sqrt_price_current, sqrt_price_next, liquidity, False)

    # cap the output amount to not exceed the remaining output amount
    if not exact_in and amount_out > -amount_remaining:
        amount_out = -amount_remaining

    if exact_in and sqrt_price_next != sqrt_price_target:
        # the whole remainder is consumed; what was not swapped is the fee
        fee_amount = amount_remaining - amount_in
    else:
        fee_amount = mul_div_rounding_up(amount_in, fee_pips, RATIO_ONE - fee_pips)

    return sqrt_price_next, amount_in, amount_out, fee_amount


# ---------------------------------------------------------------------------
# Liquidity amounts
# ---------------------------------------------------------------------------

def get_liquidity_for_amount0(sqrt_a: int, sqrt_b: int, amount0: int) -> int:
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    intermediate = mul_div(sqrt_a, sqrt_b, Q96)
    return mul_div(amount0, intermediate, sqrt_b - sqrt_a)


def get_liquidity_for_amount1(sqrt_a: int, sqrt_b: int, amount1: int) -> int:
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    return mul_div(amount1, Q96, sqrt_b - sqrt_a)


def get_liquidity_for_amounts(
    sqrt_price: int, sqrt_a: int, sqrt_b: int, amount0: int, amount1: int
) -> int:
    """Largest liquidity that ``amount0`` base and ``amount1`` quote can back."""
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    if sqrt_price <= sqrt_a:
        return get_liquidity_for_amount0(sqrt_a, sqrt_b, amount0)
    if sqrt_price < sqrt_b:
        return min(
            get_liquidity_for_amount0(sqrt_price, sqrt_b, amount0),
            get_liquidity_for_amount1(sqrt_a, sqrt_price, amount1),
        )
    return get_liquidity_for_amount1(sqrt_a, sqrt_b, amount1)


def get_amounts_for_liquidity(
    sqrt_price: int, sqrt_a: int, sqrt_b: int, liquidity: int, round_up: bool = False
) -> Tuple[int, int]:
    """Base and quote backing ``liquidity`` in [sqrt_a, sqrt_b] at ``sqrt_price``."""
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    if sqrt_price <= sqrt_a:
        return get_amount0_delta(sqrt_a, sqrt_b, liquidity, round_up), 0
    if sqrt_price < sqrt_b:
        return (
            get_amount0_delta(sqrt_price, sqrt_b, liquidity, round_up),
            get_amount1_delta(sqrt_a, sqrt_price, liquidity, round_up),
        )
    return 0, get_amount1_delta(sqrt_a, sqrt_b, liquidity, round_up)
