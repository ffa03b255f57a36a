"""
perpdex Maker Order Book

Ledger of maker liquidity orders and range fee accounting:
  - One open order per (trader, market, lower tick, upper tick)
  - Per-market global fee growth (quote per unit liquidity, X128)
  - Per-tick fee-growth-outside accumulators, flipped on every crossing
  - O(1) fee growth inside any range by accumulator subtraction
  - Order debt (deposited base/quote) for impermanent-position accounting

All accumulator arithmetic wraps modulo 2**256, so differences stay exact
even after the running totals overflow.
"""

from __future__ import annotations

import hashlib
import logging
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..constants import Q128
from ..exceptions import InsufficientLiquidity, InvalidInput, SlippageExceeded
from .amm import PoolManager, VirtualPool
from .tick_math import (
    get_liquidity_for_amounts,
    get_sqrt_ratio_at_tick,
    mul_div,
    wrapping_add,
    wrapping_sub,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class OpenOrder:
    """A maker's liquidity in one range of one market."""
    id: str
    trader: str
    market: str
    lower_tick: int
    upper_tick: int
    liquidity: int = 0
    last_fee_growth_inside_x128: int = 0
    base_debt: int = 0
    quote_debt: int = 0


@dataclass
class MarketFeeState:
    """Fee growth accumulators of a market."""
    market: str
    fee_growth_global_x128: int = 0
    fee_growth_outside_x128: Dict[int, int] = field(default_factory=dict)


@dataclass
class AddLiquidityResult:
    order_id: str
    liquidity: int
    base: int
    quote: int
    fee: int


@dataclass
class RemoveLiquidityResult:
    order_id: str
    liquidity: int
    base: int
    quote: int
    fee: int
    base_debt: int
    quote_debt: int


# ---------------------------------------------------------------------------
# Order Book
# ---------------------------------------------------------------------------

class OrderBook:
    """
    Maker order ledger on top of the virtual pools.

    The exchange reports swap activity through :meth:`accrue_fee` and
    :meth:`cross_tick`; makers' earnings are derived from those accumulators.
    """

    def __init__(self, pool_manager: PoolManager) -> None:
        self._pool_manager = pool_manager
        self._fee_states: Dict[str, MarketFeeState] = {}
        self._orders: Dict[str, OpenOrder] = {}
        self._order_ids: Dict[Tuple[str, str], List[str]] = {}

    # -- Markets ------------------------------------------------------------

    def init_market(self, market: str) -> None:
        if market in self._fee_states:
            raise InvalidInput(f"Market {market} already registered in order book")
        self._fee_states[market] = MarketFeeState(market=market)

    def _fee_state(self, market: str) -> MarketFeeState:
        state = self._fee_states.get(market)
        if state is None:
            raise InvalidInput(f"Unknown market: {market}")
        return state

    def _pool(self, market: str) -> VirtualPool:
        return self._pool_manager.get_pool(market)

    @staticmethod
    def get_order_id(trader: str, market: str, lower_tick: int, upper_tick: int) -> str:
        """Deterministic order id."""
        raw = f"{trader}:{market}:{lower_tick}:{upper_tick}".encode()
        return hashlib.blake2b(raw, digest_size=16).hexdigest()

    # -- Liquidity ----------------------------------------------------------

    def add_liquidity(
        self,
        trader: str,
        market: str,
        lower_tick: int,
        upper_tick: int,
        base: int,
        quote: int,
        min_base: int = 0,
        min_quote: int = 0,
    ) -> AddLiquidityResult:
        """
        Convert desired base/quote into liquidity and mint it into the pool.

        If the order already exists its pending fee is collected and returned.

        Raises:
            InvalidInput: bad range, negative or zero amounts, zero liquidity
            SlippageExceeded: used amounts below ``min_base`` / ``min_quote``
        """
        fee_state = self._fee_state(market)
        pool = self._pool(market)
        pool.validate_ticks(lower_tick, upper_tick)
        if base < 0 or quote < 0:
            raise InvalidInput("Amounts must not be negative")
        if base == 0 and quote == 0:
            raise InvalidInput("Amounts must not both be zero")

        liquidity = get_liquidity_for_amounts(
            pool.sqrt_price_x96,
            get_sqrt_ratio_at_tick(lower_tick),
            get_sqrt_ratio_at_tick(upper_tick),
            base,
            quote,
        )
        if liquidity == 0:
            raise InvalidInput("Amounts too small to add any liquidity")

        expected_base, expected_quote = pool.amounts_for_liquidity(
            lower_tick, upper_tick, liquidity, round_up=True
        )
        if expected_base < min_base or expected_quote < min_quote:
            raise SlippageExceeded(
                f"Liquidity slippage: base {expected_base} < {min_base} or quote {expected_quote} < {min_quote}"
            )

        base_used, quote_used, flipped_lower, flipped_upper = pool.mint(lower_tick, upper_tick, liquidity)
        if flipped_lower:
            self._init_tick(fee_state, pool, lower_tick)
        if flipped_upper:
            self._init_tick(fee_state, pool, upper_tick)

        fee_growth_inside = self.get_fee_growth_inside(market, lower_tick, upper_tick)
        order_id = self.get_order_id(trader, market, lower_tick, upper_tick)
        order = self._orders.get(order_id)
        fee = 0
        if order is None:
            order = OpenOrder(
                id=order_id,
                trader=trader,
                market=market,
                lower_tick=lower_tick,
                upper_tick=upper_tick,
            )
            self._orders[order_id] = order
            self._order_ids.setdefault((trader, market), []).append(order_id)
        else:
            fee = self._pending_fee(order, fee_growth_inside)

        order.liquidity += liquidity
        order.last_fee_growth_inside_x128 = fee_growth_inside
        order.base_debt += base_used
        order.quote_debt += quote_used

        logger.info(
            "Liquidity added: market=%s order=%s liquidity=%d base=%d quote=%d",
            market, order_id, liquidity, base_used, quote_used,
        )
        return AddLiquidityResult(
            order_id=order_id,
            liquidity=liquidity,
            base=base_used,
            quote=quote_used,
            fee=fee,
        )

    def remove_liquidity(
        self,
        trader: str,
        market: str,
        lower_tick: int,
        upper_tick: int,
        liquidity: int,
        min_base: int = 0,
        min_quote: int = 0,
    ) -> RemoveLiquidityResult:
        """
        Burn ``liquidity`` from an order and collect its pending fee.

        ``liquidity == 0`` only collects the fee. The released debt is the
        share of the order's deposits that ``liquidity`` represents.

        Raises:
            InvalidInput: order does not exist, negative liquidity
            InsufficientLiquidity: more liquidity than the order holds
            SlippageExceeded: returned amounts below the minimums
        """
        fee_state = self._fee_state(market)
        pool = self._pool(market)
        order_id = self.get_order_id(trader, market, lower_tick, upper_tick)
        order = self._orders.get(order_id)
        if order is None:
            raise InvalidInput(f"Open order {order_id} not found")
        if liquidity < 0:
            raise InvalidInput("Liquidity must not be negative")
        if liquidity > order.liquidity:
            raise InsufficientLiquidity(
                f"Cannot remove {liquidity} liquidity, order holds {order.liquidity}"
            )

        fee_growth_inside = self.get_fee_growth_inside(market, lower_tick, upper_tick)
        fee = self._pending_fee(order, fee_growth_inside)
        order.last_fee_growth_inside_x128 = fee_growth_inside

        base = quote = base_debt = quote_debt = 0
        if liquidity > 0:
            expected_base, expected_quote = pool.amounts_for_liquidity(
                lower_tick, upper_tick, liquidity, round_up=False
            )
            if expected_base < min_base or expected_quote < min_quote:
                raise SlippageExceeded(
                    f"Liquidity slippage: base {expected_base} < {min_base} or quote {expected_quote} < {min_quote}"
                )
            base, quote, flipped_lower, flipped_upper = pool.burn(lower_tick, upper_tick, liquidity)
            if flipped_lower:
                fee_state.fee_growth_outside_x128.pop(lower_tick, None)
            if flipped_upper:
                fee_state.fee_growth_outside_x128.pop(upper_tick, None)

            base_debt = mul_div(order.base_debt, liquidity, order.liquidity)
            quote_debt = mul_div(order.quote_debt, liquidity, order.liquidity)
            order.base_debt -= base_debt
            order.quote_debt -= quote_debt
            order.liquidity -= liquidity

        if order.liquidity == 0:
            del self._orders[order_id]
            ids = self._order_ids[(trader, market)]
            ids.remove(order_id)
            if not ids:
                del self._order_ids[(trader, market)]

        logger.info(
            "Liquidity removed: market=%s order=%s liquidity=%d base=%d quote=%d fee=%d",
            market, order_id, liquidity, base, quote, fee,
        )
        return RemoveLiquidityResult(
            order_id=order_id,
            liquidity=liquidity,
            base=base,
            quote=quote,
            fee=fee,
            base_debt=base_debt,
            quote_debt=quote_debt,
        )

    # -- Fee growth ---------------------------------------------------------

    def accrue_fee(self, market: str, fee: int, liquidity: int) -> None:
        """Spread ``fee`` quote over the ``liquidity`` active during a swap step."""
        if fee <= 0 or liquidity <= 0:
            return
        state = self._fee_state(market)
        state.fee_growth_global_x128 = wrapping_add(
            state.fee_growth_global_x128, mul_div(fee, Q128, liquidity)
        )

    def cross_tick(self, market: str, tick: int) -> None:
        """Flip a tick's outside accumulator when price crosses it."""
        state = self._fee_state(market)
        outside = state.fee_growth_outside_x128.get(tick, 0)
        state.fee_growth_outside_x128[tick] = wrapping_sub(state.fee_growth_global_x128, outside)

    def get_fee_growth_global(self, market: str) -> int:
        return self._fee_state(market).fee_growth_global_x128

    def get_fee_growth_outside(self, market: str, tick: int) -> int:
        return self._fee_state(market).fee_growth_outside_x128.get(tick, 0)

    def get_fee_growth_inside(self, market: str, lower_tick: int, upper_tick: int) -> int:
        state = self._fee_state(market)
        current_tick = self._pool(market).tick
        global_growth = state.fee_growth_global_x128
        lower_outside = self.get_fee_growth_outside(market, lower_tick)
        upper_outside = self.get_fee_growth_outside(market, upper_tick)

        if current_tick >= lower_tick:
            below = lower_outside
        else:
            below = wrapping_sub(global_growth, lower_outside)
        if current_tick < upper_tick:
            above = upper_outside
        else:
            above = wrapping_sub(global_growth, upper_outside)
        return wrapping_sub(wrapping_sub(global_growth, below), above)

    @staticmethod
    def _init_tick(state: MarketFeeState, pool: VirtualPool, tick: int) -> None:
        # all growth so far is assumed to have happened below the current tick
        if tick <= pool.tick:
            state.fee_growth_outside_x128[tick] = state.fee_growth_global_x128
        else:
            state.fee_growth_outside_x128[tick] = 0

    @staticmethod
    def _pending_fee(order: OpenOrder, fee_growth_inside: int) -> int:
        delta = wrapping_sub(fee_growth_inside, order.last_fee_growth_inside_x128)
        return mul_div(delta, order.liquidity, Q128)

    # -- Queries ------------------------------------------------------------

    def get_open_order_by_id(self, order_id: str) -> Optional[OpenOrder]:
        """Copy of the order, or None; the stored order is never handed out."""
        order = self._orders.get(order_id)
        return deepcopy(order) if order is not None else None

    def get_open_order(
        self, trader: str, market: str, lower_tick: int, upper_tick: int
    ) -> Optional[OpenOrder]:
        return self.get_open_order_by_id(self.get_order_id(trader, market, lower_tick, upper_tick))

    def get_open_order_ids(self, trader: str, market: str) -> List[str]:
        return list(self._order_ids.get((trader, market), []))

    def has_order(self, trader: str, market: str) -> bool:
        return bool(self._order_ids.get((trader, market)))

    def get_pending_fee(self, order_id: str) -> int:
        order = self._orders.get(order_id)
        if order is None:
            return 0
        inside = self.get_fee_growth_inside(order.market, order.lower_tick, order.upper_tick)
        return self._pending_fee(order, inside)

    def get_total_pending_fee(self, trader: str, market: str) -> int:
        return sum(self.get_pending_fee(oid) for oid in self.get_open_order_ids(trader, market))

    def get_order_token_amounts(self, order_id: str) -> Tuple[int, int]:
        """Base and quote the order currently holds in the pool."""
        order = self._orders.get(order_id)
        if order is None:
            return 0, 0
        return self._pool(order.market).amounts_for_liquidity(
            order.lower_tick, order.upper_tick, order.liquidity, round_up=False
        )

    def get_total_token_amounts_in_pool(self, trader: str, market: str) -> Tuple[int, int]:
        base = quote = 0
        for order_id in self.get_open_order_ids(trader, market):
            order_base, order_quote = self.get_order_token_amounts(order_id)
            base += order_base
            quote += order_quote
        return base, quote

    def get_total_order_debt(self, trader: str, market: str) -> Tuple[int, int]:
        base = quote = 0
        for order_id in self.get_open_order_ids(trader, market):
            order = self._orders[order_id]
            base += order.base_debt
            quote += order.quote_debt
        return base, quote

    def get_impermanent_position(self, order_id: str) -> Tuple[int, int]:
        """(base, quote) the order would add to its maker's taker position if removed now."""
        order = self._orders.get(order_id)
        if order is None:
            return 0, 0
        base, quote = self.get_order_token_amounts(order_id)
        return base - order.base_debt, quote - order.quote_debt

    def get_total_impermanent_position(self, trader: str, market: str) -> Tuple[int, int]:
        base = quote = 0
        for order_id in self.get_open_order_ids(trader, market):
            order_base, order_quote = self.get_impermanent_position(order_id)
            base += order_base
            quote += order_quote
        return base, quote

    # -- Snapshots ----------------------------------------------------------

    def snapshot(self, traders: Iterable[str], markets: Iterable[str]):
        """Copy the fee state of ``markets`` and the orders ``traders`` hold in them."""
        markets = list(markets)
        keys = [(trader, market) for trader in traders for market in markets]
        fee_states = {market: deepcopy(self._fee_states[market]) for market in markets if market in self._fee_states}
        order_ids = {key: list(self._order_ids.get(key, [])) for key in keys}
        orders = {
            order_id: deepcopy(self._orders[order_id])
            for ids in order_ids.values()
            for order_id in ids
        }
        return fee_states, order_ids, orders

    def restore(self, snapshot) -> None:
        fee_states, order_ids, orders = snapshot
        self._fee_states.update(fee_states)
        for key, ids in order_ids.items():
            for order_id in self._order_ids.pop(key, []):
                self._orders.pop(order_id, None)
            if ids:
                self._order_ids[key] = ids
        self._orders.update(orders)
