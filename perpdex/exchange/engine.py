"""
perpdex Exchange  (swap & fee engine)

Executes taker swaps against a market's virtual pool:
  - Base-to-quote and quote-to-base, exact input and exact output
  - Exchange fee always charged in quote:
      * quote input  -> taken from the input before it reaches the curve
      * quote output -> taken from the output (grossed up for exact output)
  - Per-step fee split between makers (fee growth) and the insurance fund,
    accrued before the step's tick crossing
  - Read-only quoting (state saved and restored)

Security features:
  - Price-limit validation
  - Zero-fill rejection
  - Rounding in favour of the pool on every step
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict

from ..constants import RATIO_ONE
from ..exceptions import InsufficientLiquidity, InvalidInput, PriceLimitReached
from .amm import PoolManager, SwapStep
from .orderbook import OrderBook
from .tick_math import div_rounding_up, mul_div_rounding_up, sqrt_price_x96_to_price_x18

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class MarketInfo:
    """Fee parameters of a market, ratios in ppm."""
    market: str
    fee_ratio: int
    insurance_fund_fee_ratio: int


@dataclass
class SwapParams:
    market: str
    is_base_to_quote: bool
    is_exact_input: bool
    amount: int
    sqrt_price_limit_x96: int = 0


@dataclass
class SwapResponse:
    """
    Outcome of a swap, from the trader's point of view.

    ``base`` / ``quote`` are unsigned: the base bought or sold, and the quote
    paid (fee included) or received (fee excluded). ``exchanged_position_notional``
    is the quote that went through the curve, so the trader's open notional
    moves by ``exchanged_position_notional - fee``.
    """
    market: str
    base: int
    quote: int
    exchanged_position_size: int
    exchanged_position_notional: int
    fee: int
    insurance_fund_fee: int
    sqrt_price_before_x96: int
    sqrt_price_after_x96: int
    tick_after: int

    @property
    def delta_open_notional(self) -> int:
        return self.exchanged_position_notional - self.fee


# ---------------------------------------------------------------------------
# Exchange
# ---------------------------------------------------------------------------

class Exchange:
    """Swap engine over the pool manager and the maker order book."""

    def __init__(self, pool_manager: PoolManager, order_book: OrderBook) -> None:
        self._pool_manager = pool_manager
        self._order_book = order_book
        self._markets: Dict[str, MarketInfo] = {}

    # -- Markets ------------------------------------------------------------

    def add_market(self, market: str, fee_ratio: int, insurance_fund_fee_ratio: int) -> MarketInfo:
        if market in self._markets:
            raise InvalidInput(f"Market {market} already exists")
        _check_ratio("fee_ratio", fee_ratio)
        _check_ratio("insurance_fund_fee_ratio", insurance_fund_fee_ratio)
        info = MarketInfo(market, fee_ratio, insurance_fund_fee_ratio)
        self._markets[market] = info
        return info

    def has_market(self, market: str) -> bool:
        return market in self._markets

    def get_market_info(self, market: str) -> MarketInfo:
        info = self._markets.get(market)
        if info is None:
            raise InvalidInput(f"Unknown market: {market}")
        return info

    def set_fee_ratio(self, market: str, fee_ratio: int) -> None:
        _check_ratio("fee_ratio", fee_ratio)
        self.get_market_info(market).fee_ratio = fee_ratio
        logger.info("Fee ratio updated: market=%s fee_ratio=%d", market, fee_ratio)

    def set_insurance_fund_fee_ratio(self, market: str, ratio: int) -> None:
        _check_ratio("insurance_fund_fee_ratio", ratio)
        self.get_market_info(market).insurance_fund_fee_ratio = ratio
        logger.info("Insurance fund fee ratio updated: market=%s ratio=%d", market, ratio)

    def get_sqrt_price_x96(self, market: str) -> int:
        return self._pool_manager.get_pool(market).sqrt_price_x96

    def get_mark_price_x18(self, market: str) -> int:
        """Pool spot price as an 18-decimal integer."""
        return sqrt_price_x96_to_price_x18(self.get_sqrt_price_x96(market))

    # -- Swap ---------------------------------------------------------------

    def swap(self, params: SwapParams) -> SwapResponse:
        """
        Walk the market's curve for ``params.amount``.

        Partial fills up to the price limit are returned as-is.

        Raises:
            InvalidInput: unknown market, non-positive amount
            PriceLimitReached: bad limit, or nothing filled before an explicit limit
            InsufficientLiquidity: nothing filled and no explicit limit
        """
        info = self.get_market_info(params.market)
        if params.amount <= 0:
            raise InvalidInput("Swap amount must be positive")

        pool = self._pool_manager.get_pool(params.market)
        base_to_quote = params.is_base_to_quote
        fee_ratio = info.fee_ratio
        if_ratio = info.insurance_fund_fee_ratio

        amount = params.amount
        if base_to_quote and not params.is_exact_input:
            # the quote output must cover the fee taken from it
            amount = div_rounding_up(amount * RATIO_ONE, RATIO_ONE - fee_ratio)
        amount_specified = amount if params.is_exact_input else -amount

        fees = {"fee": 0, "insurance_fund_fee": 0, "amount_out": 0}

        def on_step(step: SwapStep) -> None:
            if base_to_quote:
                # rounded once on the running output, so the total is ceil(out * fee_ratio)
                fees["amount_out"] += step.amount_out
                step_fee = mul_div_rounding_up(fees["amount_out"], fee_ratio, RATIO_ONE) - fees["fee"]
            else:
                step_fee = step.fee_amount
            if step_fee > 0:
                if step.liquidity > 0:
                    insurance_fund_fee = mul_div_rounding_up(step_fee, if_ratio, RATIO_ONE)
                else:
                    insurance_fund_fee = step_fee
                self._order_book.accrue_fee(params.market, step_fee - insurance_fund_fee, step.liquidity)
                fees["fee"] += step_fee
                fees["insurance_fund_fee"] += insurance_fund_fee
            if step.crossed_tick is not None:
                self._order_book.cross_tick(params.market, step.crossed_tick)

        result = pool.swap(
            zero_for_one=base_to_quote,
            amount_specified=amount_specified,
            sqrt_price_limit_x96=params.sqrt_price_limit_x96,
            fee_pips=0 if base_to_quote else fee_ratio,
            on_step=on_step,
        )

        fee = fees["fee"]
        if base_to_quote:
            base = result.amount_in
            exchanged_size = -base
            exchanged_notional = result.amount_out
            quote = result.amount_out - fee
        else:
            base = result.amount_out
            exchanged_size = base
            exchanged_notional = -(result.amount_in - fee)
            quote = result.amount_in

        if exchanged_size == 0 or exchanged_notional == 0:
            if params.sqrt_price_limit_x96:
                raise PriceLimitReached(f"Price limit reached before any fill in market {params.market}")
            raise InsufficientLiquidity(f"Not enough liquidity to fill swap in market {params.market}")

        logger.debug(
            "Swap: market=%s base_to_quote=%s exact_input=%s size=%d notional=%d fee=%d steps=%d",
            params.market, base_to_quote, params.is_exact_input,
            exchanged_size, exchanged_notional, fee, result.steps,
        )
        return SwapResponse(
            market=params.market,
            base=base,
            quote=quote,
            exchanged_position_size=exchanged_size,
            exchanged_position_notional=exchanged_notional,
            fee=fee,
            insurance_fund_fee=fees["insurance_fund_fee"],
            sqrt_price_before_x96=result.sqrt_price_before_x96,
            sqrt_price_after_x96=result.sqrt_price_after_x96,
            tick_after=result.tick_after,
        )

    def quote(self, params: SwapParams) -> SwapResponse:
        """Simulate :meth:`swap` without changing any state."""
        markets = [params.market]
        pools = self._pool_manager.snapshot(markets)
        book = self._order_book.snapshot((), markets)
        try:
            return self.swap(params)
        finally:
            self._pool_manager.restore(pools)
            self._order_book.restore(book)


def _check_ratio(name: str, value: int) -> None:
    if not 0 <= value < RATIO_ONE:
        raise InvalidInput(f"{name} must be in [0, {RATIO_ONE})")
