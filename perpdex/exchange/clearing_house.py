"""
perpdex Clearing House

Entry point for every trader operation:
  - add / remove liquidity (maker)
  - open / close position (taker)
  - margin queries: account value, free collateral, initial margin

Each operation runs as one atomic unit:
    deadline -> validate -> settle funding -> mutate -> reconcile -> post-checks -> events

Security features:
  - Reentrancy guard
  - Full state snapshot, restored on any failure (no partial mutation)
  - Deadline, slippage and price-limit bounds on every trade
  - Margin check whenever exposure increases
  - Per-account market limit
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterator, List, Optional

from ..config.loader import PerpDexConfig
from ..constants import RATIO_ONE, WEI
from ..exceptions import (
    DeadlineExpired,
    InsufficientCollateral,
    InvalidInput,
    PerpDexError,
    ReentrancyDetected,
    SlippageExceeded,
)
from .account_balance import AccountBalance
from .amm import PoolManager
from .engine import Exchange, SwapParams, SwapResponse
from .events import Event, EventRegistry, FundingPaymentSettled, LiquidityChanged, PositionChanged
from .funding import FundingTracker
from .oracle import IndexPriceOracle
from .orderbook import OpenOrder, OrderBook
from .tick_math import encode_price_sqrt, from_wei, signed_mul_div
from .vault import InsuranceFund, Vault

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Parameters & responses
# ---------------------------------------------------------------------------

@dataclass
class AddLiquidityParams:
    market: str
    base: int
    quote: int
    lower_tick: int
    upper_tick: int
    min_base: int = 0
    min_quote: int = 0
    deadline: float = 0


@dataclass
class AddLiquidityResponse:
    liquidity: int
    base: int
    quote: int
    fee: int


@dataclass
class RemoveLiquidityParams:
    market: str
    lower_tick: int
    upper_tick: int
    liquidity: int
    min_base: int = 0
    min_quote: int = 0
    deadline: float = 0


@dataclass
class RemoveLiquidityResponse:
    base: int
    quote: int
    fee: int


@dataclass
class OpenPositionParams:
    """
    A taker trade.

    ``opposite_amount_bound`` is the minimum received for exact input and the
    maximum paid for exact output (0 = unbounded).
    """
    market: str
    is_base_to_quote: bool
    is_exact_input: bool
    amount: int
    opposite_amount_bound: int = 0
    sqrt_price_limit_x96: int = 0
    deadline: float = 0
    referral_code: str = ""


@dataclass
class ClosePositionParams:
    market: str
    opposite_amount_bound: int = 0
    sqrt_price_limit_x96: int = 0
    deadline: float = 0
    referral_code: str = ""


@dataclass
class OpenPositionResponse:
    """Signed deltas from the trader's point of view."""
    delta_base: int
    delta_quote: int
    fee: int = 0
    realized_pnl: int = 0


# ---------------------------------------------------------------------------
# Clearing House
# ---------------------------------------------------------------------------

class ClearingHouse:
    """
    Orchestrates the exchange, order book, account balance and collaborators.

    Components are created from a :class:`PerpDexConfig` and exposed as
    attributes for read access.
    """

    def __init__(
        self,
        config: Optional[PerpDexConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.config = config or PerpDexConfig()
        self.config.validate()
        self._clock = clock or time.time

        ch_cfg = self.config.clearing_house
        self.im_ratio = ch_cfg.im_ratio
        self.max_markets_per_account = ch_cfg.max_markets_per_account
        self.twap_interval = ch_cfg.twap_interval

        self.pool_manager = PoolManager()
        self.order_book = OrderBook(self.pool_manager)
        self.exchange = Exchange(self.pool_manager, self.order_book)
        self.account_balance = AccountBalance(ch_cfg.dust_position_size)
        self.vault = Vault(self.account_balance)
        self.insurance_fund = InsuranceFund(self.vault, self.account_balance)
        self.oracle = IndexPriceOracle(
            max_observations=self.config.oracle.max_observations,
            max_price_change=self.config.oracle.max_price_change or None,
        )
        self.funding = FundingTracker(
            funding_period=self.config.funding.funding_period,
            max_funding_rate=self.config.funding.max_funding_rate,
        )
        self.events = EventRegistry()
        self.vault.bind(self)

        self._in_flight = False
        self._pending_events: List[Event] = []

    @classmethod
    def from_config(cls, config: PerpDexConfig, clock: Optional[Callable[[], float]] = None) -> "ClearingHouse":
        return cls(config, clock)

    @property
    def dust_position_size(self) -> int:
        return self.account_balance.dust_position_size

    def now(self) -> float:
        return self._clock()

    # -- Markets & parameters -----------------------------------------------

    def add_market(
        self,
        market: str,
        price,
        index_price=None,
        fee_ratio: Optional[int] = None,
        insurance_fund_fee_ratio: Optional[int] = None,
        tick_spacing: Optional[int] = None,
    ) -> None:
        """Create a market whose pool starts at ``price`` (quote per base)."""
        if self.exchange.has_market(market):
            raise InvalidInput(f"Market {market} already exists")
        exchange_cfg = self.config.exchange
        spacing = exchange_cfg.tick_spacing if tick_spacing is None else tick_spacing
        if spacing <= 0:
            raise InvalidInput("tick_spacing must be positive")
        sqrt_price_x96 = encode_price_sqrt(price)
        now = self._clock()

        self.exchange.add_market(
            market,
            exchange_cfg.fee_ratio if fee_ratio is None else fee_ratio,
            exchange_cfg.insurance_fund_fee_ratio if insurance_fund_fee_ratio is None else insurance_fund_fee_ratio,
        )
        self.pool_manager.create_pool(market, sqrt_price_x96, spacing)
        self.order_book.init_market(market)
        self.oracle.add_market(market, Decimal(str(price if index_price is None else index_price)), now)
        self.funding.init_market(market, now)
        logger.info("Market added: market=%s price=%s", market, price)

    def set_index_price(self, market: str, price) -> None:
        self.oracle.set_price(market, Decimal(str(price)), self._clock())

    def set_max_markets_per_account(self, max_markets: int) -> None:
        if max_markets < 0:
            raise InvalidInput("max_markets must be >= 0")
        self.max_markets_per_account = max_markets

    # -- Operation scaffolding ----------------------------------------------

    @contextmanager
    def _operation(self, name: str, trader: str, market: str) -> Iterator[None]:
        if self._in_flight:
            raise ReentrancyDetected(f"{name} called while another operation is in flight")
        self._in_flight = True
        snapshot = self._take_snapshot(trader, market)
        self._pending_events = []
        try:
            yield
        except PerpDexError as e:
            self._restore_snapshot(snapshot)
            self._pending_events = []
            logger.warning("%s rejected: trader=%s kind=%s reason=%s", name, trader, type(e).__name__, e)
            raise
        except Exception:
            self._restore_snapshot(snapshot)
            self._pending_events = []
            raise
        finally:
            self._in_flight = False

        events, self._pending_events = self._pending_events, []
        for event in events:
            self.events.publish(event)

    def _take_snapshot(self, trader: str, market: str):
        # an operation only touches its market, its trader and the insurance fund
        traders = (trader, self.insurance_fund.address)
        markets = (market,)
        return (
            self.pool_manager.snapshot(markets),
            self.order_book.snapshot(traders, markets),
            self.account_balance.snapshot(traders, markets),
            self.funding.snapshot(traders, markets),
        )

    def _restore_snapshot(self, snapshot) -> None:
        pools, book, balances, funding = snapshot
        self.pool_manager.restore(pools)
        self.order_book.restore(book)
        self.account_balance.restore(balances)
        self.funding.restore(funding)

    def _emit(self, event: Event) -> None:
        if self._in_flight:
            self._pending_events.append(event)
        else:
            self.events.publish(event)

    def _check_deadline(self, deadline: float) -> None:
        if deadline > 0 and self._clock() > deadline:
            raise DeadlineExpired(f"Deadline {deadline} has passed")

    def _require_market(self, market: str) -> None:
        if not self.exchange.has_market(market):
            raise InvalidInput(f"Unknown market: {market}")

    def _settle_funding(self, trader: str, market: str) -> None:
        now = self._clock()
        self.funding.update(
            market,
            self.exchange.get_mark_price_x18(market),
            self._index_price_x18(market),
            now,
        )
        size = self.account_balance.get_position_size(trader, market)
        payment = self.funding.settle(trader, market, size)
        if payment:
            self.account_balance.add_owed_realized_pnl(trader, market, -payment)
            self.insurance_fund.credit(market, payment)
            self._emit(FundingPaymentSettled(trader=trader, market=market, payment=payment))
            logger.info("Funding settled: market=%s trader=%s payment=%s", market, trader, from_wei(payment))

    def _require_enough_free_collateral(self, trader: str) -> None:
        free_collateral = self.get_free_collateral(trader)
        if free_collateral < 0:
            raise InsufficientCollateral(
                f"Free collateral of {trader} would be {from_wei(free_collateral)}"
            )

    def _prune_market(self, trader: str, market: str) -> None:
        self.account_balance.deregister_market_if_empty(
            trader, market, self.order_book.has_order(trader, market)
        )

    # -- Maker operations ---------------------------------------------------

    def add_liquidity(self, trader: str, params: AddLiquidityParams) -> AddLiquidityResponse:
        """
        Add liquidity to a range; collects the pending fee of an existing order.

        Raises:
            DeadlineExpired, InvalidInput, SlippageExceeded,
            MarketLimitExceeded, InsufficientCollateral
        """
        with self._operation("add_liquidity", trader, params.market):
            self._check_deadline(params.deadline)
            self._require_market(params.market)
            self._settle_funding(trader, params.market)
            self.account_balance.register_market(trader, params.market, self.max_markets_per_account)

            result = self.order_book.add_liquidity(
                trader,
                params.market,
                params.lower_tick,
                params.upper_tick,
                params.base,
                params.quote,
                params.min_base,
                params.min_quote,
            )
            self.account_balance.add_owed_realized_pnl(trader, params.market, result.fee)
            self._require_enough_free_collateral(trader)

            self._emit(LiquidityChanged(
                trader=trader,
                market=params.market,
                lower_tick=params.lower_tick,
                upper_tick=params.upper_tick,
                base=result.base,
                quote=result.quote,
                liquidity=result.liquidity,
                quote_fee=result.fee,
            ))
            response = AddLiquidityResponse(
                liquidity=result.liquidity,
                base=result.base,
                quote=result.quote,
                fee=result.fee,
            )
        return response

    def remove_liquidity(self, trader: str, params: RemoveLiquidityParams) -> RemoveLiquidityResponse:
        """
        Remove liquidity (0 = collect fee only) and realize the impermanent
        position into the trader's taker position.

        Raises:
            DeadlineExpired, InvalidInput, InsufficientLiquidity, SlippageExceeded
        """
        market = params.market
        with self._operation("remove_liquidity", trader, market):
            self._check_deadline(params.deadline)
            self._require_market(market)
            self._settle_funding(trader, market)

            result = self.order_book.remove_liquidity(
                trader,
                market,
                params.lower_tick,
                params.upper_tick,
                params.liquidity,
                params.min_base,
                params.min_quote,
            )
            self.account_balance.add_owed_realized_pnl(trader, market, result.fee)

            delta_base = result.base - result.base_debt
            delta_quote = result.quote - result.quote_debt
            realized = self.account_balance.settle_liquidity_removal(
                trader, market, result.base, result.quote, result.base_debt, result.quote_debt
            )
            self._prune_market(trader, market)

            self._emit(LiquidityChanged(
                trader=trader,
                market=market,
                lower_tick=params.lower_tick,
                upper_tick=params.upper_tick,
                base=-result.base,
                quote=-result.quote,
                liquidity=-result.liquidity,
                quote_fee=result.fee,
            ))
            if delta_base or delta_quote:
                self._emit(PositionChanged(
                    trader=trader,
                    market=market,
                    exchanged_position_size=delta_base,
                    exchanged_position_notional=delta_quote,
                    fee=0,
                    open_notional=self.account_balance.get_open_notional(trader, market),
                    realized_pnl=realized,
                    sqrt_price_after_x96=self.exchange.get_sqrt_price_x96(market),
                ))
            response = RemoveLiquidityResponse(base=result.base, quote=result.quote, fee=result.fee)
        return response

    # -- Taker operations ---------------------------------------------------

    def open_position(self, trader: str, params: OpenPositionParams) -> OpenPositionResponse:
        """
        Swap against the market's pool and settle the result into the
        trader's taker position.

        Raises:
            DeadlineExpired, InvalidInput, SlippageExceeded, PriceLimitReached,
            InsufficientLiquidity, InsufficientCollateral, MarketLimitExceeded
        """
        with self._operation("open_position", trader, params.market):
            self._check_deadline(params.deadline)
            self._require_market(params.market)
            if params.amount <= 0:
                raise InvalidInput("Amount must be positive")
            self._settle_funding(trader, params.market)
            response = self._open_position(trader, params)
        return response

    def close_position(self, trader: str, params: ClosePositionParams) -> OpenPositionResponse:
        """
        Close the whole taker position in a market.

        A position within the dust threshold is zeroed without swapping.

        Raises:
            DeadlineExpired, InvalidInput (no position), SlippageExceeded,
            PriceLimitReached, InsufficientLiquidity
        """
        market = params.market
        with self._operation("close_position", trader, market):
            self._check_deadline(params.deadline)
            self._require_market(market)
            self._settle_funding(trader, market)

            size = self.account_balance.get_position_size(trader, market)
            if size == 0:
                raise InvalidInput(f"No position to close in market {market}")

            if abs(size) <= self.dust_position_size:
                realized = self.account_balance.force_close_dust(trader, market)
                self._prune_market(trader, market)
                self._emit(PositionChanged(
                    trader=trader,
                    market=market,
                    exchanged_position_size=-size,
                    exchanged_position_notional=0,
                    fee=0,
                    open_notional=0,
                    realized_pnl=realized,
                    sqrt_price_after_x96=self.exchange.get_sqrt_price_x96(market),
                    referral_code=params.referral_code,
                ))
                response = OpenPositionResponse(delta_base=-size, delta_quote=0, realized_pnl=realized)
            else:
                is_long = size > 0
                response = self._open_position(trader, OpenPositionParams(
                    market=market,
                    is_base_to_quote=is_long,
                    is_exact_input=is_long,
                    amount=abs(size),
                    opposite_amount_bound=params.opposite_amount_bound,
                    sqrt_price_limit_x96=params.sqrt_price_limit_x96,
                    referral_code=params.referral_code,
                ))
        return response

    def _open_position(self, trader: str, params: OpenPositionParams) -> OpenPositionResponse:
        market = params.market
        self.account_balance.register_market(trader, market, self.max_markets_per_account)
        old_size = self.account_balance.get_position_size(trader, market)

        swap = self.exchange.swap(SwapParams(
            market=market,
            is_base_to_quote=params.is_base_to_quote,
            is_exact_input=params.is_exact_input,
            amount=params.amount,
            sqrt_price_limit_x96=params.sqrt_price_limit_x96,
        ))
        self._check_slippage(params, swap)

        realized = self.account_balance.settle_swap(
            trader, market, swap.exchanged_position_size, swap.delta_open_notional
        )
        self.insurance_fund.credit(market, swap.insurance_fund_fee)

        new_size = self.account_balance.get_position_size(trader, market)
        if _is_increasing(old_size, new_size):
            self._require_enough_free_collateral(trader)
        self._prune_market(trader, market)

        open_notional = self.account_balance.get_open_notional(trader, market)
        self._emit(PositionChanged(
            trader=trader,
            market=market,
            exchanged_position_size=swap.exchanged_position_size,
            exchanged_position_notional=swap.exchanged_position_notional,
            fee=swap.fee,
            open_notional=open_notional,
            realized_pnl=realized,
            sqrt_price_after_x96=swap.sqrt_price_after_x96,
            referral_code=params.referral_code,
        ))
        logger.info(
            "Position changed: market=%s trader=%s %s size=%s notional=%s fee=%s realized=%s",
            market, trader, "SHORT" if params.is_base_to_quote else "LONG",
            from_wei(swap.exchanged_position_size), from_wei(swap.exchanged_position_notional),
            from_wei(swap.fee), from_wei(realized),
        )
        return OpenPositionResponse(
            delta_base=swap.exchanged_position_size,
            delta_quote=swap.delta_open_notional,
            fee=swap.fee,
            realized_pnl=realized,
        )

    @staticmethod
    def _check_slippage(params: OpenPositionParams, swap: SwapResponse) -> None:
        bound = params.opposite_amount_bound
        if params.is_base_to_quote:
            opposite = swap.quote if params.is_exact_input else swap.base
        else:
            opposite = swap.base if params.is_exact_input else swap.quote

        if params.is_exact_input:
            if opposite < bound:
                raise SlippageExceeded(f"Received {opposite}, less than bound {bound}")
        elif bound and opposite > bound:
            raise SlippageExceeded(f"Paid {opposite}, more than bound {bound}")

    # -- Margin queries -----------------------------------------------------

    def _index_price_x18(self, market: str) -> int:
        return self.oracle.get_index_price_x18(market, self.twap_interval, self._clock())

    def get_total_initial_margin_requirement(self, trader: str) -> int:
        """im_ratio * (|taker position value| + order debt value), at index price."""
        total = 0
        for market in self.account_balance.get_active_markets(trader):
            index_price = self._index_price_x18(market)
            size = self.account_balance.get_position_size(trader, market)
            base_debt, quote_debt = self.order_book.get_total_order_debt(trader, market)
            total += abs(size) * index_price // WEI
            total += base_debt * index_price // WEI + quote_debt
        return total * self.im_ratio // RATIO_ONE

    def get_total_unrealized_pnl(self, trader: str) -> int:
        """Taker and impermanent positions valued at index price."""
        total = 0
        for market in self.account_balance.get_active_markets(trader):
            index_price = self._index_price_x18(market)
            size = self.account_balance.get_position_size(trader, market)
            open_notional = self.account_balance.get_open_notional(trader, market)
            maker_base, maker_quote = self.order_book.get_total_impermanent_position(trader, market)
            total += signed_mul_div(size + maker_base, index_price, WEI) + open_notional + maker_quote
        return total

    def get_total_pending_fee(self, trader: str) -> int:
        return sum(
            self.order_book.get_total_pending_fee(trader, market)
            for market in self.account_balance.get_active_markets(trader)
        )

    def get_account_value(self, trader: str) -> int:
        return (
            self.vault.get_balance(trader)
            + self.account_balance.get_owed_realized_pnl(trader)
            + self.get_total_pending_fee(trader)
            + self.get_total_unrealized_pnl(trader)
        )

    def get_free_collateral(self, trader: str) -> int:
        collateral = (
            self.vault.get_balance(trader)
            + self.account_balance.get_owed_realized_pnl(trader)
            + self.get_total_pending_fee(trader)
        )
        return min(collateral, self.get_account_value(trader)) - self.get_total_initial_margin_requirement(trader)

    # -- Read queries -------------------------------------------------------

    def get_position_size(self, trader: str, market: str) -> int:
        return self.account_balance.get_position_size(trader, market)

    def get_open_notional(self, trader: str, market: str) -> int:
        return self.account_balance.get_open_notional(trader, market)

    def get_owed_realized_pnl(self, trader: str, market: Optional[str] = None) -> int:
        return self.account_balance.get_owed_realized_pnl(trader, market)

    def get_total_position_size(self, trader: str, market: str) -> int:
        """Taker size plus the impermanent base of the trader's orders."""
        maker_base, _ = self.order_book.get_total_impermanent_position(trader, market)
        return self.account_balance.get_position_size(trader, market) + maker_base

    def get_total_open_notional(self, trader: str, market: str) -> int:
        _, maker_quote = self.order_book.get_total_impermanent_position(trader, market)
        return self.account_balance.get_open_notional(trader, market) + maker_quote

    def get_open_order_by_id(self, order_id: str) -> Optional[OpenOrder]:
        return self.order_book.get_open_order_by_id(order_id)

    def get_open_order(self, trader: str, market: str, lower_tick: int, upper_tick: int) -> Optional[OpenOrder]:
        return self.order_book.get_open_order(trader, market, lower_tick, upper_tick)

    def get_open_order_ids(self, trader: str, market: str) -> List[str]:
        return self.order_book.get_open_order_ids(trader, market)

    def get_pending_fee(self, trader: str, market: str, lower_tick: int, upper_tick: int) -> int:
        return self.order_book.get_pending_fee(
            self.order_book.get_order_id(trader, market, lower_tick, upper_tick)
        )


def _is_increasing(old_size: int, new_size: int) -> bool:
    """True when exposure grows or flips side."""
    if new_size == 0:
        return False
    if old_size == 0 or (old_size > 0) != (new_size > 0):
        return True
    return abs(new_size) > abs(old_size)
