"""
perpdex Account Balance

Per-(trader, market) taker positions:
  - Signed base size (positive = long)
  - Open notional (negative cumulative quote cost basis)
  - Owed realized PnL not yet settled into collateral
  - Average-cost realization on reduce / close / reverse
  - Dust positions forced to zero
  - Maker impermanent positions injected on liquidity removal
  - Active-market set with a per-account limit
"""

from __future__ import annotations

import logging
from copy import deepcopy
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..constants import DEFAULT_DUST_POSITION_SIZE
from ..exceptions import MarketLimitExceeded
from .tick_math import signed_mul_div

logger = logging.getLogger(__name__)


@dataclass
class TakerPosition:
    """Taker position of one trader in one market."""
    trader: str
    market: str
    size: int = 0
    open_notional: int = 0
    owed_realized_pnl: int = 0

    @property
    def is_empty(self) -> bool:
        return self.size == 0 and self.open_notional == 0 and self.owed_realized_pnl == 0


class AccountBalance:
    """
    Ledger of taker positions.

    Size and open notional are only ever changed together by
    :meth:`settle_swap`; every other mutation goes through it.
    """

    def __init__(self, dust_position_size: int = DEFAULT_DUST_POSITION_SIZE) -> None:
        self.dust_position_size = dust_position_size
        self._positions: Dict[Tuple[str, str], TakerPosition] = {}
        self._active_markets: Dict[str, List[str]] = {}

    def _position(self, trader: str, market: str) -> TakerPosition:
        key = (trader, market)
        position = self._positions.get(key)
        if position is None:
            position = TakerPosition(trader=trader, market=market)
            self._positions[key] = position
        return position

    # -- Settlement ---------------------------------------------------------

    def settle_swap(self, trader: str, market: str, delta_base: int, delta_quote: int) -> int:
        """
        Apply a base/quote delta with average-cost accounting.

        Returns:
            PnL realized by this delta (also added to owed realized PnL)
        """
        position = self._position(trader, market)
        old_size = position.size
        old_notional = position.open_notional
        new_size = old_size + delta_base

        if old_size == 0 and delta_base == 0:
            realized = delta_quote
            open_notional = 0
        elif old_size == 0 or (old_size > 0) == (delta_base > 0) or delta_base == 0:
            # open or increase
            realized = 0
            open_notional = old_notional + delta_quote
        elif abs(delta_base) <= abs(old_size):
            # reduce or close
            reduced_notional = signed_mul_div(old_notional, abs(delta_base), abs(old_size))
            realized = reduced_notional + delta_quote
            open_notional = old_notional - reduced_notional
        else:
            # reverse: close the old position, open the rest at the trade's price
            closed_quote = signed_mul_div(delta_quote, abs(old_size), abs(delta_base))
            realized = old_notional + closed_quote
            open_notional = delta_quote - closed_quote

        if old_size != 0 and new_size != 0 and abs(new_size) <= self.dust_position_size:
            realized += open_notional
            open_notional = 0
            new_size = 0

        position.size = new_size
        position.open_notional = open_notional
        position.owed_realized_pnl += realized
        self._prune(trader, market)

        if realized:
            logger.debug(
                "Realized PnL: market=%s trader=%s realized=%d size=%d open_notional=%d",
                market, trader, realized, new_size, open_notional,
            )
        return realized

    def settle_liquidity_removal(
        self,
        trader: str,
        market: str,
        base_returned: int,
        quote_returned: int,
        base_debt_released: int,
        quote_debt_released: int,
    ) -> int:
        """
        Turn a maker's impermanent position into taker exposure.

        The impermanent position is what the removed liquidity returns minus the
        share of the order's deposits it represents.
        """
        delta_base = base_returned - base_debt_released
        delta_quote = quote_returned - quote_debt_released
        if delta_base == 0 and delta_quote == 0:
            return 0
        return self.settle_swap(trader, market, delta_base, delta_quote)

    def force_close_dust(self, trader: str, market: str) -> int:
        """Zero a position within the dust threshold, realizing its open notional."""
        position = self._position(trader, market)
        realized = position.open_notional
        position.size = 0
        position.open_notional = 0
        position.owed_realized_pnl += realized
        return realized

    def add_owed_realized_pnl(self, trader: str, market: str, amount: int) -> None:
        if amount:
            self._position(trader, market).owed_realized_pnl += amount
            self._prune(trader, market)

    def settle_owed_realized_pnl(self, trader: str) -> int:
        """Drain the trader's owed realized PnL over every market."""
        total = 0
        for (owner, market), position in list(self._positions.items()):
            if owner == trader:
                total += position.owed_realized_pnl
                position.owed_realized_pnl = 0
                self._prune(owner, market)
        return total

    def _prune(self, trader: str, market: str) -> None:
        position = self._positions.get((trader, market))
        if position is not None and position.is_empty:
            del self._positions[(trader, market)]

    # -- Active markets -----------------------------------------------------

    def register_market(self, trader: str, market: str, max_markets: int = 0) -> None:
        """
        Add ``market`` to the trader's active set.

        Raises:
            MarketLimitExceeded: the set is already at ``max_markets`` (0 = unlimited)
        """
        markets = self._active_markets.setdefault(trader, [])
        if market in markets:
            return
        if max_markets and len(markets) >= max_markets:
            raise MarketLimitExceeded(
                f"Trader {trader} already active in {len(markets)} markets (max {max_markets})"
            )
        markets.append(market)

    def deregister_market_if_empty(self, trader: str, market: str, has_orders: bool) -> bool:
        """Prune a market with no position and no orders from the active set."""
        position = self._positions.get((trader, market))
        if has_orders or (position is not None and position.size != 0):
            return False
        markets = self._active_markets.get(trader, [])
        if market in markets:
            markets.remove(market)
            if not markets:
                del self._active_markets[trader]
            return True
        return False

    def get_active_markets(self, trader: str) -> List[str]:
        return list(self._active_markets.get(trader, []))

    # -- Queries ------------------------------------------------------------

    def get_taker_position(self, trader: str, market: str) -> TakerPosition:
        position = self._positions.get((trader, market))
        if position is None:
            return TakerPosition(trader=trader, market=market)
        return deepcopy(position)

    def get_position_size(self, trader: str, market: str) -> int:
        position = self._positions.get((trader, market))
        return position.size if position else 0

    def get_open_notional(self, trader: str, market: str) -> int:
        position = self._positions.get((trader, market))
        return position.open_notional if position else 0

    def get_owed_realized_pnl(self, trader: str, market: Optional[str] = None) -> int:
        if market is not None:
            position = self._positions.get((trader, market))
            return position.owed_realized_pnl if position else 0
        return sum(
            position.owed_realized_pnl
            for (owner, _market), position in self._positions.items()
            if owner == trader
        )

    def get_traders(self) -> Set[str]:
        return {trader for trader, _market in self._positions} | set(self._active_markets)

    # -- Snapshots ----------------------------------------------------------

    def snapshot(self, traders: Iterable[str], markets: Iterable[str]):
        """Copy only the positions and active sets of ``traders`` in ``markets``."""
        traders, markets = list(traders), list(markets)
        positions = {
            (trader, market): deepcopy(self._positions.get((trader, market)))
            for trader in traders
            for market in markets
        }
        active = {trader: list(self._active_markets.get(trader, [])) for trader in traders}
        return positions, active

    def restore(self, snapshot) -> None:
        positions, active = snapshot
        for key, position in positions.items():
            if position is None:
                self._positions.pop(key, None)
            else:
                self._positions[key] = position
        for trader, markets in active.items():
            if markets:
                self._active_markets[trader] = markets
            else:
                self._active_markets.pop(trader, None)
