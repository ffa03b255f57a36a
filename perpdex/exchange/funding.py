"""
perpdex Funding

Continuous funding between takers and the insurance fund:
  - Premium = mark - index, clamped to +/- max_funding_rate * index
  - Cumulative growth += premium * elapsed / funding_period
    (quote wei owed per 1e18 base held)
  - Per-trader snapshot of the growth; payment = size * (growth - snapshot)

A positive payment is owed by the trader (longs pay when mark > index).
"""

from __future__ import annotations

import logging
from copy import deepcopy
from dataclasses import dataclass
from typing import Dict, Iterable, Tuple

from ..constants import DEFAULT_FUNDING_PERIOD, DEFAULT_MAX_FUNDING_RATE, RATIO_ONE, WEI
from ..exceptions import InvalidInput
from .tick_math import signed_mul_div

logger = logging.getLogger(__name__)


@dataclass
class FundingState:
    market: str
    cumulative_funding_growth: int = 0
    last_updated_at: float = 0.0


class FundingTracker:
    """Accrues funding growth per market and settles it per trader."""

    def __init__(
        self,
        funding_period: int = DEFAULT_FUNDING_PERIOD,
        max_funding_rate: int = DEFAULT_MAX_FUNDING_RATE,
    ) -> None:
        if funding_period <= 0:
            raise InvalidInput("funding_period must be positive")
        self.funding_period = funding_period
        self.max_funding_rate = max_funding_rate
        self._states: Dict[str, FundingState] = {}
        self._snapshots: Dict[Tuple[str, str], int] = {}

    def init_market(self, market: str, timestamp: float) -> None:
        if market in self._states:
            raise InvalidInput(f"Funding already tracked for {market}")
        self._states[market] = FundingState(market=market, last_updated_at=timestamp)

    def _state(self, market: str) -> FundingState:
        state = self._states.get(market)
        if state is None:
            raise InvalidInput(f"Unknown market: {market}")
        return state

    def update(self, market: str, mark_price_x18: int, index_price_x18: int, now: float) -> int:
        """Accrue growth up to ``now``; returns the cumulative growth."""
        state = self._state(market)
        elapsed = int(now - state.last_updated_at)
        if elapsed <= 0:
            return state.cumulative_funding_growth

        cap = index_price_x18 * self.max_funding_rate // RATIO_ONE
        premium = max(-cap, min(cap, mark_price_x18 - index_price_x18))
        state.cumulative_funding_growth += signed_mul_div(premium, elapsed, self.funding_period)
        state.last_updated_at += elapsed
        return state.cumulative_funding_growth

    def get_cumulative_funding_growth(self, market: str) -> int:
        return self._state(market).cumulative_funding_growth

    def get_pending_funding_payment(self, trader: str, market: str, position_size: int) -> int:
        growth = self._state(market).cumulative_funding_growth
        snapshot = self._snapshots.get((trader, market), growth)
        return signed_mul_div(position_size, growth - snapshot, WEI)

    def settle(self, trader: str, market: str, position_size: int) -> int:
        """Return the trader's payment since the last settlement and refresh the snapshot."""
        payment = self.get_pending_funding_payment(trader, market, position_size)
        self._snapshots[(trader, market)] = self._state(market).cumulative_funding_growth
        return payment

    # -- Snapshots ----------------------------------------------------------

    def snapshot(self, traders: Iterable[str], markets: Iterable[str]):
        """Copy the growth of ``markets`` and the snapshots ``traders`` hold in them."""
        markets = list(markets)
        states = {market: deepcopy(self._states[market]) for market in markets if market in self._states}
        snapshots = {
            (trader, market): self._snapshots.get((trader, market))
            for trader in traders
            for market in markets
        }
        return states, snapshots

    def restore(self, snapshot) -> None:
        states, snapshots = snapshot
        self._states.update(states)
        for key, growth in snapshots.items():
            if growth is None:
                self._snapshots.pop(key, None)
            else:
                self._snapshots[key] = growth
