"""
perpdex Index Price Oracle

Time-weighted average index prices, one feed per market:
  - Geometric mean TWAP:  exp( sum(ln(P_i) * dt_i) / sum(dt_i) )
  - Accumulator-based, O(log n) reads for any window
  - Falls back to the latest price while a window has too little data

Security features:
  - Minimum observation period before TWAP is valid
  - Optional outlier rejection (> max_price_change from last)
  - Same-timestamp observation dedup (overwrite, not append)
  - Staleness check method
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from ..exceptions import InvalidInput
from .tick_math import to_wei

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
MAX_OBSERVATIONS = 8640
MIN_OBSERVATION_PERIOD = 60.0   # seconds
MAX_PRICE_CHANGE_PCT = Decimal("0.50")
STALENESS_THRESHOLD = 300.0     # seconds


@dataclass
class Observation:
    """A single price observation recorded at a point in time."""
    timestamp: float
    price: Decimal
    log_price_cumulative: Decimal = ZERO  # sum(ln(price) * dt)


class TWAPOracle:
    """Records index price observations for one market and computes TWAPs."""

    def __init__(
        self,
        market: str = "",
        max_observations: int = MAX_OBSERVATIONS,
        max_price_change: Optional[Decimal] = MAX_PRICE_CHANGE_PCT,
    ):
        self.market = market
        self.max_observations = max_observations
        self.max_price_change = max_price_change
        self._observations: List[Observation] = []

    @property
    def observation_count(self) -> int:
        return len(self._observations)

    @property
    def latest_price(self) -> Optional[Decimal]:
        if not self._observations:
            return None
        return self._observations[-1].price

    @property
    def latest_timestamp(self) -> Optional[float]:
        if not self._observations:
            return None
        return self._observations[-1].timestamp

    def record(self, price: Decimal, timestamp: Optional[float] = None) -> Observation:
        """
        Record a new price observation.

        Raises:
            InvalidInput: non-positive price, outlier, timestamp going backwards
        """
        price = Decimal(str(price))
        if price <= 0:
            raise InvalidInput("Price must be positive")

        now = timestamp if timestamp is not None else time.time()
        log_price = Decimal(str(math.log(float(price))))

        if self._observations:
            prev = self._observations[-1]

            if self.max_price_change and prev.price > 0:
                change = abs(price - prev.price) / prev.price
                if change > self.max_price_change:
                    logger.warning("Outlier index price rejected: market=%s change=%.2f%%", self.market, change * 100)
                    raise InvalidInput(
                        f"Outlier price rejected: {change:.2%} change exceeds "
                        f"max {self.max_price_change:.2%}"
                    )

            dt = Decimal(str(now - prev.timestamp))
            if dt < 0:
                raise InvalidInput("Timestamp must be monotonically increasing")

            if dt == 0:
                prev.price = price
                return prev

            # the previous price held during [prev.timestamp, now)
            prev_log = Decimal(str(math.log(float(prev.price))))
            cumulative = prev.log_price_cumulative + prev_log * dt
        else:
            cumulative = ZERO

        obs = Observation(timestamp=now, price=price, log_price_cumulative=cumulative)
        self._observations.append(obs)

        if len(self._observations) > self.max_observations:
            self._observations = self._observations[-self.max_observations:]

        logger.debug("Index price recorded: market=%s price=%s log=%s", self.market, price, log_price)
        return obs

    def twap(self, window_seconds: float, now: Optional[float] = None) -> Optional[Decimal]:
        """
        Geometric-mean TWAP over the last ``window_seconds`` ending at ``now``.

        Returns:
            TWAP price, or None if insufficient data or min period not met
        """
        if len(self._observations) < 2:
            return None

        first = self._observations[0]
        last = self._observations[-1]
        end_time = last.timestamp if now is None else max(now, last.timestamp)
        if end_time - first.timestamp < MIN_OBSERVATION_PERIOD:
            return None

        end_cumulative = self._cumulative_at(end_time)
        start_time = max(end_time - window_seconds, first.timestamp)
        start_cumulative = self._cumulative_at(start_time)

        dt = Decimal(str(end_time - start_time))
        if dt <= 0:
            return last.price

        avg_log = (end_cumulative - start_cumulative) / dt
        return Decimal(str(math.exp(float(avg_log)))).quantize(
            Decimal("0.00000001"), rounding=ROUND_HALF_UP
        )

    def _cumulative_at(self, timestamp: float) -> Decimal:
        obs = self._find_observation_at(timestamp)
        if obs is None:
            return ZERO
        dt = Decimal(str(timestamp - obs.timestamp))
        return obs.log_price_cumulative + Decimal(str(math.log(float(obs.price)))) * dt

    def _find_observation_at(self, target_time: float) -> Optional[Observation]:
        """Binary search for observation at or just before target_time."""
        if not self._observations:
            return None
        if target_time <= self._observations[0].timestamp:
            return self._observations[0]

        lo, hi = 0, len(self._observations) - 1
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self._observations[mid].timestamp <= target_time:
                lo = mid
            else:
                hi = mid - 1
        return self._observations[lo]

    def is_stale(self, now: Optional[float] = None, threshold: float = STALENESS_THRESHOLD) -> bool:
        if not self._observations:
            return True
        current = now if now is not None else time.time()
        return current - self._observations[-1].timestamp > threshold


class IndexPriceOracle:
    """Per-market registry of index price feeds."""

    def __init__(
        self,
        max_observations: int = MAX_OBSERVATIONS,
        max_price_change: Optional[Decimal] = MAX_PRICE_CHANGE_PCT,
    ) -> None:
        self.max_observations = max_observations
        self.max_price_change = max_price_change
        self._feeds: Dict[str, TWAPOracle] = {}

    def add_market(self, market: str, price: Decimal, timestamp: float) -> TWAPOracle:
        if market in self._feeds:
            raise InvalidInput(f"Index feed for {market} already exists")
        feed = TWAPOracle(market, self.max_observations, self.max_price_change)
        feed.record(price, timestamp)
        self._feeds[market] = feed
        return feed

    def _feed(self, market: str) -> TWAPOracle:
        feed = self._feeds.get(market)
        if feed is None:
            raise InvalidInput(f"No index price feed for market {market}")
        return feed

    def set_price(self, market: str, price: Decimal, timestamp: float) -> None:
        self._feed(market).record(price, timestamp)

    def get_index_price(self, market: str, interval: float = 0, now: Optional[float] = None) -> Decimal:
        """Latest index price, or the TWAP over ``interval`` seconds when available."""
        feed = self._feed(market)
        if interval > 0:
            twap = feed.twap(interval, now)
            if twap is not None:
                return twap
        return feed.latest_price

    def get_index_price_x18(self, market: str, interval: float = 0, now: Optional[float] = None) -> int:
        return to_wei(self.get_index_price(market, interval, now))

    def is_stale(self, market: str, now: Optional[float] = None) -> bool:
        return self._feed(market).is_stale(now)
