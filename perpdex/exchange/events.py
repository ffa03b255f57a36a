"""
perpdex Clearing House Events

Observability events published after an operation commits:
  - PositionChanged  (taker swap, liquidity-removal reconciliation, dust close)
  - LiquidityChanged (add / remove liquidity, fee collection)
  - FundingPaymentSettled

Listeners subscribe to a set of kinds. Events are informational only:
a failing listener is logged and never affects committed state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Flag, auto
from typing import Callable, ClassVar, List, Tuple, Union

logger = logging.getLogger(__name__)


class EventKind(Flag):
    NONE = 0
    POSITION_CHANGED = auto()
    LIQUIDITY_CHANGED = auto()
    FUNDING_SETTLED = auto()
    ALL = POSITION_CHANGED | LIQUIDITY_CHANGED | FUNDING_SETTLED


@dataclass(frozen=True)
class PositionChanged:
    kind: ClassVar[EventKind] = EventKind.POSITION_CHANGED
    trader: str
    market: str
    exchanged_position_size: int
    exchanged_position_notional: int
    fee: int
    open_notional: int
    realized_pnl: int
    sqrt_price_after_x96: int
    referral_code: str = ""


@dataclass(frozen=True)
class LiquidityChanged:
    kind: ClassVar[EventKind] = EventKind.LIQUIDITY_CHANGED
    trader: str
    market: str
    lower_tick: int
    upper_tick: int
    base: int
    quote: int
    liquidity: int
    quote_fee: int


@dataclass(frozen=True)
class FundingPaymentSettled:
    kind: ClassVar[EventKind] = EventKind.FUNDING_SETTLED
    trader: str
    market: str
    payment: int


Event = Union[PositionChanged, LiquidityChanged, FundingPaymentSettled]
EventListener = Callable[[Event], None]


class EventRegistry:
    """Subscribers per event kind, called in registration order."""

    def __init__(self) -> None:
        self._listeners: List[Tuple[EventListener, EventKind]] = []

    def subscribe(self, listener: EventListener, kinds: EventKind = EventKind.ALL) -> None:
        self._listeners.append((listener, kinds))
        logger.debug("Listener subscribed: %r (kinds=%s)", listener, kinds)

    def unsubscribe(self, listener: EventListener) -> None:
        self._listeners = [(l, k) for l, k in self._listeners if l != listener]

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, event: Event) -> None:
        for listener, kinds in self._listeners:
            if event.kind in kinds:
                try:
                    listener(event)
                except Exception as e:
                    logger.error("Event listener %r failed on %s: %s", listener, type(event).__name__, e)
