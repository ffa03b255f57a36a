"""
perpdex Settlement Core

Perpetual-futures clearing on virtual concentrated-liquidity pools.

Components:
  - Tick & liquidity math (Uniswap V3 integer model)
  - Virtual pools (one per market, no real token balances)
  - Maker order book (ranges, fee growth, debts)
  - Exchange (swap & quote-denominated fee engine)
  - Account balance (taker positions, average-cost PnL)
  - Vault & insurance fund
  - Index price oracle (TWAP) & funding
  - Clearing house (atomic trader operations, margin)
"""

from .amm import (
    TickInfo,
    PoolState,
    SwapStep,
    PoolSwapResult,
    VirtualPool,
    PoolManager,
)
from .orderbook import (
    OpenOrder,
    AddLiquidityResult,
    RemoveLiquidityResult,
    OrderBook,
)
from .engine import (
    MarketInfo,
    SwapParams,
    SwapResponse,
    Exchange,
)
from .account_balance import (
    TakerPosition,
    AccountBalance,
)
from .vault import (
    Vault,
    InsuranceFund,
)
from .oracle import (
    Observation,
    TWAPOracle,
    IndexPriceOracle,
)
from .funding import (
    FundingState,
    FundingTracker,
)
from .events import (
    EventKind,
    PositionChanged,
    LiquidityChanged,
    FundingPaymentSettled,
    EventRegistry,
)
from .clearing_house import (
    AddLiquidityParams,
    AddLiquidityResponse,
    RemoveLiquidityParams,
    RemoveLiquidityResponse,
    OpenPositionParams,
    ClosePositionParams,
    OpenPositionResponse,
    ClearingHouse,
)

__all__ = [
    # Pools
    "TickInfo", "PoolState", "SwapStep", "PoolSwapResult", "VirtualPool", "PoolManager",
    # Order Book
    "OpenOrder", "AddLiquidityResult", "RemoveLiquidityResult", "OrderBook",
    # Exchange
    "MarketInfo", "SwapParams", "SwapResponse", "Exchange",
    # Accounts
    "TakerPosition", "AccountBalance", "Vault", "InsuranceFund",
    # Oracle & Funding
    "Observation", "TWAPOracle", "IndexPriceOracle", "FundingState", "FundingTracker",
    # Events
    "EventKind", "PositionChanged", "LiquidityChanged", "FundingPaymentSettled", "EventRegistry",
    # Clearing House
    "AddLiquidityParams", "AddLiquidityResponse", "RemoveLiquidityParams",
    "RemoveLiquidityResponse", "OpenPositionParams", "ClosePositionParams",
    "OpenPositionResponse", "ClearingHouse",
]
