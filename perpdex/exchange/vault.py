"""
perpdex Vault & Insurance Fund

In-process collateral custody:
  - Quote collateral balances per trader (18 decimals)
  - Deposit / withdraw, withdraw gated by free collateral
  - Owed realized PnL settled into the balance on withdrawal
  - Insurance fund account fed by fee and funding income
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from ..constants import INSURANCE_FUND_ADDRESS
from ..exceptions import InsufficientCollateral, InvalidInput
from .account_balance import AccountBalance

if TYPE_CHECKING:
    from .clearing_house import ClearingHouse

logger = logging.getLogger(__name__)


class Vault:
    """Collateral balances; free collateral is computed by the bound clearing house."""

    def __init__(self, account_balance: AccountBalance) -> None:
        self._account_balance = account_balance
        self._clearing_house: Optional["ClearingHouse"] = None
        self._balances: Dict[str, int] = {}
        self.total_deposits: int = 0
        self.total_withdrawals: int = 0

    def bind(self, clearing_house: "ClearingHouse") -> None:
        self._clearing_house = clearing_house

    @property
    def net_deposits(self) -> int:
        return self.total_deposits - self.total_withdrawals

    def get_accounts(self) -> List[str]:
        return list(self._balances)

    def get_balance(self, trader: str) -> int:
        return self._balances.get(trader, 0)

    def get_free_collateral(self, trader: str) -> int:
        if self._clearing_house is None:
            raise InvalidInput("Vault is not bound to a clearing house")
        return self._clearing_house.get_free_collateral(trader)

    def deposit(self, trader: str, amount: int) -> int:
        """Credit ``amount`` collateral; returns the new balance."""
        if amount <= 0:
            raise InvalidInput("Deposit amount must be positive")
        self._balances[trader] = self.get_balance(trader) + amount
        self.total_deposits += amount
        logger.info("Deposit: trader=%s amount=%d", trader, amount)
        return self._balances[trader]

    def withdraw(self, trader: str, amount: int) -> int:
        """
        Debit ``amount`` collateral after settling owed realized PnL.

        Raises:
            InvalidInput: non-positive amount
            InsufficientCollateral: ``amount`` exceeds free collateral
        """
        if amount <= 0:
            raise InvalidInput("Withdraw amount must be positive")
        free_collateral = self.get_free_collateral(trader)
        if amount > free_collateral:
            raise InsufficientCollateral(
                f"Withdraw {amount} exceeds free collateral {free_collateral}"
            )
        self.settle_owed_realized_pnl(trader)
        self._balances[trader] = self.get_balance(trader) - amount
        self.total_withdrawals += amount
        logger.info("Withdraw: trader=%s amount=%d", trader, amount)
        return self._balances[trader]

    def settle_owed_realized_pnl(self, trader: str) -> int:
        owed = self._account_balance.settle_owed_realized_pnl(trader)
        if owed:
            self._balances[trader] = self.get_balance(trader) + owed
        return owed


class InsuranceFund:
    """Protocol account receiving the insurance share of fees and net funding."""

    def __init__(
        self,
        vault: Vault,
        account_balance: AccountBalance,
        address: str = INSURANCE_FUND_ADDRESS,
    ) -> None:
        self.address = address
        self._vault = vault
        self._account_balance = account_balance

    def credit(self, market: str, amount: int) -> None:
        """Credit (or debit, if negative) the fund's owed PnL in ``market``."""
        self._account_balance.add_owed_realized_pnl(self.address, market, amount)

    def get_balance(self) -> int:
        return self._vault.get_balance(self.address) + self._account_balance.get_owed_realized_pnl(self.address)

    def settle(self) -> int:
        """Move accrued income into the fund's vault balance."""
        return self._vault.settle_owed_realized_pnl(self.address)
