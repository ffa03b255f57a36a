"""
Test suite for perpdex vault, insurance fund and event registry

Covers:
  - Deposit / withdraw and their validation
  - Withdrawals gated by free collateral, owed PnL settled first
  - Insurance fund credit and settlement
  - Event subscription by kind, unsubscribe
"""

import pytest

from perpdex.constants import INSURANCE_FUND_ADDRESS, WEI
from perpdex.exceptions import InsufficientCollateral, InvalidInput
from perpdex.exchange.account_balance import AccountBalance
from perpdex.exchange.events import (
    EventKind,
    EventRegistry,
    FundingPaymentSettled,
    LiquidityChanged,
)
from perpdex.exchange.vault import InsuranceFund, Vault

MARKET = "ETH"


@pytest.fixture
def ch(make_clearing_house):
    return make_clearing_house()


class TestVault:

    def test_deposit(self, ch):
        assert ch.vault.deposit("alice", 100 * WEI) == 100 * WEI
        assert ch.vault.deposit("alice", 50 * WEI) == 150 * WEI
        assert ch.vault.get_balance("alice") == 150 * WEI
        assert ch.vault.net_deposits == 150 * WEI
        assert ch.get_free_collateral("alice") == 150 * WEI

    @pytest.mark.parametrize("amount", [0, -WEI])
    def test_non_positive_amounts(self, ch, amount):
        with pytest.raises(InvalidInput, match="Deposit amount must be positive"):
            ch.vault.deposit("alice", amount)
        with pytest.raises(InvalidInput, match="Withdraw amount must be positive"):
            ch.vault.withdraw("alice", amount)

    def test_withdraw(self, ch):
        ch.vault.deposit("alice", 100 * WEI)
        assert ch.vault.withdraw("alice", 40 * WEI) == 60 * WEI
        assert ch.vault.total_withdrawals == 40 * WEI
        assert ch.vault.net_deposits == 60 * WEI

    def test_withdraw_more_than_free_collateral(self, ch):
        ch.vault.deposit("alice", 100 * WEI)
        with pytest.raises(InsufficientCollateral, match="exceeds free collateral"):
            ch.vault.withdraw("alice", 100 * WEI + 1)
        assert ch.vault.get_balance("alice") == 100 * WEI

    def test_withdraw_settles_owed_pnl(self, ch):
        ch.vault.deposit("alice", 100 * WEI)
        ch.account_balance.add_owed_realized_pnl("alice", MARKET, -10 * WEI)
        assert ch.get_free_collateral("alice") == 90 * WEI

        ch.vault.withdraw("alice", 30 * WEI)
        assert ch.get_owed_realized_pnl("alice") == 0
        assert ch.vault.get_balance("alice") == 60 * WEI
        with pytest.raises(InsufficientCollateral):
            ch.vault.withdraw("alice", 61 * WEI)

    def test_accounts(self, ch):
        ch.vault.deposit("alice", WEI)
        ch.vault.deposit("bob", WEI)
        assert sorted(ch.vault.get_accounts()) == ["alice", "bob"]
        assert ch.vault.get_balance("carol") == 0

    def test_unbound_vault(self):
        vault = Vault(AccountBalance())
        vault.deposit("alice", WEI)
        with pytest.raises(InvalidInput, match="not bound"):
            vault.withdraw("alice", WEI)


class TestInsuranceFund:

    @pytest.fixture
    def fund(self):
        account_balance = AccountBalance()
        return InsuranceFund(Vault(account_balance), account_balance)

    def test_credit_and_debit(self, fund):
        assert fund.address == INSURANCE_FUND_ADDRESS
        fund.credit(MARKET, 5 * WEI)
        fund.credit("BTC", 2 * WEI)
        fund.credit(MARKET, -WEI)
        assert fund.get_balance() == 6 * WEI

    def test_settle(self, fund):
        fund.credit(MARKET, 5 * WEI)
        assert fund.settle() == 5 * WEI
        assert fund.get_balance() == 5 * WEI
        assert fund.settle() == 0


class TestEventRegistry:

    def test_kind_filter(self):
        registry = EventRegistry()
        everything, funding = [], []
        registry.subscribe(everything.append)
        registry.subscribe(funding.append, EventKind.FUNDING_SETTLED)

        liquidity_event = LiquidityChanged("alice", MARKET, -60, 60, WEI, WEI, 10, 0)
        funding_event = FundingPaymentSettled("alice", MARKET, WEI)
        registry.publish(liquidity_event)
        registry.publish(funding_event)

        assert everything == [liquidity_event, funding_event]
        assert funding == [funding_event]

    def test_combined_kinds(self):
        registry = EventRegistry()
        received = []
        registry.subscribe(received.append, EventKind.LIQUIDITY_CHANGED | EventKind.FUNDING_SETTLED)
        registry.publish(FundingPaymentSettled("alice", MARKET, WEI))
        assert len(received) == 1

    def test_unsubscribe(self):
        registry = EventRegistry()
        received = []
        registry.subscribe(received.append)
        assert registry.listener_count == 1
        registry.unsubscribe(received.append)
        assert registry.listener_count == 0
        registry.publish(FundingPaymentSettled("alice", MARKET, WEI))
        assert received == []

    def test_listener_failure_does_not_stop_others(self):
        registry = EventRegistry()
        received = []

        def broken(event):
            raise ValueError("boom")

        registry.subscribe(broken)
        registry.subscribe(received.append)
        registry.publish(FundingPaymentSettled("alice", MARKET, WEI))
        assert len(received) == 1
