"""
Test suite for perpdex accounting conservation

Covers:
  - Account values plus insurance fund equal net deposits with open positions
  - Free collateral plus insurance fund equal net deposits once everything is closed
  - The above over one and two markets and several trading histories
  - Insurance fund share of fees
  - Withdrawal of the full free collateral
"""

import pytest

from perpdex.cli.simulate import conservation_gap
from perpdex.constants import RATIO_ONE, WEI
from perpdex.exchange.clearing_house import (
    AddLiquidityParams,
    ClosePositionParams,
    OpenPositionParams,
    RemoveLiquidityParams,
)
from perpdex.exchange.tick_math import get_max_tick, get_min_tick, mul_div_rounding_up, to_wei

MARKET = "ETH"
TRADERS = ("maker", "alice", "bob")
DEPOSIT = to_wei(1000)
TOLERANCE = 10 ** 13

# name -> (price, maker base, maker quote, lot); a lot is worth about 10 quote
MARKETS = {
    "ETH": (10, 100, 1000, "1"),
    "BTC": (100, 10, 1000, "0.1"),
}


@pytest.fixture(params=[("ETH",), ("ETH", "BTC")], ids=["one_market", "two_markets"])
def markets(request):
    return request.param


def build(make_clearing_house, markets):
    # default config: 0.1% fee, 10% of it to the insurance fund
    ch = make_clearing_house()
    for trader in TRADERS:
        ch.vault.deposit(trader, DEPOSIT)
    for market in markets:
        price, base, quote, _lot = MARKETS[market]
        ch.add_market(market, price)
        add_range(ch, "maker", market, to_wei(base), to_wei(quote))
    return ch


@pytest.fixture
def ch(make_clearing_house, markets):
    return build(make_clearing_house, markets)


def add_range(ch, trader, market, base, quote):
    spacing = ch.pool_manager.get_pool(market).state.tick_spacing
    return ch.add_liquidity(trader, AddLiquidityParams(
        market=market,
        base=base,
        quote=quote,
        lower_tick=get_min_tick(spacing),
        upper_tick=get_max_tick(spacing),
    ))


def lots(market, count):
    return to_wei(MARKETS[market][3]) * count // 10


def trade(ch, trader, is_base_to_quote, is_exact_input, amount, market=MARKET):
    return ch.open_position(trader, OpenPositionParams(
        market=market,
        is_base_to_quote=is_base_to_quote,
        is_exact_input=is_exact_input,
        amount=amount,
    ))


# Trading histories. Base amounts are in tenths of a lot, quote amounts in wei.

def mixed_trades(ch, market):
    trade(ch, "alice", False, True, to_wei(100), market)
    trade(ch, "bob", True, True, lots(market, 30), market)
    trade(ch, "alice", True, False, to_wei(20), market)
    trade(ch, "bob", False, False, lots(market, 5), market)


def long_exact_input(ch, market):
    trade(ch, "bob", False, True, to_wei(20), market)


def long_exact_output(ch, market):
    trade(ch, "bob", False, False, lots(market, 20), market)


def short_exact_input(ch, market):
    trade(ch, "bob", True, True, lots(market, 20), market)


def short_exact_output(ch, market):
    trade(ch, "bob", True, False, to_wei(20), market)


def taker_with_only_one_maker(ch, market):
    trade(ch, "alice", False, True, to_wei(50), market)
    trade(ch, "alice", True, True, lots(market, 80), market)
    trade(ch, "alice", False, False, lots(market, 15), market)


def taker_adds_liquidity_while_having_position(ch, market):
    trade(ch, "alice", False, True, to_wei(30), market)
    _price, base, quote, _lot = MARKETS[market]
    add_range(ch, "alice", market, to_wei(base) // 5, to_wei(quote) // 5)
    trade(ch, "bob", True, True, lots(market, 40), market)
    trade(ch, "alice", True, False, to_wei(10), market)


def maker_opens_position(ch, market):
    trade(ch, "maker", False, True, to_wei(40), market)
    trade(ch, "alice", True, True, lots(market, 25), market)
    trade(ch, "maker", True, False, to_wei(15), market)


HISTORIES = [
    mixed_trades,
    long_exact_input,
    long_exact_output,
    short_exact_input,
    short_exact_output,
    taker_with_only_one_maker,
    taker_adds_liquidity_while_having_position,
    maker_opens_position,
]


def run_history(ch, markets, history=mixed_trades):
    for market in markets:
        history(ch, market)


def close_everything(ch, markets, collect_fees_first=False):
    """Close every taker position, then let each maker leave the pool in turn."""
    for market in markets:
        for trader in TRADERS:
            if ch.get_position_size(trader, market) != 0:
                ch.close_position(trader, ClosePositionParams(market=market))

        makers = [trader for trader in TRADERS if ch.get_open_order_ids(trader, market)]
        for maker in makers:
            orders = [ch.get_open_order_by_id(order_id) for order_id in ch.get_open_order_ids(maker, market)]
            if collect_fees_first:
                for order in orders:
                    ch.remove_liquidity(maker, RemoveLiquidityParams(market, order.lower_tick, order.upper_tick, 0))
            for order in orders:
                ch.remove_liquidity(maker, RemoveLiquidityParams(
                    market, order.lower_tick, order.upper_tick, order.liquidity,
                ))
            size = ch.get_position_size(maker, market)
            if maker == makers[-1]:
                # the takers are flat, so the last maker holds at most dust
                assert abs(size) <= ch.dust_position_size
            if size != 0:
                ch.close_position(maker, ClosePositionParams(market=market))


def net_total(ch, values):
    return sum(values) + ch.insurance_fund.get_balance() - ch.vault.net_deposits


class TestConservation:

    @pytest.mark.parametrize("history", HISTORIES, ids=lambda history: history.__name__)
    def test_account_values_with_open_positions(self, ch, markets, history):
        run_history(ch, markets, history)
        values = [ch.get_account_value(trader) for trader in TRADERS]
        assert net_total(ch, values) == pytest.approx(0, abs=TOLERANCE)

    @pytest.mark.parametrize("collect_fees_first", [False, True], ids=["remove", "collect_then_remove"])
    @pytest.mark.parametrize("history", HISTORIES, ids=lambda history: history.__name__)
    def test_free_collateral_after_closing(self, ch, markets, history, collect_fees_first):
        run_history(ch, markets, history)
        close_everything(ch, markets, collect_fees_first)
        for market in markets:
            for trader in TRADERS:
                assert ch.get_position_size(trader, market) == 0
                assert ch.get_open_order_ids(trader, market) == []
        values = [ch.get_free_collateral(trader) for trader in TRADERS]
        assert net_total(ch, values) == pytest.approx(0, abs=TOLERANCE)
        assert conservation_gap(ch) == pytest.approx(0, abs=TOLERANCE)

    def test_collecting_fees_first_changes_nothing(self, make_clearing_house, markets):
        results = []
        for collect_fees_first in (False, True):
            ch = build(make_clearing_house, markets)
            run_history(ch, markets)
            close_everything(ch, markets, collect_fees_first)
            results.append([ch.get_free_collateral(trader) for trader in TRADERS])
        for without, with_collect in zip(*results):
            assert with_collect == pytest.approx(without, abs=TOLERANCE)

    def test_takers_pay_makers_and_fund(self, ch, markets):
        run_history(ch, markets)
        close_everything(ch, markets)
        assert ch.get_free_collateral("alice") < DEPOSIT
        assert ch.get_free_collateral("maker") > DEPOSIT
        assert ch.insurance_fund.get_balance() > 0

    def test_withdraw_everything(self, ch, markets):
        run_history(ch, markets)
        close_everything(ch, markets)
        free_collateral = ch.get_free_collateral("alice")
        ch.vault.withdraw("alice", free_collateral)
        assert ch.vault.get_balance("alice") == 0
        assert ch.get_owed_realized_pnl("alice") == 0
        assert ch.vault.net_deposits == 3 * DEPOSIT - free_collateral
        assert conservation_gap(ch) == pytest.approx(0, abs=TOLERANCE)


class TestInsuranceFundShare:

    @pytest.fixture
    def markets(self):
        return (MARKET,)

    def test_fund_receives_its_share(self, ch):
        response = trade(ch, "alice", False, True, to_wei(100))
        expected = mul_div_rounding_up(response.fee, 100000, RATIO_ONE)
        assert response.fee == to_wei("0.1")
        assert ch.insurance_fund.get_balance() == expected

    def test_fund_income_settles_into_vault(self, ch):
        trade(ch, "alice", False, True, to_wei(100))
        income = ch.insurance_fund.get_balance()
        assert ch.insurance_fund.settle() == income
        assert ch.vault.get_balance(ch.insurance_fund.address) == income
        assert ch.insurance_fund.get_balance() == income

    def test_maker_earns_the_rest(self, ch):
        response = trade(ch, "alice", False, True, to_wei(100))
        maker_fee = ch.get_total_pending_fee("maker")
        assert maker_fee + ch.insurance_fund.get_balance() == pytest.approx(response.fee, abs=2)
        assert maker_fee == pytest.approx(response.fee * 9 // 10, abs=2)
        assert maker_fee < WEI
