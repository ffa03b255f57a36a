#!/usr/bin/env python3
"""
perpdex Simulation CLI

Replays a JSON scenario against an in-process clearing house.

Usage:
    perpdex-sim run <scenario.json> [--config FILE] [--log-level LEVEL] [--keep-going]
    perpdex-sim show-config [--config FILE]

Scenario format:
    {
      "markets": [{"name": "ETH", "price": "10", "fee_ratio": 1000}],
      "steps": [
        {"action": "deposit", "trader": "alice", "amount": "1000"},
        {"action": "add_liquidity", "trader": "maker", "market": "ETH",
         "base": "100", "quote": "1000"},
        {"action": "open_position", "trader": "alice", "market": "ETH",
         "is_base_to_quote": false, "is_exact_input": true, "amount": "250"},
        {"action": "advance_time", "seconds": 3600},
        {"action": "close_position", "trader": "alice", "market": "ETH"},
        {"action": "remove_liquidity", "trader": "maker", "market": "ETH", "liquidity": "all"}
      ]
    }

Amounts are decimal strings in token units; ranges default to full range.
"""

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import click
from rich.console import Console
from rich.table import Table

from ..config import PerpDexConfig, load_config
from ..exceptions import InvalidInput, PerpDexError
from ..exchange.clearing_house import (
    AddLiquidityParams,
    ClearingHouse,
    ClosePositionParams,
    OpenPositionParams,
    RemoveLiquidityParams,
)
from ..exchange.tick_math import from_wei, get_max_tick, get_min_tick, to_wei
from ..logger import configure_logging


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise InvalidInput("Cannot move the clock backwards")
        self.now += seconds


# ---------------------------------------------------------------------------
# Scenario steps
# ---------------------------------------------------------------------------

def _range(ch: ClearingHouse, step: Dict[str, Any]):
    spacing = ch.pool_manager.get_pool(step["market"]).state.tick_spacing
    lower = step.get("lower_tick", get_min_tick(spacing))
    upper = step.get("upper_tick", get_max_tick(spacing))
    return int(lower), int(upper)


def _step_deposit(ch: ClearingHouse, clock: ManualClock, step: Dict[str, Any]) -> None:
    ch.vault.deposit(step["trader"], to_wei(step["amount"]))


def _step_withdraw(ch: ClearingHouse, clock: ManualClock, step: Dict[str, Any]) -> None:
    ch.vault.withdraw(step["trader"], to_wei(step["amount"]))


def _step_add_liquidity(ch: ClearingHouse, clock: ManualClock, step: Dict[str, Any]) -> None:
    lower, upper = _range(ch, step)
    ch.add_liquidity(step["trader"], AddLiquidityParams(
        market=step["market"],
        base=to_wei(step.get("base", 0)),
        quote=to_wei(step.get("quote", 0)),
        lower_tick=lower,
        upper_tick=upper,
        min_base=to_wei(step.get("min_base", 0)),
        min_quote=to_wei(step.get("min_quote", 0)),
    ))


def _step_remove_liquidity(ch: ClearingHouse, clock: ManualClock, step: Dict[str, Any]) -> None:
    lower, upper = _range(ch, step)
    liquidity = step.get("liquidity", "all")
    if liquidity == "all":
        order = ch.get_open_order(step["trader"], step["market"], lower, upper)
        if order is None:
            raise InvalidInput(f"{step['trader']} has no order in [{lower}, {upper})")
        liquidity = order.liquidity
    ch.remove_liquidity(step["trader"], RemoveLiquidityParams(
        market=step["market"],
        lower_tick=lower,
        upper_tick=upper,
        liquidity=int(liquidity),
    ))


def _step_open_position(ch: ClearingHouse, clock: ManualClock, step: Dict[str, Any]) -> None:
    ch.open_position(step["trader"], OpenPositionParams(
        market=step["market"],
        is_base_to_quote=bool(step["is_base_to_quote"]),
        is_exact_input=bool(step.get("is_exact_input", True)),
        amount=to_wei(step["amount"]),
        opposite_amount_bound=to_wei(step.get("opposite_amount_bound", 0)),
        referral_code=step.get("referral_code", ""),
    ))


def _step_close_position(ch: ClearingHouse, clock: ManualClock, step: Dict[str, Any]) -> None:
    ch.close_position(step["trader"], ClosePositionParams(
        market=step["market"],
        opposite_amount_bound=to_wei(step.get("opposite_amount_bound", 0)),
    ))


def _step_set_index_price(ch: ClearingHouse, clock: ManualClock, step: Dict[str, Any]) -> None:
    ch.set_index_price(step["market"], step["price"])


def _step_advance_time(ch: ClearingHouse, clock: ManualClock, step: Dict[str, Any]) -> None:
    clock.advance(float(step["seconds"]))


STEP_HANDLERS: Dict[str, Callable[[ClearingHouse, ManualClock, Dict[str, Any]], None]] = {
    "deposit": _step_deposit,
    "withdraw": _step_withdraw,
    "add_liquidity": _step_add_liquidity,
    "remove_liquidity": _step_remove_liquidity,
    "open_position": _step_open_position,
    "close_position": _step_close_position,
    "set_index_price": _step_set_index_price,
    "advance_time": _step_advance_time,
}


def run_step(ch: ClearingHouse, clock: ManualClock, step: Dict[str, Any]) -> None:
    action = step.get("action")
    handler = STEP_HANDLERS.get(action)
    if handler is None:
        raise InvalidInput(f"Unknown step action: {action}")
    handler(ch, clock, step)


def build_clearing_house(scenario: Dict[str, Any], config: PerpDexConfig, clock: ManualClock) -> ClearingHouse:
    ch = ClearingHouse.from_config(config, clock=clock)
    for market in scenario.get("markets", []):
        ch.add_market(
            market["name"],
            market["price"],
            index_price=market.get("index_price"),
            fee_ratio=market.get("fee_ratio"),
            insurance_fund_fee_ratio=market.get("insurance_fund_fee_ratio"),
            tick_spacing=market.get("tick_spacing"),
        )
    return ch


def conservation_gap(ch: ClearingHouse) -> int:
    """Free collateral plus insurance fund, minus net deposits."""
    accounts = set(ch.vault.get_accounts()) | ch.account_balance.get_traders()
    accounts.discard(ch.insurance_fund.address)
    total = sum(ch.get_free_collateral(trader) for trader in accounts)
    return total + ch.insurance_fund.get_balance() - ch.vault.net_deposits


def render_accounts(ch: ClearingHouse, console: Console) -> None:
    table = Table(title="Accounts")
    table.add_column("Trader", style="cyan")
    table.add_column("Market")
    table.add_column("Position size", justify="right")
    table.add_column("Open notional", justify="right")
    table.add_column("Owed PnL", justify="right")
    table.add_column("Free collateral", justify="right")

    accounts = sorted(set(ch.vault.get_accounts()) | ch.account_balance.get_traders())
    for trader in accounts:
        free_collateral = from_wei(ch.get_free_collateral(trader))
        markets = ch.account_balance.get_active_markets(trader) or ["-"]
        for market in markets:
            if market == "-":
                size = notional = from_wei(0)
            else:
                size = from_wei(ch.get_total_position_size(trader, market))
                notional = from_wei(ch.get_total_open_notional(trader, market))
            table.add_row(
                trader,
                market,
                f"{size:.6f}",
                f"{notional:.6f}",
                f"{from_wei(ch.get_owed_realized_pnl(trader)):.6f}",
                f"{free_collateral:.6f}",
            )
    console.print(table)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@click.group()
@click.version_option(version="0.1.0", prog_name="perpdex-sim")
def cli():
    """perpdex settlement simulator

    Replay trading scenarios against the clearing house.
    """
    pass


@cli.command("run")
@click.argument("scenario_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
@click.option(
    "--log-level", "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Override the [logging] level",
)
@click.option("--keep-going", is_flag=True, help="Continue after a failing step")
def run_cmd(scenario_file: str, config_path: Optional[str], log_level: Optional[str], keep_going: bool):
    """Replay SCENARIO_FILE and print the resulting accounts.

    Examples:

        perpdex-sim run scenario.json

        perpdex-sim run scenario.json --log-level DEBUG --keep-going
    """
    try:
        config = load_config(config_path)
    except PerpDexError as e:
        raise click.ClickException(str(e))
    if log_level:
        config.logging.level = log_level.upper()
    configure_logging(
        log_level=config.logging.level,
        log_file=Path(config.logging.file_path),
        console_output=config.logging.console_output,
        file_output=config.logging.file_output,
    )

    try:
        scenario = json.loads(Path(scenario_file).read_text())
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Invalid scenario file: {e}")

    clock = ManualClock(float(scenario.get("start_time", 0)))
    try:
        ch = build_clearing_house(scenario, config, clock)
    except (PerpDexError, KeyError) as e:
        raise click.ClickException(f"Invalid market definition: {e}")

    for i, step in enumerate(scenario.get("steps", []), start=1):
        try:
            run_step(ch, clock, step)
        except PerpDexError as e:
            click.echo(
                click.style(f"Step {i} ({step.get('action')}) failed: {type(e).__name__}: {e}", fg="red"),
                err=True,
            )
            if not keep_going:
                sys.exit(1)
        except KeyError as e:
            raise click.ClickException(f"Step {i} is missing field {e}")

    console = Console()
    render_accounts(ch, console)

    gap = conservation_gap(ch)
    console.print(f"Net deposits: {from_wei(ch.vault.net_deposits)}")
    console.print(f"Insurance fund: {from_wei(ch.insurance_fund.get_balance())}")
    console.print(f"Conservation gap: {from_wei(gap)}")


@cli.command("show-config")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
def show_config_cmd(config_path: Optional[str]):
    """Print the effective configuration (file plus environment overrides)."""
    try:
        config = load_config(config_path)
    except PerpDexError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(config.to_dict(), indent=2))


def main():
    cli()


if __name__ == "__main__":
    main()
