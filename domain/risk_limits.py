#
# ------------------------------------------------------------
# File: domain/risk_limits.py
# Per-position hard limits a decision must pass before any order
# ------------------------------------------------------------
#
from dataclasses import dataclass
from typing import List, Optional

from config.settings import (
    DEFAULT_ADD_PERCENT, MAX_ADD_COUNT, MAX_POSITION_MULTIPLIER, MAX_REDUCE_COUNT, MIN_ADD_PROFIT_PCT,
)
from domain.models import AccountBalance, LivePosition, Position, TradeAction, TradeDecision


@dataclass
class RiskCheckResult:
    passed: bool
    reason: str = ""


PASSED = RiskCheckResult(True)


def _refuse(reason: str) -> RiskCheckResult:
    return RiskCheckResult(False, reason)


def _live_for(symbol: str, live_positions: List[LivePosition]) -> Optional[LivePosition]:
    for live in live_positions:
        if live.symbol == symbol and abs(live.contracts or 0.0) > 0:
            return live
    return None


def margin_pnl_pct(live: LivePosition) -> float:
    """ Unrealized PnL as a percentage of the margin behind the position. """
    if not live.notional or live.notional <= 0:
        return 0.0
    margin = abs(live.notional) / (live.leverage or 1.0)
    return live.unrealized_pnl / margin * 100.0


def check_hard_limits(
    decision: TradeDecision,
    balance: AccountBalance,
    live_positions: List[LivePosition],
    ledger_position: Optional[Position],
    max_add_count: int = MAX_ADD_COUNT,
    min_add_profit_pct: float = MIN_ADD_PROFIT_PCT,
    max_position_multiplier: float = MAX_POSITION_MULTIPLIER,
    max_reduce_count: int = MAX_REDUCE_COUNT,
) -> RiskCheckResult:
    """
    Gate a decision against the account and the ledger.

    HOLD, CLOSE and ADJUST always pass: they never add exposure.
    LONG / SHORT need params, no open ledger position for the symbol and
    a positive available balance. ADD needs a live position in profit by
    at least `min_add_profit_pct` of its margin, fewer than `max_add_count`
    earlier adds and a resulting size within `max_position_multiplier`
    times the ledger size. REDUCE needs a live position and fewer than
    `max_reduce_count` earlier reduces.
    """
    action = TradeAction(decision.action)
    symbol = decision.symbol
    params = decision.params

    if action in (TradeAction.HOLD, TradeAction.CLOSE, TradeAction.ADJUST):
        return PASSED

    if action in (TradeAction.LONG, TradeAction.SHORT):
        if params is None:
            return _refuse(f"{action.value} without params")
        if ledger_position is not None and ledger_position.is_open:
            return _refuse(f"position already open for {symbol}")
        if balance.available_balance <= 0:
            return _refuse("no available balance")
        return PASSED

    live = _live_for(symbol, live_positions)
    if live is None:
        return _refuse(f"no live position for {symbol}")

    if action == TradeAction.REDUCE:
        if ledger_position is not None and ledger_position.reduce_count >= max_reduce_count:
            return _refuse(f"reduce limit reached ({ledger_position.reduce_count}/{max_reduce_count})")
        return PASSED

    # ADD
    if ledger_position is not None and ledger_position.add_count >= max_add_count:
        return _refuse(f"add limit reached ({ledger_position.add_count}/{max_add_count})")

    pnl_pct = margin_pnl_pct(live)
    if pnl_pct < min_add_profit_pct:
        return _refuse(f"position not in profit enough to add ({pnl_pct:.2f}% < {min_add_profit_pct}%)")

    if ledger_position is not None and ledger_position.amount > 0:
        add_percent = params.add_percent if params and params.add_percent is not None else DEFAULT_ADD_PERCENT
        contracts = abs(live.contracts)
        new_size = contracts + contracts * add_percent / 100.0
        cap = ledger_position.amount * max_position_multiplier
        if new_size > cap:
            return _refuse(f"size after add {new_size:g} exceeds {max_position_multiplier}x ledger size ({cap:g})")

    if balance.available_balance <= 0:
        return _refuse("no available balance")
    return PASSED
