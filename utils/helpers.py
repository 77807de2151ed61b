#
# ------------------------------------------------------------
# File: utils/helpers.py
# Position math (weighted average entry, realized PnL)
# ------------------------------------------------------------
#

from datetime import datetime, timezone

from domain.models import LONG_SIDES


def calc_new_avg_entry(old_avg_entry: float, old_amount: float, add_price: float, add_amount: float) -> float:
    """
    Weighted average entry after adding `add_amount` at `add_price`.

    (old_avg * old_amount + add_price * add_amount) / (old_amount + add_amount),
    or `add_price` when the combined amount is zero.
    """
    total_amount = old_amount + add_amount
    if total_amount <= 0:
        return add_price
    return (old_avg_entry * old_amount + add_price * add_amount) / total_amount


def calc_reduce_pnl(side: str, entry_price: float, exit_price: float, reduce_amount: float) -> float:
    """ Realized PnL of closing `reduce_amount` at `exit_price`. """
    if side in LONG_SIDES:
        return (exit_price - entry_price) * reduce_amount
    return (entry_price - exit_price) * reduce_amount


def parse_amount(value) -> float:
    """ Precision helpers return strings; empty or missing counts as zero. """
    if value is None or value == "":
        return 0.0
    return float(value)


def utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def format_pnl(pnl: float) -> str:
    sign = "+" if pnl >= 0 else ""
    return f"{sign}{pnl:.2f} USDT"
