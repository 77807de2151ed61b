#
# ------------------------------------------------------------
# File: domain/exit_policy.py
# Stop-loss / take-profit trigger evaluation
# ------------------------------------------------------------
#
from typing import Optional

from domain.models import LONG_SIDES, TriggerResult


def check_trigger(
    side: str,
    mark_price: float,
    stop_loss: Optional[float] = None,
    take_profit: Optional[float] = None,
) -> TriggerResult:
    """
    Decide whether a live position has breached its stop-loss or take-profit.

    Bounds are inclusive and the stop-loss is checked first, so a price that
    breaches both resolves to SL. A threshold of None or 0 counts as unset.
    """
    if mark_price is None or mark_price <= 0:
        return TriggerResult.NONE
    if not stop_loss and not take_profit:
        return TriggerResult.NONE

    if side in LONG_SIDES:
        if stop_loss and mark_price <= stop_loss:
            return TriggerResult.SL
        if take_profit and mark_price >= take_profit:
            return TriggerResult.TP
    else:
        if stop_loss and mark_price >= stop_loss:
            return TriggerResult.SL
        if take_profit and mark_price <= take_profit:
            return TriggerResult.TP

    return TriggerResult.NONE
