#
# ------------------------------------------------------------
# File: app/trading_service.py
# Executes decisions under the breaker gate and keeps the ledger,
# trade log and daily PnL in step with the exchange
# ------------------------------------------------------------
#

import logging
import threading
from typing import Dict, List, Optional, Tuple

from app.circuit_breaker import CircuitBreaker
from app.order_executor import OrderExecutor
from domain.errors import LedgerError, UnbookedFillError
from domain.exit_policy import check_trigger
from domain.models import (
    AccountBalance, EmergencyStopReport, LivePosition, OrderResult, Position, TradeAction,
    TradeDecision, TriggerResult,
)
from domain.risk_limits import check_hard_limits
from infra.persistence_service import PersistenceService
from infra.position_ledger import PositionLedger
from infra.telegram_bot import TelegramReporter
from utils.helpers import utc_today

logger = logging.getLogger(__name__)

ORPHAN_EXIT_ORDER_ID = "auto-cleanup"


class TradingService:

    def __init__(self, executor: OrderExecutor, ledger: PositionLedger, persistence: PersistenceService,
                 breaker: CircuitBreaker, reporter: Optional[TelegramReporter] = None):
        self.executor = executor
        self.ledger = ledger
        self.persistence = persistence
        self.breaker = breaker
        self.reporter = reporter
        self._symbol_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _symbol_lock(self, symbol: str) -> threading.Lock:
        with self._locks_guard:
            if symbol not in self._symbol_locks:
                self._symbol_locks[symbol] = threading.Lock()
            return self._symbol_locks[symbol]

    # --- decisions ---

    def execute_decision(self, decision: TradeDecision, balance: AccountBalance,
                         live_positions: Optional[List[LivePosition]] = None) -> Optional[OrderResult]:
        """
        Run one decision against the exchange and record what was filled.

        Returns None when the breaker is tripped, a hard limit refuses the
        decision or the executor did nothing. Exchange failures propagate.
        A fill the ledger cannot record raises UnbookedFillError carrying
        the result. `live_positions` is fetched for ADD / REDUCE when not
        supplied.
        """
        action = TradeAction(decision.action)
        symbol = decision.symbol
        if action == TradeAction.HOLD:
            return None
        if self.breaker.is_circuit_tripped():
            logger.warning("Circuit breaker tripped, %s on %s refused", action.value, symbol)
            return None

        with self._symbol_lock(symbol):
            if live_positions is None and action in (TradeAction.ADD, TradeAction.REDUCE):
                live_positions = self.executor.fetch_live_positions()
            check = check_hard_limits(
                decision, balance, live_positions or [], self.ledger.get_open_position_by_symbol(symbol),
            )
            if not check.passed:
                logger.warning("%s on %s refused: %s", action.value, symbol, check.reason)
                return None

            result = self.executor.execute_decision(decision, balance)
            if result is None:
                return None
            self._log_trade(action, result, decision)
            try:
                self._book(action, decision, result)
            except LedgerError as e:
                self._raise_unbooked(action, result, e)

        if self.reporter:
            self.reporter.send_trade_report(action.value, result)
        return result

    def _raise_unbooked(self, action: TradeAction, result: OrderResult, error: LedgerError):
        message = f"{action.value} {result.symbol} filled (order {result.order_id}) but not booked: {error}"
        logger.error(message)
        if self.reporter:
            self.reporter.send_error_report(f"Ledger update failed: {result.symbol}", message)
        raise UnbookedFillError(message, result) from error

    def _book(self, action: TradeAction, decision: TradeDecision, result: OrderResult):
        symbol = decision.symbol
        params = decision.params
        if action != TradeAction.ADJUST and not (result.price and result.price > 0):
            raise LedgerError(f"no fill price for {symbol} order {result.order_id}")

        if action in (TradeAction.LONG, TradeAction.SHORT):
            self.ledger.record_open(
                symbol, result.side, result.amount, result.price,
                leverage=params.leverage if params else None,
                stop_loss=params.stop_loss_price if params else None,
                take_profit=params.take_profit_price if params else None,
                order_id=result.order_id,
            )
        elif action == TradeAction.ADD:
            position = self.ledger.record_add(symbol, result.amount, result.price)
            if params and (params.stop_loss_price or params.take_profit_price):
                self._update_sltp(position, params.stop_loss_price, params.take_profit_price)
        elif action == TradeAction.REDUCE:
            position, _ = self.ledger.record_reduce(symbol, result.amount, result.price)
            if not position.is_open:
                self._on_position_closed(position)
        elif action == TradeAction.CLOSE:
            self._book_close(symbol, result)
        elif action == TradeAction.ADJUST:
            position = self.ledger.get_open_position_by_symbol(symbol)
            if position is not None:
                self._update_sltp(position, params.stop_loss_price, params.take_profit_price)

    def _book_close(self, symbol: str, result: OrderResult) -> Optional[Position]:
        if self.ledger.get_open_position_by_symbol(symbol) is None:
            # untracked position, nothing to book
            return None
        if not (result.price and result.price > 0):
            raise LedgerError(f"no fill price for {symbol} order {result.order_id}")
        position = self.ledger.record_close(symbol, result.price, result.order_id)
        if position is not None:
            self._on_position_closed(position)
        return position

    def _update_sltp(self, position: Position, stop_loss: Optional[float], take_profit: Optional[float]):
        """ Thresholds not supplied keep their current value. """
        self.ledger.update_position_sltp(
            position.symbol,
            stop_loss if stop_loss else position.stop_loss,
            take_profit if take_profit else position.take_profit,
        )

    def _on_position_closed(self, position: Position):
        pnl = position.pnl or 0.0
        self.breaker.record_trade_result(pnl)
        self.persistence.record_realized_pnl(utc_today(), pnl)

    def _log_trade(self, action: TradeAction, result: OrderResult, decision: Optional[TradeDecision] = None):
        params = decision.params if decision else None
        self.persistence.add_trade_to_queue({
            'symbol': result.symbol,
            'action': action.value,
            'side': result.side,
            'amount': result.amount,
            'price': result.price,
            'leverage': params.leverage if params else None,
            'stop_loss': params.stop_loss_price if params else None,
            'take_profit': params.take_profit_price if params else None,
            'order_id': result.order_id,
            'confidence': decision.confidence if decision else None,
            'reasoning': decision.reasoning if decision else None,
            'status': result.status,
        })

    # --- closing ---

    def close_position(self, symbol: str, reason: str = "manual") -> Optional[OrderResult]:
        """ Flatten one symbol on the exchange and close it in the ledger. Not gated by the breaker. """
        with self._symbol_lock(symbol):
            result = self.executor.close_position(symbol)
            if result is None:
                return None
            self._log_trade(TradeAction.CLOSE, result)
            try:
                position = self._book_close(symbol, result)
            except LedgerError as e:
                self._raise_unbooked(TradeAction.CLOSE, result, e)

        logger.info("Closed %s (%s)", symbol, reason)
        if self.reporter:
            self.reporter.send_exit_report(
                symbol, reason, result.price, position.pnl if position is not None else None,
            )
        return result

    def monitor_open_positions(self, live_positions: List[LivePosition]) -> List[Tuple[str, TriggerResult]]:
        """
        Check every open ledger position against its live mark price and
        close the ones whose stop-loss or take-profit has been reached.
        """
        marks = {p.symbol: p.mark_price for p in live_positions}
        triggered = []
        for position in self.ledger.get_open_positions():
            mark_price = marks.get(position.symbol)
            if mark_price is None:
                continue
            trigger = check_trigger(position.side, mark_price, position.stop_loss, position.take_profit)
            if trigger == TriggerResult.NONE:
                continue

            logger.warning("%s hit on %s (mark %s)", trigger.value.upper(), position.symbol, mark_price)
            try:
                self.close_position(position.symbol, reason=trigger.value.upper())
            except Exception:
                logger.exception("Failed to close %s after %s", position.symbol, trigger.value.upper())
                self.breaker.record_api_failure()
                continue
            triggered.append((position.symbol, trigger))
        return triggered

    def reconcile_orphans(self, live_positions: List[LivePosition]) -> List[str]:
        """
        Close ledger positions that no longer exist on the exchange
        (closed by an exchange-side stop, liquidated, or closed by hand).
        """
        live_symbols = {p.symbol for p in live_positions if abs(p.contracts or 0.0) > 0}
        cleaned = []
        for position in self.ledger.get_open_positions():
            if position.symbol in live_symbols:
                continue
            with self._symbol_lock(position.symbol):
                self.executor.cancel_open_orders(position.symbol)
                closed = self.ledger.record_close(
                    position.symbol, 0.0, ORPHAN_EXIT_ORDER_ID, pnl=position.realized_pnl_accum or 0.0,
                )
            if closed is not None:
                logger.warning("Orphan ledger position %s closed (no exchange position)", position.symbol)
                cleaned.append(position.symbol)
        return cleaned

    def emergency_stop(self) -> EmergencyStopReport:
        """
        Block all new actions, then try to flatten every live position.
        Each symbol is attempted even when others fail.
        """
        self.breaker.emergency_stop()
        report = EmergencyStopReport()

        try:
            live_positions = self.executor.fetch_live_positions()
        except Exception as e:
            logger.error("Emergency stop: could not fetch positions: %s", e)
            report.failures['*'] = str(e)
            live_positions = []

        for live in live_positions:
            if abs(live.contracts or 0.0) <= 0:
                continue
            try:
                result = self.close_position(live.symbol, reason="emergency stop")
            except UnbookedFillError as e:
                # flat on the exchange, only the ledger lags
                report.closed.append(live.symbol)
                logger.error("Emergency stop: %s", e)
                continue
            except Exception as e:
                logger.error("Emergency stop: failed to close %s: %s", live.symbol, e)
                report.failures[live.symbol] = str(e)
                continue
            if result is None:
                report.already_flat.append(live.symbol)
            else:
                report.closed.append(live.symbol)

        if report.ok:
            logger.warning("Emergency stop complete, closed: %s", report.closed or "nothing")
        else:
            logger.error("Emergency stop incomplete, still exposed: %s", list(report.failures))
        if self.reporter:
            self.reporter.send_emergency_report(report)
        return report
