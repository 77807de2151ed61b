#
# ------------------------------------------------------------
# File: app/bot_loop.py
# Periodic trading cycle: account state, housekeeping, SL/TP
# monitor, then one decision per symbol in parallel batches
# ------------------------------------------------------------
#

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional

from app.circuit_breaker import CircuitBreaker
from app.trading_service import TradingService
from config.settings import LOOP_INTERVAL_SECONDS, MAX_CONCURRENCY, TRADING_PAIRS
from domain.errors import LedgerError
from domain.models import AccountBalance, LivePosition, OrderResult, TradeAction, TradeDecision
from infra.persistence_service import PersistenceService
from infra.telegram_bot import TelegramReporter
from utils.helpers import utc_today

logger = logging.getLogger(__name__)

# (symbol, balance, live position or None) -> decision or None
DecisionSource = Callable[[str, AccountBalance, Optional[LivePosition]], Optional[TradeDecision]]


def hold_everything(symbol: str, balance: AccountBalance, position: Optional[LivePosition]) -> TradeDecision:
    """ Default decision source: never trades. """
    return TradeDecision(action=TradeAction.HOLD, symbol=symbol, reasoning="no decision source configured")


class BotLoop:

    def __init__(
        self,
        trading_service: TradingService,
        persistence: PersistenceService,
        breaker: CircuitBreaker,
        decision_source: DecisionSource = hold_everything,
        symbols: Optional[List[str]] = None,
        interval_seconds: float = LOOP_INTERVAL_SECONDS,
        max_concurrency: int = MAX_CONCURRENCY,
        reporter: Optional[TelegramReporter] = None,
    ):
        self.trading_service = trading_service
        self.executor = trading_service.executor
        self.persistence = persistence
        self.breaker = breaker
        self.decision_source = decision_source
        self.symbols = list(TRADING_PAIRS if symbols is None else symbols)
        self.interval_seconds = interval_seconds
        self.max_concurrency = max(1, max_concurrency)
        self.reporter = reporter
        self._stop_event = threading.Event()

    # --- one cycle ---

    def tick(self) -> bool:
        """ Run one cycle. Returns False when it stopped before running decisions. """
        if self.breaker.is_circuit_tripped():
            logger.warning("Circuit breaker tripped (%s), skipping cycle", self.breaker.get_circuit_state().reason)
            return False

        try:
            balance = self.executor.fetch_balance()
            positions = self.executor.fetch_live_positions()
        except Exception:
            logger.exception("Failed to fetch account state")
            self.breaker.record_api_failure()
            return False
        self.breaker.record_api_success()

        self.trading_service.reconcile_orphans(positions)

        today = utc_today()
        self.persistence.update_daily_pnl(today, balance.total_balance)
        self.breaker.update_daily_loss(self.persistence.compute_daily_loss_pct(today, balance.total_balance))

        self.trading_service.monitor_open_positions(positions)

        if self.breaker.is_circuit_tripped():
            logger.warning("Circuit breaker tripped during housekeeping, no new decisions this cycle")
            return False

        self._run_decisions(balance, positions)
        return True

    def _run_decisions(self, balance: AccountBalance, positions: List[LivePosition]):
        live_by_symbol = {p.symbol: p for p in positions}
        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="decision") as pool:
            for start in range(0, len(self.symbols), self.max_concurrency):
                batch = self.symbols[start:start + self.max_concurrency]
                futures = {
                    pool.submit(self._process_symbol, symbol, balance, live_by_symbol.get(symbol)): symbol
                    for symbol in batch
                }
                for future in as_completed(futures):
                    symbol = futures[future]
                    try:
                        result = future.result()
                    except LedgerError:
                        logger.exception("Ledger out of step for %s", symbol)
                        continue
                    except Exception:
                        logger.exception("Error processing %s", symbol)
                        self.breaker.record_api_failure()
                        continue
                    if result is not None:
                        self.breaker.record_api_success()

    def _process_symbol(self, symbol: str, balance: AccountBalance,
                        position: Optional[LivePosition]) -> Optional[OrderResult]:
        decision = self.decision_source(symbol, balance, position)
        if decision is None or TradeAction(decision.action) == TradeAction.HOLD:
            return None
        logger.info("Decision for %s: %s (confidence %.2f)", symbol, TradeAction(decision.action).value,
                    decision.confidence)
        return self.trading_service.execute_decision(decision, balance, [position] if position else [])

    # --- lifecycle ---

    def start(self):
        """ Block and run a cycle every interval until stop() is called. """
        self._stop_event.clear()
        self.persistence.start()
        logger.info("Bot loop started: %d symbols every %ss", len(self.symbols), self.interval_seconds)
        if self.reporter:
            self.reporter.send_system_report("Bot started", f"Symbols: {', '.join(self.symbols)}")

        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception("Trading cycle failed")
                if self.reporter:
                    self.reporter.send_error_report("Trading cycle failed", str(e))
            self._stop_event.wait(self.interval_seconds)

    def stop(self):
        self._stop_event.set()
        self.persistence.stop()
        logger.info("Bot loop stopped")
