#
# ------------------------------------------------------------
# File: app/circuit_breaker.py
# Process-wide circuit breaker: trips on loss streaks, API failures
# and daily drawdown; manual emergency stop
# ------------------------------------------------------------
#

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Optional

from config.settings import (
    CIRCUIT_COOLDOWN_MS,
    MAX_CONSECUTIVE_API_FAILURES,
    MAX_CONSECUTIVE_LOSSES,
    MAX_DAILY_LOSS_PCT,
)
from domain.models import CircuitState
from infra.telegram_bot import TelegramReporter, telegram_reporter

logger = logging.getLogger(__name__)

EMERGENCY_STOP_REASON = "manual emergency stop"


def _now_ms() -> int:
    return int(time.time() * 1000)


class CircuitBreaker:
    """
    Gate for new trading actions.

    States: normal -> tripped (cooldown) or tripped (manual stop).
    An automatic trip stops being reported once the cooldown has elapsed,
    but the state is only cleared by reset_circuit(). A manual stop never
    expires on its own.
    """

    def __init__(
        self,
        cooldown_ms: int = CIRCUIT_COOLDOWN_MS,
        max_consecutive_losses: int = MAX_CONSECUTIVE_LOSSES,
        max_api_failures: int = MAX_CONSECUTIVE_API_FAILURES,
        max_daily_loss_pct: float = MAX_DAILY_LOSS_PCT,
        clock: Callable[[], int] = _now_ms,
        reporter: Optional[TelegramReporter] = None,
    ):
        self.max_consecutive_losses = max_consecutive_losses
        self.max_api_failures = max_api_failures
        self.max_daily_loss_pct = max_daily_loss_pct
        self._clock = clock
        self._reporter = reporter
        self._lock = threading.RLock()
        self._state = CircuitState(cooldown_ms=cooldown_ms)

    # --- queries ---

    def is_circuit_tripped(self) -> bool:
        with self._lock:
            if self._state.manual_stop:
                return True
            if self._state.tripped:
                elapsed = self._clock() - self._state.tripped_at
                # expiry is reported, not applied: counters stay until reset_circuit()
                return elapsed < self._state.cooldown_ms
            return False

    def get_circuit_state(self) -> CircuitState:
        """ Independent copy of the current state. """
        with self._lock:
            return replace(self._state)

    # --- outcome feeds ---

    def record_trade_result(self, pnl: float):
        """ pnl < 0 is a loss; zero counts as a win. """
        reason = None
        with self._lock:
            state = self._state
            if pnl < 0:
                state.consecutive_losses += 1
                state.loss_streak += 1
                state.win_streak = 0
            else:
                state.consecutive_losses = 0
                state.loss_streak = 0
                state.win_streak += 1

            if state.consecutive_losses >= self.max_consecutive_losses:
                reason = f"{state.consecutive_losses} consecutive losses"
                self._set_tripped(reason)
        if reason:
            self._announce_trip(reason)

    def record_api_failure(self):
        reason = None
        with self._lock:
            self._state.consecutive_api_failures += 1
            if self._state.consecutive_api_failures >= self.max_api_failures:
                reason = f"{self._state.consecutive_api_failures} consecutive API failures"
                self._set_tripped(reason)
        if reason:
            self._announce_trip(reason)

    def record_api_success(self):
        with self._lock:
            self._state.consecutive_api_failures = 0

    def update_daily_loss(self, daily_loss_pct: float):
        reason = None
        with self._lock:
            self._state.daily_loss_pct = daily_loss_pct
            if daily_loss_pct >= self.max_daily_loss_pct:
                reason = f"daily loss {daily_loss_pct:.2f}% exceeds {self.max_daily_loss_pct}%"
                self._set_tripped(reason)
        if reason:
            self._announce_trip(reason)

    # --- transitions ---

    def _set_tripped(self, reason: str):
        # caller holds the lock
        self._state.tripped = True
        self._state.reason = reason
        self._state.tripped_at = self._clock()

    def _announce_trip(self, reason: str):
        logger.error("CIRCUIT BREAKER TRIPPED: %s", reason)
        if self._reporter:
            self._reporter.send_safety_report(reason)

    def trip_circuit(self, reason: str):
        with self._lock:
            self._set_tripped(reason)
        self._announce_trip(reason)

    def emergency_stop(self):
        with self._lock:
            self._set_tripped(EMERGENCY_STOP_REASON)
            self._state.manual_stop = True
        logger.error("EMERGENCY STOP activated")
        if self._reporter:
            self._reporter.send_safety_report(EMERGENCY_STOP_REASON)

    def reset_circuit(self):
        with self._lock:
            self._state = CircuitState(cooldown_ms=self._state.cooldown_ms)
        logger.info("Circuit breaker reset")


# --- instance ---
circuit_breaker = CircuitBreaker(reporter=telegram_reporter)
