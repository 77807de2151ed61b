from unittest.mock import MagicMock

from app.circuit_breaker import EMERGENCY_STOP_REASON, CircuitBreaker


class TestTrips:

    def test_starts_closed(self, breaker):
        state = breaker.get_circuit_state()
        assert not breaker.is_circuit_tripped()
        assert state.tripped is False
        assert state.consecutive_losses == 0

    def test_three_losses_trip(self, breaker):
        for pnl in (-10, -20, -5):
            breaker.record_trade_result(pnl)
        state = breaker.get_circuit_state()
        assert breaker.is_circuit_tripped()
        assert state.reason == "3 consecutive losses"
        assert state.consecutive_losses == 3

    def test_win_resets_loss_streak(self, breaker):
        breaker.record_trade_result(-10)
        breaker.record_trade_result(-10)
        breaker.record_trade_result(5)
        breaker.record_trade_result(-10)
        state = breaker.get_circuit_state()
        assert not breaker.is_circuit_tripped()
        assert state.consecutive_losses == 1
        assert state.win_streak == 0
        assert state.loss_streak == 1

    def test_zero_pnl_counts_as_win(self, breaker):
        breaker.record_trade_result(-1)
        breaker.record_trade_result(0)
        state = breaker.get_circuit_state()
        assert state.consecutive_losses == 0
        assert state.win_streak == 1

    def test_api_failures_trip_at_threshold(self, breaker):
        for _ in range(4):
            breaker.record_api_failure()
        assert not breaker.is_circuit_tripped()
        breaker.record_api_failure()
        assert breaker.is_circuit_tripped()
        assert breaker.get_circuit_state().reason == "5 consecutive API failures"

    def test_api_success_resets_failures(self, breaker):
        for _ in range(4):
            breaker.record_api_failure()
        breaker.record_api_success()
        breaker.record_api_failure()
        assert breaker.get_circuit_state().consecutive_api_failures == 1
        assert not breaker.is_circuit_tripped()

    def test_daily_loss_at_limit_trips(self, breaker):
        breaker.update_daily_loss(4.99)
        assert not breaker.is_circuit_tripped()
        breaker.update_daily_loss(5.0)
        state = breaker.get_circuit_state()
        assert breaker.is_circuit_tripped()
        assert state.daily_loss_pct == 5.0
        assert "daily loss" in state.reason

    def test_trip_alerts_reporter(self, clock):
        reporter = MagicMock()
        breaker = CircuitBreaker(max_api_failures=1, clock=clock, reporter=reporter)
        breaker.record_api_failure()
        reporter.send_safety_report.assert_called_once_with("1 consecutive API failures")


class TestCooldown:

    def test_trip_expires_after_cooldown_without_mutation(self, breaker, clock):
        breaker.trip_circuit("test")
        clock.advance(59_999)
        assert breaker.is_circuit_tripped()

        clock.advance(1)
        assert not breaker.is_circuit_tripped()
        state = breaker.get_circuit_state()
        assert state.tripped is True
        assert state.reason == "test"

    def test_reset_clears_counters(self, breaker):
        for _ in range(3):
            breaker.record_trade_result(-1)
        breaker.reset_circuit()
        state = breaker.get_circuit_state()
        assert not breaker.is_circuit_tripped()
        assert state.tripped is False
        assert state.consecutive_losses == 0
        assert state.reason == ""
        assert state.cooldown_ms == 60_000


class TestEmergencyStop:

    def test_manual_stop_ignores_cooldown(self, breaker, clock):
        breaker.emergency_stop()
        clock.advance(10 * 60_000)
        state = breaker.get_circuit_state()
        assert breaker.is_circuit_tripped()
        assert state.manual_stop is True
        assert state.reason == EMERGENCY_STOP_REASON

    def test_reset_lifts_manual_stop(self, breaker):
        breaker.emergency_stop()
        breaker.reset_circuit()
        assert not breaker.is_circuit_tripped()
        assert breaker.get_circuit_state().manual_stop is False


def test_state_is_a_copy(breaker):
    state = breaker.get_circuit_state()
    state.tripped = True
    state.consecutive_losses = 99
    assert not breaker.is_circuit_tripped()
    assert breaker.get_circuit_state().consecutive_losses == 0
