import time

import pytest


class TestTradeLog:

    def test_queue_then_flush(self, persistence):
        persistence.add_trade_to_queue({'symbol': 'BTC/USDT:USDT', 'action': 'LONG', 'amount': 0.01,
                                        'unknown_field': 'ignored'})
        persistence.add_trade_to_queue({'symbol': 'ETH/USDT:USDT', 'action': 'CLOSE', 'status': 'closed'})
        assert persistence.get_recent_trades() == []

        assert persistence.flush() == 2
        assert persistence.flush() == 0
        trades = persistence.get_recent_trades()
        assert [t['symbol'] for t in trades] == ['ETH/USDT:USDT', 'BTC/USDT:USDT']
        assert trades[1]['status'] == 'executed'
        assert len(persistence.get_today_trades()) == 2

    def test_background_writer(self, persistence):
        persistence.start()
        try:
            persistence.add_trade_to_queue({'symbol': 'BTC/USDT:USDT', 'action': 'LONG'})
            deadline = time.time() + 2
            while persistence.trade_queue and time.time() < deadline:
                time.sleep(0.01)
        finally:
            persistence.stop()
        assert len(persistence.get_recent_trades()) == 1


class TestDailyPnl:

    def test_first_update_fixes_starting_balance(self, persistence):
        persistence.update_daily_pnl('2024-05-01', 1000.0)
        persistence.update_daily_pnl('2024-05-01', 960.0)
        day = persistence.get_daily_pnl('2024-05-01')
        assert day['starting_balance'] == 1000.0
        assert day['ending_balance'] == 960.0
        assert persistence.compute_daily_loss_pct('2024-05-01', 960.0) == pytest.approx(4.0)

    def test_gain_is_zero_loss(self, persistence):
        persistence.update_daily_pnl('2024-05-01', 1000.0)
        assert persistence.compute_daily_loss_pct('2024-05-01', 1100.0) == 0.0

    def test_unknown_day(self, persistence):
        assert persistence.get_daily_pnl('1999-01-01') is None
        assert persistence.compute_daily_loss_pct('1999-01-01', 1000.0) == 0.0

    def test_realized_before_first_balance(self, persistence):
        persistence.record_realized_pnl('2024-05-02', -25.0)
        persistence.update_daily_pnl('2024-05-02', 975.0)
        day = persistence.get_daily_pnl('2024-05-02')
        assert day['starting_balance'] == 975.0
        assert day['realized_pnl'] == -25.0
        assert day['trade_count'] == 1

    def test_history_newest_first(self, persistence):
        for day in ('2024-05-01', '2024-05-02', '2024-05-03'):
            persistence.update_daily_pnl(day, 1000.0)
        history = persistence.get_daily_pnl_history(days=2)
        assert [d['date'] for d in history] == ['2024-05-03', '2024-05-02']
