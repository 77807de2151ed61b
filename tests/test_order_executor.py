from unittest.mock import call

import pytest

from domain.errors import ErrorKind, ExchangeGatewayError
from domain.models import LegKind, LivePosition, TradeAction, TradeDecision, TradeParams

SYMBOL = 'BTC/USDT:USDT'


def _decision(action, **params):
    return TradeDecision(action=action, symbol=SYMBOL, params=TradeParams(**params) if params else None)


def _orders_of_type(gateway, order_type):
    return [c for c in gateway.create_order.call_args_list if c.args[1] == order_type]


class TestNoOps:

    def test_hold_makes_no_calls(self, executor, gateway, balance):
        assert executor.execute_decision(_decision(TradeAction.HOLD), balance) is None
        assert gateway.mock_calls == []

    @pytest.mark.parametrize("action", [TradeAction.LONG, TradeAction.SHORT, TradeAction.ADJUST])
    def test_missing_params_makes_no_calls(self, executor, gateway, balance, action):
        assert executor.execute_decision(_decision(action), balance) is None
        assert gateway.mock_calls == []

    def test_zero_price_returns_none(self, executor, gateway, balance):
        gateway.fetch_ticker.return_value = {'last': 0}
        result = executor.execute_decision(_decision(TradeAction.LONG, leverage=5, position_size_percent=10), balance)
        assert result is None
        gateway.create_order.assert_not_called()

    def test_amount_rounding_to_zero_returns_none(self, executor, gateway, balance):
        gateway.amount_to_precision.side_effect = lambda symbol, amount: "0"
        result = executor.execute_decision(_decision(TradeAction.LONG, leverage=1, position_size_percent=1), balance)
        assert result is None
        gateway.create_order.assert_not_called()


class TestOpen:

    def test_market_long_with_protection(self, executor, gateway, balance):
        decision = _decision(TradeAction.LONG, leverage=5, position_size_percent=10,
                             stop_loss_price=49000.0, take_profit_price=55000.0)
        result = executor.execute_decision(decision, balance)

        gateway.set_leverage.assert_called_once_with(SYMBOL, 5)
        # 1000 * 10% * 5 / 50000
        assert result.amount == pytest.approx(0.01)
        assert result.side == 'buy'
        assert result.price == 50000.0
        assert result.order_id == 'order-1'
        assert gateway.create_order.call_args_list[0] == call(SYMBOL, 'market', 'buy', 0.01)
        assert gateway.create_order.call_args_list[1] == call(
            SYMBOL, 'stop_market', 'sell', 0.01, None, {'stopPrice': 49000.0, 'reduceOnly': True},
        )
        assert gateway.create_order.call_args_list[2] == call(
            SYMBOL, 'take_profit_market', 'sell', 0.01, None, {'stopPrice': 55000.0, 'reduceOnly': True},
        )
        assert [leg.kind for leg in result.legs] == [
            LegKind.LEVERAGE, LegKind.ENTRY, LegKind.STOP_LOSS, LegKind.TAKE_PROFIT,
        ]
        assert result.failed_legs() == []

    def test_limit_short_uses_rounded_ticker_price(self, executor, gateway, balance):
        gateway.fetch_ticker.return_value = {'last': 50000.04}
        decision = _decision(TradeAction.SHORT, leverage=2, position_size_percent=50, order_type='LIMIT')
        result = executor.execute_decision(decision, balance)

        entry = gateway.create_order.call_args_list[0]
        assert entry.args[:3] == (SYMBOL, 'limit', 'sell')
        assert entry.args[4] == 50000.0
        assert result.type == 'LIMIT'
        assert len(result.legs) == 2

    def test_leverage_already_set_is_ignored(self, executor, gateway, balance):
        gateway.set_leverage.side_effect = ExchangeGatewayError(ErrorKind.NO_CHANGE, "No need to change leverage")
        result = executor.execute_decision(_decision(TradeAction.LONG, leverage=5, position_size_percent=10), balance)
        assert result is not None
        assert result.legs[0].ok

    def test_other_leverage_errors_propagate(self, executor, gateway, balance):
        gateway.set_leverage.side_effect = ExchangeGatewayError(ErrorKind.AUTH, "invalid api key")
        with pytest.raises(ExchangeGatewayError):
            executor.execute_decision(_decision(TradeAction.LONG, leverage=5, position_size_percent=10), balance)
        gateway.create_order.assert_not_called()

    def test_stop_loss_failure_still_returns_result(self, executor, gateway, balance):
        def create_order(symbol, order_type, side, amount, price=None, params=None):
            if order_type == 'stop_market':
                raise ExchangeGatewayError(ErrorKind.INVALID_ORDER, "stop price would trigger immediately")
            return {'id': f"{order_type}-1", 'status': 'open'}

        gateway.create_order.side_effect = create_order
        decision = _decision(TradeAction.LONG, leverage=5, position_size_percent=10,
                             stop_loss_price=49000.0, take_profit_price=55000.0)
        result = executor.execute_decision(decision, balance)

        assert result.order_id == 'market-1'
        failed = result.failed_legs()
        assert [leg.kind for leg in failed] == [LegKind.STOP_LOSS]
        assert failed[0].protective
        assert len(_orders_of_type(gateway, 'take_profit_market')) == 1

    def test_entry_failure_propagates(self, executor, gateway, balance):
        gateway.create_order.side_effect = ExchangeGatewayError(ErrorKind.INSUFFICIENT_FUNDS, "margin")
        with pytest.raises(ExchangeGatewayError):
            executor.execute_decision(_decision(TradeAction.LONG, leverage=5, position_size_percent=10), balance)
        assert gateway.create_order.call_count == 1

    def test_transient_ticker_failure_is_retried(self, executor, gateway, balance):
        gateway.fetch_ticker.side_effect = [
            ExchangeGatewayError(ErrorKind.TRANSIENT, "timeout"),
            {'last': 50000.0},
        ]
        result = executor.execute_decision(_decision(TradeAction.LONG, leverage=5, position_size_percent=10), balance)
        assert result is not None
        assert gateway.fetch_ticker.call_count == 2


class TestExistingPosition:

    def test_close(self, executor, gateway, balance, btc_long):
        gateway.fetch_positions.return_value = [btc_long]
        result = executor.execute_decision(_decision(TradeAction.CLOSE), balance)

        gateway.create_order.assert_called_once_with(SYMBOL, 'market', 'sell', 0.1, None, {'reduceOnly': True})
        gateway.cancel_all_orders.assert_called_once_with(SYMBOL)
        assert result.status == 'closed'
        assert result.amount == 0.1
        assert result.price == btc_long.mark_price

    def test_close_without_position(self, executor, gateway, balance):
        assert executor.close_position(SYMBOL) is None
        gateway.create_order.assert_not_called()

    def test_close_survives_cancel_failure(self, executor, gateway, btc_long):
        gateway.fetch_positions.return_value = [btc_long]
        gateway.cancel_all_orders.side_effect = ExchangeGatewayError(ErrorKind.BUSINESS, "no orders")
        result = executor.close_position(SYMBOL)
        assert result.status == 'closed'
        assert [leg.kind for leg in result.failed_legs()] == [LegKind.CANCEL]

    def test_close_short_buys(self, executor, gateway):
        gateway.fetch_positions.return_value = [
            LivePosition(symbol=SYMBOL, side='short', contracts=0.3, mark_price=50000.0),
        ]
        result = executor.close_position(SYMBOL)
        assert result.side == 'buy'
        assert result.amount == 0.3

    def test_add_defaults_to_half(self, executor, gateway, balance, btc_long):
        gateway.fetch_positions.return_value = [btc_long]
        result = executor.execute_decision(TradeDecision(action=TradeAction.ADD, symbol=SYMBOL), balance)
        gateway.create_order.assert_called_once_with(SYMBOL, 'market', 'buy', 0.05)
        assert result.status == 'added'

    def test_reduce_with_percent(self, executor, gateway, balance, btc_long):
        gateway.fetch_positions.return_value = [btc_long]
        result = executor.execute_decision(_decision(TradeAction.REDUCE, reduce_percent=50), balance)
        gateway.create_order.assert_called_once_with(SYMBOL, 'market', 'sell', 0.05, None, {'reduceOnly': True})
        assert result.status == 'reduced'

    def test_reduce_rounding_to_zero(self, executor, gateway, balance, btc_long):
        gateway.fetch_positions.return_value = [btc_long]
        gateway.amount_to_precision.side_effect = lambda symbol, amount: "0.000"
        assert executor.execute_decision(_decision(TradeAction.REDUCE, reduce_percent=1), balance) is None
        gateway.create_order.assert_not_called()

    def test_add_without_position(self, executor, gateway, balance):
        assert executor.execute_decision(_decision(TradeAction.ADD, add_percent=10), balance) is None

    def test_adjust_replaces_protection(self, executor, gateway, balance, btc_long):
        gateway.fetch_positions.return_value = [btc_long]
        result = executor.execute_decision(_decision(TradeAction.ADJUST, stop_loss_price=50500.0), balance)

        gateway.cancel_all_orders.assert_called_once_with(SYMBOL)
        gateway.create_order.assert_called_once_with(
            SYMBOL, 'stop_market', 'sell', 0.1, None, {'stopPrice': 50500.0, 'reduceOnly': True},
        )
        assert result.status == 'adjusted'
        assert result.amount == 0.1
        assert result.order_id == 'order-1'


class TestFillPrice:

    @pytest.fixture
    def unpriced_long(self, gateway):
        gateway.fetch_positions.return_value = [
            LivePosition(symbol=SYMBOL, side='long', contracts=0.1, mark_price=0.0),
        ]
        gateway.create_order.side_effect = lambda *args, **kwargs: {'id': 'fill-1', 'average': None, 'price': None}
        gateway.fetch_ticker.return_value = {'last': 50500.0}

    def test_add_falls_back_to_last_price(self, executor, gateway, balance, unpriced_long):
        result = executor.execute_decision(TradeDecision(action=TradeAction.ADD, symbol=SYMBOL), balance)
        assert result.price == 50500.0
        gateway.fetch_ticker.assert_called_once_with(SYMBOL)

    def test_close_falls_back_to_last_price(self, executor, gateway, unpriced_long):
        assert executor.close_position(SYMBOL).price == 50500.0

    def test_order_average_wins(self, executor, gateway, btc_long):
        gateway.fetch_positions.return_value = [btc_long]
        gateway.create_order.side_effect = lambda *args, **kwargs: {'id': 'fill-1', 'average': 50900.0}
        assert executor.close_position(SYMBOL).price == 50900.0
        gateway.fetch_ticker.assert_not_called()

    def test_unavailable_price_is_none(self, executor, gateway, unpriced_long):
        gateway.fetch_ticker.side_effect = ExchangeGatewayError(ErrorKind.BUSINESS, "no ticker")
        result = executor.close_position(SYMBOL)
        assert result.status == 'closed'
        assert result.price is None
