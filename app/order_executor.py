#
# ------------------------------------------------------------
# File: app/order_executor.py
# Turns a TradeDecision into an ordered sequence of exchange calls
# ------------------------------------------------------------
#

import logging
from typing import Any, Callable, Dict, List, Optional

from config.settings import DEFAULT_ADD_PERCENT, DEFAULT_REDUCE_PERCENT
from domain.errors import ErrorKind, ExchangeGatewayError
from domain.models import (
    AccountBalance, LegKind, LegResult, LivePosition, OrderResult, TradeAction, TradeDecision,
    entry_order_side, opposite_order_side,
)
from infra.exchange_client import ExchangeClient
from utils.helpers import parse_amount
from utils.retry import call_with_retry

logger = logging.getLogger(__name__)

PROTECTIVE_ORDER_TYPES = {
    LegKind.STOP_LOSS: 'stop_market',
    LegKind.TAKE_PROFIT: 'take_profit_market',
}


class OrderExecutor:
    """
    Exchange-side half of executing a decision.

    Position-changing orders (entry, close, add, reduce) propagate their
    failures. Protective legs (stop-loss, take-profit, order cancellation)
    are best effort: a failure is logged and recorded as a failed LegResult.
    """

    def __init__(
        self,
        gateway: ExchangeClient,
        default_add_percent: float = DEFAULT_ADD_PERCENT,
        default_reduce_percent: float = DEFAULT_REDUCE_PERCENT,
        retry_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.gateway = gateway
        self.default_add_percent = default_add_percent
        self.default_reduce_percent = default_reduce_percent
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    def _retry(self, fn: Callable[[], Any], label: str) -> Any:
        return call_with_retry(fn, label, self.retry_attempts, self.retry_delay)

    # --- entry point ---

    def execute_decision(self, decision: TradeDecision, balance: AccountBalance) -> Optional[OrderResult]:
        action = TradeAction(decision.action)
        symbol = decision.symbol

        if action == TradeAction.HOLD:
            logger.info("HOLD decision for %s, no action", symbol)
            return None
        if action == TradeAction.CLOSE:
            return self.close_position(symbol)
        if action == TradeAction.ADD:
            return self._add(decision)
        if action == TradeAction.REDUCE:
            return self._reduce(decision)
        if action == TradeAction.ADJUST:
            return self._adjust(decision)
        return self._open(decision, balance)

    # --- LONG / SHORT ---

    def set_leverage(self, symbol: str, leverage: int) -> LegResult:
        """ An unchanged leverage is fine; any other failure propagates. """
        try:
            self._retry(lambda: self.gateway.set_leverage(symbol, leverage), f"set_leverage({symbol})")
            logger.info("Set leverage for %s to %sx", symbol, leverage)
        except ExchangeGatewayError as e:
            if e.kind != ErrorKind.NO_CHANGE:
                raise
            logger.debug("Leverage for %s already %sx", symbol, leverage)
        return LegResult(LegKind.LEVERAGE, ok=True)

    def _open(self, decision: TradeDecision, balance: AccountBalance) -> Optional[OrderResult]:
        symbol = decision.symbol
        params = decision.params
        if params is None:
            logger.warning("No params for %s on %s", TradeAction(decision.action).value, symbol)
            return None

        legs: List[LegResult] = [self.set_leverage(symbol, params.leverage)]
        side = 'buy' if decision.action == TradeAction.LONG else 'sell'

        ticker = self._retry(lambda: self.gateway.fetch_ticker(symbol), f"fetch_ticker({symbol})")
        price = float(ticker.get('last') or 0.0)
        if price <= 0:
            logger.warning("Invalid price for %s: %s, skipping entry", symbol, price)
            return None

        position_value = balance.available_balance * (params.position_size_percent / 100.0)
        raw_amount = position_value * params.leverage / price
        amount = parse_amount(self.gateway.amount_to_precision(symbol, raw_amount))
        if amount <= 0:
            logger.warning("Calculated amount too small for %s (%s)", symbol, raw_amount)
            return None

        order_type = (params.order_type or 'MARKET').upper()
        if order_type == 'MARKET':
            order = self._retry(
                lambda: self.gateway.create_order(symbol, 'market', side, amount),
                f"create_market_order({symbol})",
            )
        else:
            limit_price = float(self.gateway.price_to_precision(symbol, price))
            order = self._retry(
                lambda: self.gateway.create_order(symbol, 'limit', side, amount, limit_price),
                f"create_limit_order({symbol})",
            )
        legs.append(LegResult(LegKind.ENTRY, ok=True, order_id=order.get('id')))
        logger.info("Order placed: %s %s %s (id %s)", side, amount, symbol, order.get('id'))

        exit_side = opposite_order_side(side)
        if params.stop_loss_price:
            legs.append(self._protective_order(LegKind.STOP_LOSS, symbol, exit_side, amount, params.stop_loss_price))
        if params.take_profit_price:
            legs.append(self._protective_order(LegKind.TAKE_PROFIT, symbol, exit_side, amount, params.take_profit_price))

        return OrderResult(
            order_id=order.get('id'),
            symbol=symbol,
            side=side,
            type=order_type,
            amount=amount,
            price=self._fill_price(symbol, order, price),
            status=order.get('status') or 'created',
            legs=legs,
        )

    # --- best-effort legs ---

    def _protective_order(self, kind: LegKind, symbol: str, side: str, amount: float,
                          trigger_price: float) -> LegResult:
        """ Reduce-only stop / take-profit order. Never raises. """
        label = "Stop loss" if kind == LegKind.STOP_LOSS else "Take profit"
        try:
            stop_price = float(self.gateway.price_to_precision(symbol, trigger_price))
            order = self._retry(
                lambda: self.gateway.create_order(
                    symbol, PROTECTIVE_ORDER_TYPES[kind], side, amount, None,
                    {'stopPrice': stop_price, 'reduceOnly': True},
                ),
                f"create_{kind.value.lower()}({symbol})",
            )
        except Exception as e:
            logger.warning("Failed to set %s for %s: %s", label.lower(), symbol, e)
            return LegResult(kind, ok=False, error=str(e))
        logger.info("%s set at %s for %s", label, stop_price, symbol)
        return LegResult(kind, ok=True, order_id=order.get('id'))

    def cancel_open_orders(self, symbol: str) -> LegResult:
        """ Cancel every open order for the symbol. Never raises. """
        try:
            self._retry(lambda: self.gateway.cancel_all_orders(symbol), f"cancel_all_orders({symbol})")
        except Exception as e:
            logger.warning("Failed to cancel orders for %s: %s", symbol, e)
            return LegResult(LegKind.CANCEL, ok=False, error=str(e))
        logger.info("Cancelled open orders for %s", symbol)
        return LegResult(LegKind.CANCEL, ok=True)

    def _fill_price(self, symbol: str, order: Dict[str, Any], reference: Optional[float]) -> Optional[float]:
        """
        Order average, then order price, then the reference (ticker or mark)
        price. When none of them is positive the last traded price is
        fetched; None only when that fails too.
        """
        for candidate in (order.get('average'), order.get('price'), reference):
            if candidate and float(candidate) > 0:
                return float(candidate)
        try:
            ticker = self._retry(lambda: self.gateway.fetch_ticker(symbol), f"fetch_ticker({symbol})")
        except Exception as e:
            logger.error("No fill price for %s order %s: %s", symbol, order.get('id'), e)
            return None
        last = float(ticker.get('last') or 0.0)
        if last <= 0:
            logger.error("No fill price for %s order %s", symbol, order.get('id'))
            return None
        return last

    # --- positions already on the exchange ---

    def fetch_balance(self) -> AccountBalance:
        return self._retry(lambda: self.gateway.fetch_balance(), "fetch_balance")

    def fetch_live_positions(self) -> List[LivePosition]:
        return self._retry(lambda: self.gateway.fetch_positions(), "fetch_positions")

    def _fetch_live_position(self, symbol: str) -> Optional[LivePosition]:
        positions = self._retry(lambda: self.gateway.fetch_positions([symbol]), f"fetch_positions({symbol})")
        for position in positions:
            if position.symbol == symbol and abs(position.contracts or 0.0) > 0:
                return position
        return None

    def close_position(self, symbol: str) -> Optional[OrderResult]:
        position = self._fetch_live_position(symbol)
        if position is None:
            logger.info("No open position to close for %s", symbol)
            return None

        side = opposite_order_side(position.side)
        amount = abs(position.contracts)
        order = self._retry(
            lambda: self.gateway.create_order(symbol, 'market', side, amount, None, {'reduceOnly': True}),
            f"close_position({symbol})",
        )
        legs = [LegResult(LegKind.CLOSE, ok=True, order_id=order.get('id'))]
        logger.info("Position closed: %s (id %s)", symbol, order.get('id'))

        legs.append(self.cancel_open_orders(symbol))

        return OrderResult(
            order_id=order.get('id'),
            symbol=symbol,
            side=side,
            type='MARKET',
            amount=amount,
            price=self._fill_price(symbol, order, position.mark_price),
            status='closed',
            legs=legs,
        )

    def _add(self, decision: TradeDecision) -> Optional[OrderResult]:
        symbol = decision.symbol
        position = self._fetch_live_position(symbol)
        if position is None:
            logger.info("No open position to add to for %s", symbol)
            return None

        params = decision.params
        percent = params.add_percent if params and params.add_percent is not None else self.default_add_percent
        amount = parse_amount(self.gateway.amount_to_precision(symbol, abs(position.contracts) * percent / 100.0))
        if amount <= 0:
            logger.warning("Add amount too small for %s", symbol)
            return None

        side = entry_order_side(position.side)
        order = self._retry(
            lambda: self.gateway.create_order(symbol, 'market', side, amount),
            f"add_position({symbol})",
        )
        logger.info("Added %s to %s %s (id %s)", amount, position.side, symbol, order.get('id'))
        return OrderResult(
            order_id=order.get('id'),
            symbol=symbol,
            side=side,
            type='MARKET',
            amount=amount,
            price=self._fill_price(symbol, order, position.mark_price),
            status='added',
            legs=[LegResult(LegKind.ADD, ok=True, order_id=order.get('id'))],
        )

    def _reduce(self, decision: TradeDecision) -> Optional[OrderResult]:
        symbol = decision.symbol
        position = self._fetch_live_position(symbol)
        if position is None:
            logger.info("No open position to reduce for %s", symbol)
            return None

        params = decision.params
        percent = (
            params.reduce_percent if params and params.reduce_percent is not None
            else self.default_reduce_percent
        )
        amount = parse_amount(self.gateway.amount_to_precision(symbol, abs(position.contracts) * percent / 100.0))
        if amount <= 0:
            logger.warning("Reduce amount too small for %s", symbol)
            return None

        side = opposite_order_side(position.side)
        order = self._retry(
            lambda: self.gateway.create_order(symbol, 'market', side, amount, None, {'reduceOnly': True}),
            f"reduce_position({symbol})",
        )
        logger.info("Reduced %s %s by %s (id %s)", position.side, symbol, amount, order.get('id'))
        return OrderResult(
            order_id=order.get('id'),
            symbol=symbol,
            side=side,
            type='MARKET',
            amount=amount,
            price=self._fill_price(symbol, order, position.mark_price),
            status='reduced',
            legs=[LegResult(LegKind.REDUCE, ok=True, order_id=order.get('id'))],
        )

    def _adjust(self, decision: TradeDecision) -> Optional[OrderResult]:
        """ Replace the protective orders; the position size never changes here. """
        symbol = decision.symbol
        params = decision.params
        if params is None:
            logger.warning("No params for ADJUST on %s", symbol)
            return None
        position = self._fetch_live_position(symbol)
        if position is None:
            logger.info("No open position to adjust for %s", symbol)
            return None

        side = opposite_order_side(position.side)
        amount = abs(position.contracts)
        legs = [self.cancel_open_orders(symbol)]
        if params.stop_loss_price:
            legs.append(self._protective_order(LegKind.STOP_LOSS, symbol, side, amount, params.stop_loss_price))
        if params.take_profit_price:
            legs.append(self._protective_order(LegKind.TAKE_PROFIT, symbol, side, amount, params.take_profit_price))

        placed = [leg.order_id for leg in legs if leg.ok and leg.order_id]
        return OrderResult(
            order_id=placed[0] if placed else '',
            symbol=symbol,
            side=side,
            type='ADJUST',
            amount=amount,
            price=None,
            status='adjusted',
            legs=legs,
        )
