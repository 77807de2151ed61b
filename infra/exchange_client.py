#
# ------------------------------------------------------------
# File: infra/exchange_client.py
# Futures exchange gateway on top of ccxt; translates ccxt errors
# into ExchangeGatewayError kinds
# ------------------------------------------------------------
#

import functools
import logging
from typing import Any, Dict, List, Optional

import ccxt

from config.settings import (
    API_KEY, API_PASSWORD, API_SECRET, EXCHANGE_ID, EXCHANGE_TIMEOUT_MS, TESTNET_ONLY
)
from domain.errors import ErrorKind, ExchangeGatewayError
from domain.models import AccountBalance, LivePosition

logger = logging.getLogger(__name__)

# Binance answers a redundant leverage / margin change with this text
NO_CHANGE_MARKERS = ("no need to change",)


def classify_error(exc: Exception) -> ErrorKind:
    """ Map a ccxt exception onto an ErrorKind. This is the only place that inspects messages. """
    message = str(exc).lower()
    if any(marker in message for marker in NO_CHANGE_MARKERS):
        return ErrorKind.NO_CHANGE
    if isinstance(exc, ccxt.NetworkError):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (ccxt.AuthenticationError, ccxt.PermissionDenied, ccxt.AccountSuspended)):
        return ErrorKind.AUTH
    if isinstance(exc, ccxt.InsufficientFunds):
        return ErrorKind.INSUFFICIENT_FUNDS
    if isinstance(exc, ccxt.InvalidOrder):
        return ErrorKind.INVALID_ORDER
    return ErrorKind.BUSINESS


def _translate_errors(method):
    """ Re-raise ccxt failures of a gateway call as ExchangeGatewayError. """
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except ccxt.BaseError as exc:
            raise ExchangeGatewayError(classify_error(exc), str(exc), operation=method.__name__) from exc
    return wrapper


class ExchangeClient:
    """
    Talks to the futures exchange (orders, positions, balance, precision).
    """

    def __init__(self, exchange: Optional[Any] = None):
        self.exchange = exchange if exchange is not None else self._build_exchange()
        self.is_connected: bool = False

    @staticmethod
    def _build_exchange():
        config = {
            'apiKey': API_KEY,
            'secret': API_SECRET,
            'password': API_PASSWORD,
            'enableRateLimit': True,
            'timeout': EXCHANGE_TIMEOUT_MS,
            'options': {'defaultType': 'future', 'disableFuturesSandboxWarning': True},
        }
        exchange_class = getattr(ccxt, EXCHANGE_ID)
        exchange = exchange_class(config)
        if TESTNET_ONLY:
            exchange.set_sandbox_mode(True)
        return exchange

    @_translate_errors
    def connect(self) -> None:
        """ Load markets and verify credentials. """
        if not API_KEY or not API_SECRET:
            raise ValueError("API_KEY / API_SECRET are not configured")
        logger.info("Connecting to %s (%s)...", EXCHANGE_ID, "testnet" if TESTNET_ONLY else "LIVE")
        self.exchange.load_markets()
        self.exchange.fetch_balance()
        self.is_connected = True
        logger.info("Connected to %s", EXCHANGE_ID)

    # --- account ---

    @_translate_errors
    def fetch_balance(self, currency: str = "USDT") -> AccountBalance:
        balance = self.exchange.fetch_balance()
        return AccountBalance(
            total_balance=float((balance.get('total') or {}).get(currency) or 0.0),
            available_balance=float((balance.get('free') or {}).get(currency) or 0.0),
            used_margin=float((balance.get('used') or {}).get(currency) or 0.0),
        )

    @_translate_errors
    def fetch_positions(self, symbols: Optional[List[str]] = None) -> List[LivePosition]:
        """ Open positions only (zero-size entries are dropped). """
        raw_positions = self.exchange.fetch_positions(symbols) if symbols else self.exchange.fetch_positions()
        positions: List[LivePosition] = []
        for raw in raw_positions or []:
            contracts = float(raw.get('contracts') or 0.0)
            if contracts == 0:
                continue
            side = raw.get('side') or ('long' if contracts > 0 else 'short')
            positions.append(LivePosition(
                symbol=raw.get('symbol'),
                side=side,
                contracts=abs(contracts),
                mark_price=float(raw.get('markPrice') or 0.0),
                entry_price=float(raw.get('entryPrice') or 0.0),
                notional=abs(float(raw.get('notional') or 0.0)),
                unrealized_pnl=float(raw.get('unrealizedPnl') or 0.0),
                leverage=float(raw.get('leverage') or 1.0),
            ))
        return positions

    # --- market data ---

    @_translate_errors
    def fetch_ticker(self, symbol: str) -> Dict[str, Any]:
        return self.exchange.fetch_ticker(symbol)

    # --- trading ---

    @_translate_errors
    def set_leverage(self, symbol: str, leverage: int) -> None:
        self.exchange.set_leverage(leverage, symbol)

    @_translate_errors
    def create_order(
        self,
        symbol: str,
        order_type: str,
        side: str,
        amount: float,
        price: Optional[float] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self.exchange.create_order(symbol, order_type, side, amount, price, params or {})

    @_translate_errors
    def cancel_all_orders(self, symbol: str) -> None:
        self.exchange.cancel_all_orders(symbol)

    # --- precision ---

    @_translate_errors
    def amount_to_precision(self, symbol: str, amount: float) -> str:
        try:
            return self.exchange.amount_to_precision(symbol, amount)
        except ccxt.InvalidOrder as exc:
            # ccxt refuses amounts that round below the minimum step
            logger.debug("amount_to_precision(%s, %s) rounds to zero: %s", symbol, amount, exc)
            return "0"

    @_translate_errors
    def price_to_precision(self, symbol: str, price: float) -> str:
        return self.exchange.price_to_precision(symbol, price)


_client: Optional[ExchangeClient] = None


def get_exchange_client() -> ExchangeClient:
    """ Process-wide client, built on first use. """
    global _client
    if _client is None:
        _client = ExchangeClient()
    return _client
