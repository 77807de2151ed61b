"""
Shared fixtures: in-memory ledger, mocked exchange gateway, manual clock.
"""

import itertools
from unittest.mock import MagicMock

import pytest

from app.circuit_breaker import CircuitBreaker
from app.order_executor import OrderExecutor
from app.trading_service import TradingService
from domain.models import AccountBalance, LivePosition
from infra.database import create_db_engine, make_session_factory
from infra.exchange_client import ExchangeClient
from infra.persistence_service import PersistenceService
from infra.position_ledger import PositionLedger
from infra.telegram_bot import TelegramReporter


class ManualClock:
    """ Epoch-ms clock that only moves when told to. """

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int):
        self.now_ms += ms


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite:///:memory:")
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return PositionLedger(session_factory)


@pytest.fixture
def persistence(session_factory):
    return PersistenceService(session_factory, flush_interval=0.01)


# ---------------------------------------------------------------------------
# Exchange
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway():
    """ ExchangeClient stand-in with sane defaults; tests override per case. """
    client = MagicMock(spec=ExchangeClient)
    order_ids = itertools.count(1)
    client.fetch_ticker.return_value = {'symbol': 'BTC/USDT:USDT', 'last': 50000.0}
    client.fetch_positions.return_value = []
    client.fetch_balance.return_value = AccountBalance(total_balance=1000.0, available_balance=1000.0)
    client.amount_to_precision.side_effect = lambda symbol, amount: f"{amount:.3f}"
    client.price_to_precision.side_effect = lambda symbol, price: f"{price:.1f}"
    client.create_order.side_effect = lambda *args, **kwargs: {
        'id': f"order-{next(order_ids)}",
        'status': 'closed',
        'average': None,
        'price': None,
    }
    return client


@pytest.fixture
def executor(gateway):
    return OrderExecutor(gateway, retry_attempts=3, retry_delay=0)


@pytest.fixture
def balance():
    return AccountBalance(total_balance=1000.0, available_balance=1000.0)


@pytest.fixture
def btc_long():
    return LivePosition(symbol='BTC/USDT:USDT', side='long', contracts=0.1, mark_price=51000.0,
                        entry_price=50000.0)


# ---------------------------------------------------------------------------
# Safety / service
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def reporter():
    return MagicMock(spec=TelegramReporter)


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        cooldown_ms=60_000,
        max_consecutive_losses=3,
        max_api_failures=5,
        max_daily_loss_pct=5.0,
        clock=clock,
    )


@pytest.fixture
def trading_service(executor, ledger, persistence, breaker, reporter):
    return TradingService(executor, ledger, persistence, breaker, reporter)
