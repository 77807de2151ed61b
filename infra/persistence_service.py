#
# ------------------------------------------------------------
# File: infra/persistence_service.py
# Trade log (queued, written by a background thread) and daily PnL
# ------------------------------------------------------------
#

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from infra.database import DailyPnlRow, TradeRow
from utils.helpers import utc_today

logger = logging.getLogger(__name__)

TRADE_FIELDS = (
    'symbol', 'action', 'side', 'amount', 'price', 'leverage', 'stop_loss',
    'take_profit', 'order_id', 'confidence', 'reasoning', 'status', 'pnl',
)
TRADE_QUEUE_SIZE = 1000


class PersistenceService:

    def __init__(self, session_factory: sessionmaker, flush_interval: float = 1.0):
        self._session_factory = session_factory
        self.flush_interval = flush_interval
        self.trade_queue: List[Dict[str, Any]] = []
        self.queue_lock = threading.Lock()
        self.write_lock = threading.Lock()
        self._stop_event = threading.Event()
        self.writer_thread: Optional[threading.Thread] = None

    def start(self):
        """ Start the background trade writer. """
        if self.writer_thread and self.writer_thread.is_alive():
            return
        self._stop_event.clear()
        self.writer_thread = threading.Thread(target=self._background_writer_loop, daemon=True, name="trade-writer")
        self.writer_thread.start()
        logger.info("Trade log writer started")

    def stop(self):
        """ Stop the writer and persist whatever is still queued. """
        self._stop_event.set()
        if self.writer_thread and self.writer_thread.is_alive():
            self.writer_thread.join(timeout=2)
        self.flush()

    def _background_writer_loop(self):
        while not self._stop_event.is_set():
            try:
                self.flush()
            except Exception:
                logger.exception("Failed to write queued trades")
            self._stop_event.wait(self.flush_interval)

    # --- trades ---

    def add_trade_to_queue(self, trade_data: Dict[str, Any]):
        """ Queue a trade row; the writer thread persists it. """
        record = {key: trade_data.get(key) for key in TRADE_FIELDS}
        record['created_at'] = datetime.now(timezone.utc).replace(tzinfo=None)
        with self.queue_lock:
            if len(self.trade_queue) < TRADE_QUEUE_SIZE:
                self.trade_queue.append(record)
            else:
                logger.warning("Trade queue full, dropping trade for %s", record.get('symbol'))

    def flush(self) -> int:
        """ Write every queued trade now. Returns how many were written. """
        with self.write_lock:
            with self.queue_lock:
                records = self.trade_queue.copy()
                self.trade_queue.clear()
            if not records:
                return 0
            with self._session_factory.begin() as session:
                for record in records:
                    if record.get('status') is None:
                        record['status'] = 'executed'
                    session.add(TradeRow(**record))
            return len(records)

    def get_recent_trades(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._session_factory() as session:
            rows = session.execute(select(TradeRow).order_by(TradeRow.id.desc()).limit(limit)).scalars()
            return [self._trade_dict(row) for row in rows]

    def get_today_trades(self) -> List[Dict[str, Any]]:
        today = datetime.now(timezone.utc).replace(tzinfo=None, hour=0, minute=0, second=0, microsecond=0)
        with self._session_factory() as session:
            stmt = select(TradeRow).where(TradeRow.created_at >= today).order_by(TradeRow.id.desc())
            return [self._trade_dict(row) for row in session.execute(stmt).scalars()]

    @staticmethod
    def _trade_dict(row: TradeRow) -> Dict[str, Any]:
        data = {key: getattr(row, key) for key in TRADE_FIELDS}
        data['id'] = row.id
        data['created_at'] = row.created_at
        return data

    # --- daily pnl ---

    def update_daily_pnl(self, day: str, balance: float, realized_pnl: float = 0.0, trade_count: int = 0):
        """ The first update of a day fixes its starting balance. """
        with self.write_lock:
            with self._session_factory.begin() as session:
                row = session.get(DailyPnlRow, day)
                if row is None:
                    session.add(DailyPnlRow(
                        date=day,
                        starting_balance=balance,
                        ending_balance=balance,
                        realized_pnl=realized_pnl,
                        trade_count=trade_count,
                    ))
                else:
                    if row.starting_balance <= 0:
                        row.starting_balance = balance
                    row.ending_balance = balance
                    row.realized_pnl += realized_pnl
                    row.trade_count += trade_count

    def record_realized_pnl(self, day: str, pnl: float):
        """ Count one closed trade and its PnL against the day. """
        with self.write_lock:
            with self._session_factory.begin() as session:
                row = session.get(DailyPnlRow, day)
                if row is None:
                    # balances are filled in by the next update_daily_pnl()
                    session.add(DailyPnlRow(date=day, starting_balance=0.0, ending_balance=0.0,
                                            realized_pnl=pnl, trade_count=1))
                else:
                    row.realized_pnl += pnl
                    row.trade_count += 1

    @staticmethod
    def _daily_dict(row: DailyPnlRow) -> Dict[str, Any]:
        return {
            'date': row.date,
            'starting_balance': row.starting_balance,
            'ending_balance': row.ending_balance,
            'realized_pnl': row.realized_pnl,
            'trade_count': row.trade_count,
        }

    def get_daily_pnl(self, day: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self._session_factory() as session:
            row = session.get(DailyPnlRow, day or utc_today())
            return self._daily_dict(row) if row is not None else None

    def get_daily_pnl_history(self, days: int = 30) -> List[Dict[str, Any]]:
        with self._session_factory() as session:
            rows = session.execute(select(DailyPnlRow).order_by(DailyPnlRow.date.desc()).limit(days)).scalars()
            return [self._daily_dict(row) for row in rows]

    def compute_daily_loss_pct(self, day: str, balance: float) -> float:
        """ Drawdown from the day's starting balance, in percent (0 when up). """
        row = self.get_daily_pnl(day)
        if not row or row['starting_balance'] <= 0:
            return 0.0
        loss_pct = (row['starting_balance'] - balance) / row['starting_balance'] * 100.0
        return max(loss_pct, 0.0)
