#
# ------------------------------------------------------------
# File: infra/position_ledger.py
# Durable record of positions and the operations applied to them
# ------------------------------------------------------------
#

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from domain.errors import LedgerError
from domain.models import (
    OperationType, Position, PositionOperation, PositionStatus, position_side_of
)
from infra.database import PositionOperationRow, PositionRow, utcnow
from utils.helpers import calc_new_avg_entry, calc_reduce_pnl

logger = logging.getLogger(__name__)

# Remaining size at or below this is treated as flat
AMOUNT_EPSILON = 1e-12


def _to_position(row: PositionRow) -> Position:
    return Position(
        id=row.id,
        symbol=row.symbol,
        side=row.side,
        amount=row.amount,
        entry_price=row.entry_price,
        avg_entry_price=row.avg_entry_price,
        max_amount=row.max_amount,
        add_count=row.add_count,
        reduce_count=row.reduce_count,
        realized_pnl_accum=row.realized_pnl_accum,
        status=PositionStatus(row.status),
        leverage=row.leverage,
        stop_loss=row.stop_loss,
        take_profit=row.take_profit,
        entry_order_id=row.entry_order_id,
        exit_order_id=row.exit_order_id,
        opened_at=row.opened_at,
        closed_at=row.closed_at,
        exit_price=row.exit_price,
        pnl=row.pnl,
    )


def _to_operation(row: PositionOperationRow) -> PositionOperation:
    return PositionOperation(
        id=row.id,
        position_id=row.position_id,
        operation=OperationType(row.operation),
        side=row.side,
        amount=row.amount,
        price=row.price,
        realized_pnl=row.realized_pnl,
        avg_entry_after=row.avg_entry_after,
        total_amount_after=row.total_amount_after,
        created_at=row.created_at,
    )


class PositionLedger:
    """
    Positions table plus the append-only position_operations log.

    Every write runs in its own transaction under a single writer lock.
    Callers only ever get dataclass copies, never live ORM rows.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._write_lock = threading.RLock()

    @contextmanager
    def _write(self) -> Iterator[Session]:
        with self._write_lock:
            with self._session_factory.begin() as session:
                yield session

    @contextmanager
    def _read(self) -> Iterator[Session]:
        with self._session_factory() as session:
            yield session

    # --- row helpers (run inside a caller's transaction) ---

    @staticmethod
    def _open_row(session: Session, symbol: str) -> Optional[PositionRow]:
        stmt = (
            select(PositionRow)
            .where(PositionRow.symbol == symbol, PositionRow.status == PositionStatus.OPEN.value)
            .order_by(PositionRow.id.desc())
            .limit(1)
        )
        return session.execute(stmt).scalars().first()

    def _require_open_row(self, session: Session, symbol: str) -> PositionRow:
        row = self._open_row(session, symbol)
        if row is None:
            raise LedgerError(f"No open position for {symbol}")
        return row

    @staticmethod
    def _add_operation(session: Session, op: PositionOperation) -> PositionOperationRow:
        row = PositionOperationRow(
            position_id=op.position_id,
            operation=OperationType(op.operation).value,
            side=op.side,
            amount=op.amount,
            price=op.price,
            realized_pnl=op.realized_pnl or 0.0,
            avg_entry_after=op.avg_entry_after,
            total_amount_after=op.total_amount_after,
        )
        session.add(row)
        # flush so a dangling position_id fails here, inside the transaction
        session.flush()
        return row

    def _insert_row(self, session: Session, symbol: str, side: str, amount: float,
                    entry_price: Optional[float], leverage: Optional[int],
                    stop_loss: Optional[float], take_profit: Optional[float],
                    entry_order_id: Optional[str]) -> PositionRow:
        if amount is None or amount <= 0:
            raise LedgerError(f"Cannot open {symbol} with amount {amount}")
        if self._open_row(session, symbol) is not None:
            raise LedgerError(f"{symbol} already has an open position")

        row = PositionRow(
            symbol=symbol,
            side=position_side_of(side),
            amount=amount,
            entry_price=entry_price,
            avg_entry_price=entry_price,
            max_amount=amount,
            leverage=leverage,
            stop_loss=stop_loss,
            take_profit=take_profit,
            entry_order_id=entry_order_id,
            status=PositionStatus.OPEN.value,
        )
        session.add(row)
        session.flush()
        return row

    @staticmethod
    def _apply_add(row: PositionRow, new_avg_entry: float, new_amount: float) -> None:
        if new_amount <= 0:
            raise LedgerError(f"Add would leave {row.symbol} with amount {new_amount}")
        row.add_count += 1
        row.avg_entry_price = new_avg_entry
        row.amount = new_amount
        row.max_amount = max(row.max_amount or 0.0, new_amount)

    @staticmethod
    def _apply_close(row: PositionRow, exit_price: float, pnl: float, exit_order_id: Optional[str]) -> None:
        row.status = PositionStatus.CLOSED.value
        row.exit_price = exit_price
        row.pnl = pnl
        row.exit_order_id = exit_order_id
        row.closed_at = utcnow()

    def _apply_reduce(self, row: PositionRow, reduce_amount: float, realized_pnl: float,
                      price: Optional[float]) -> None:
        if reduce_amount <= 0:
            raise LedgerError(f"Reduce amount must be positive, got {reduce_amount}")
        if reduce_amount > row.amount + AMOUNT_EPSILON:
            raise LedgerError(f"Cannot reduce {row.symbol} by {reduce_amount}, only {row.amount} open")
        row.reduce_count += 1
        row.realized_pnl_accum = (row.realized_pnl_accum or 0.0) + realized_pnl
        remaining = row.amount - reduce_amount
        if remaining <= AMOUNT_EPSILON:
            row.amount = 0.0
            self._apply_close(row, price if price is not None else 0.0, row.realized_pnl_accum, None)
            logger.info("%s reduced to zero, position closed", row.symbol)
        else:
            row.amount = remaining

    # --- positions ---

    def insert_position(self, symbol: str, side: str, amount: float, entry_price: Optional[float] = None,
                        leverage: Optional[int] = None, stop_loss: Optional[float] = None,
                        take_profit: Optional[float] = None, entry_order_id: Optional[str] = None) -> Position:
        with self._write() as session:
            row = self._insert_row(session, symbol, side, amount, entry_price, leverage,
                                   stop_loss, take_profit, entry_order_id)
            return _to_position(row)

    def get_position(self, position_id: int) -> Optional[Position]:
        with self._read() as session:
            row = session.get(PositionRow, position_id)
            return _to_position(row) if row is not None else None

    def get_open_position_by_symbol(self, symbol: str) -> Optional[Position]:
        with self._read() as session:
            row = self._open_row(session, symbol)
            return _to_position(row) if row is not None else None

    def get_open_positions(self) -> List[Position]:
        with self._read() as session:
            stmt = (
                select(PositionRow)
                .where(PositionRow.status == PositionStatus.OPEN.value)
                .order_by(PositionRow.opened_at.desc(), PositionRow.id.desc())
            )
            return [_to_position(row) for row in session.execute(stmt).scalars()]

    def get_position_history(self, limit: int = 50) -> List[Position]:
        with self._read() as session:
            stmt = select(PositionRow).order_by(PositionRow.id.desc()).limit(limit)
            return [_to_position(row) for row in session.execute(stmt).scalars()]

    def update_position_add(self, symbol: str, new_avg_entry: float, new_amount: float) -> Position:
        with self._write() as session:
            row = self._require_open_row(session, symbol)
            self._apply_add(row, new_avg_entry, new_amount)
            return _to_position(row)

    def update_position_reduce(self, symbol: str, reduce_amount: float, realized_pnl: float,
                               price: Optional[float] = None) -> Position:
        """
        Shrink the open position by `reduce_amount` and accrue `realized_pnl`.

        The average entry is left alone. Reducing to zero closes the position
        at `price` with the accumulated realized PnL as its final PnL.
        """
        with self._write() as session:
            row = self._require_open_row(session, symbol)
            self._apply_reduce(row, reduce_amount, realized_pnl, price)
            return _to_position(row)

    def close_position(self, symbol: str, exit_price: float, pnl: float,
                       exit_order_id: Optional[str] = None) -> Optional[Position]:
        """ Mark the open position closed. Returns None when nothing was open. """
        with self._write() as session:
            row = self._open_row(session, symbol)
            if row is None:
                logger.info("close_position: no open ledger position for %s", symbol)
                return None
            self._apply_close(row, exit_price, pnl, exit_order_id)
            return _to_position(row)

    def update_position_sltp(self, symbol: str, stop_loss: Optional[float],
                             take_profit: Optional[float]) -> Optional[Position]:
        with self._write() as session:
            row = self._open_row(session, symbol)
            if row is None:
                return None
            row.stop_loss = stop_loss
            row.take_profit = take_profit
            return _to_position(row)

    # --- operations log ---

    def insert_position_operation(self, op: PositionOperation) -> PositionOperation:
        """ Append to the log. An unknown position_id raises IntegrityError and writes nothing. """
        with self._write() as session:
            row = self._add_operation(session, op)
            return _to_operation(row)

    def get_position_operations(self, position_id: int) -> List[PositionOperation]:
        with self._read() as session:
            stmt = (
                select(PositionOperationRow)
                .where(PositionOperationRow.position_id == position_id)
                .order_by(PositionOperationRow.created_at.asc(), PositionOperationRow.id.asc())
            )
            return [_to_operation(row) for row in session.execute(stmt).scalars()]

    def count_operations(self) -> int:
        with self._read() as session:
            return session.scalar(select(func.count()).select_from(PositionOperationRow)) or 0

    # --- fills: position update and log entry in one transaction ---

    def record_open(self, symbol: str, side: str, amount: float, price: float,
                    leverage: Optional[int] = None, stop_loss: Optional[float] = None,
                    take_profit: Optional[float] = None, order_id: Optional[str] = None) -> Position:
        with self._write() as session:
            row = self._insert_row(session, symbol, side, amount, price, leverage,
                                   stop_loss, take_profit, order_id)
            self._add_operation(session, PositionOperation(
                position_id=row.id,
                operation=OperationType.OPEN,
                side=row.side,
                amount=amount,
                price=price,
                avg_entry_after=price,
                total_amount_after=amount,
            ))
            logger.info("Ledger: opened %s %s %s @ %s", row.side, amount, symbol, price)
            return _to_position(row)

    def record_add(self, symbol: str, amount: float, price: float) -> Position:
        with self._write() as session:
            row = self._require_open_row(session, symbol)
            old_avg = row.avg_entry_price if row.avg_entry_price is not None else (row.entry_price or 0.0)
            new_avg = calc_new_avg_entry(old_avg, row.amount, price, amount)
            new_total = row.amount + amount
            self._apply_add(row, new_avg, new_total)
            self._add_operation(session, PositionOperation(
                position_id=row.id,
                operation=OperationType.ADD,
                side=row.side,
                amount=amount,
                price=price,
                avg_entry_after=new_avg,
                total_amount_after=new_total,
            ))
            logger.info("Ledger: added %s to %s, avg entry %.4f, total %s", amount, symbol, new_avg, new_total)
            return _to_position(row)

    def record_reduce(self, symbol: str, amount: float, price: float) -> Tuple[Position, float]:
        """ Returns the updated position and the PnL realized by this reduce. """
        with self._write() as session:
            row = self._require_open_row(session, symbol)
            avg_entry = row.avg_entry_price if row.avg_entry_price is not None else (row.entry_price or 0.0)
            realized = calc_reduce_pnl(row.side, avg_entry, price, amount)
            # log first: the reduce may close the row
            self._add_operation(session, PositionOperation(
                position_id=row.id,
                operation=OperationType.REDUCE,
                side=row.side,
                amount=amount,
                price=price,
                realized_pnl=realized,
                avg_entry_after=avg_entry,
                total_amount_after=max(row.amount - amount, 0.0),
            ))
            self._apply_reduce(row, amount, realized, price)
            logger.info("Ledger: reduced %s by %s, realized %.4f", symbol, amount, realized)
            return _to_position(row), realized

    def record_close(self, symbol: str, exit_price: float, exit_order_id: Optional[str] = None,
                     pnl: Optional[float] = None) -> Optional[Position]:
        """
        Close the open position and log a CLOSE operation.

        When `pnl` is not given the final PnL is the realized accumulator plus
        the PnL of the remaining size at `exit_price`.
        """
        with self._write() as session:
            row = self._open_row(session, symbol)
            if row is None:
                logger.info("record_close: no open ledger position for %s", symbol)
                return None
            avg_entry = row.avg_entry_price if row.avg_entry_price is not None else (row.entry_price or 0.0)
            remainder_pnl = calc_reduce_pnl(row.side, avg_entry, exit_price, row.amount)
            accum = row.realized_pnl_accum or 0.0
            if pnl is None:
                row.realized_pnl_accum = accum + remainder_pnl
                pnl = row.realized_pnl_accum
            else:
                remainder_pnl = pnl - accum
            self._add_operation(session, PositionOperation(
                position_id=row.id,
                operation=OperationType.CLOSE,
                side=row.side,
                amount=row.amount,
                price=exit_price,
                realized_pnl=remainder_pnl,
                avg_entry_after=avg_entry,
                total_amount_after=0.0,
            ))
            self._apply_close(row, exit_price, pnl, exit_order_id)
            logger.info("Ledger: closed %s @ %s, pnl %.4f", symbol, exit_price, pnl)
            return _to_position(row)
