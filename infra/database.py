#
# ------------------------------------------------------------
# File: infra/database.py
# SQLite engine, session factory and table definitions
# ------------------------------------------------------------
#

import logging
import os
from datetime import datetime, timezone

from sqlalchemy import (
    Column, DateTime, Float, ForeignKey, Index, Integer, String, create_engine, event, text
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from config.settings import DATABASE_URL

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class PositionRow(Base):
    __tablename__ = "positions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False, index=True)
    side = Column(String, nullable=False)                 # long / short
    amount = Column(Float, nullable=False)
    entry_price = Column(Float, nullable=True)
    avg_entry_price = Column(Float, nullable=True)
    max_amount = Column(Float, nullable=False, default=0.0)
    add_count = Column(Integer, nullable=False, default=0)
    reduce_count = Column(Integer, nullable=False, default=0)
    realized_pnl_accum = Column(Float, nullable=False, default=0.0)
    leverage = Column(Integer, nullable=True)
    stop_loss = Column(Float, nullable=True)
    take_profit = Column(Float, nullable=True)
    entry_order_id = Column(String, nullable=True)
    exit_order_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="open")   # open / closed
    opened_at = Column(DateTime, nullable=False, default=utcnow)
    closed_at = Column(DateTime, nullable=True)
    exit_price = Column(Float, nullable=True)
    pnl = Column(Float, nullable=True)

    __table_args__ = (
        # One open position per symbol
        Index(
            "ux_positions_open_symbol", "symbol", unique=True,
            sqlite_where=text("status = 'open'"),
        ),
    )


class PositionOperationRow(Base):
    __tablename__ = "position_operations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    position_id = Column(Integer, ForeignKey("positions.id"), nullable=False, index=True)
    operation = Column(String, nullable=False)            # OPEN / ADD / REDUCE / CLOSE
    side = Column(String, nullable=False)
    amount = Column(Float, nullable=False)
    price = Column(Float, nullable=False)
    realized_pnl = Column(Float, nullable=False, default=0.0)
    avg_entry_after = Column(Float, nullable=True)
    total_amount_after = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class TradeRow(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    side = Column(String, nullable=True)
    amount = Column(Float, nullable=True)
    price = Column(Float, nullable=True)
    leverage = Column(Integer, nullable=True)
    stop_loss = Column(Float, nullable=True)
    take_profit = Column(Float, nullable=True)
    order_id = Column(String, nullable=True)
    confidence = Column(Float, nullable=True)
    reasoning = Column(String, nullable=True)
    status = Column(String, nullable=False, default="executed")
    pnl = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class DailyPnlRow(Base):
    __tablename__ = "daily_pnl"

    date = Column(String, primary_key=True)               # YYYY-MM-DD (UTC)
    starting_balance = Column(Float, nullable=False)
    ending_balance = Column(Float, nullable=False)
    realized_pnl = Column(Float, nullable=False, default=0.0)
    trade_count = Column(Integer, nullable=False, default=0)


def _enable_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(url: str = DATABASE_URL) -> Engine:
    """ Build an engine and create missing tables. """
    if url.startswith("sqlite:///") and ":memory:" not in url:
        db_path = url[len("sqlite:///"):]
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)

    engine_kwargs = {"future": True}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            # one shared connection, otherwise every checkout sees an empty database
            engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(url, **engine_kwargs)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _enable_sqlite_pragmas)
        if ":memory:" not in url:
            with engine.connect() as conn:
                conn.exec_driver_sql("PRAGMA journal_mode=WAL")
    Base.metadata.create_all(engine)
    logger.info("Database ready (%s)", engine.url.render_as_string(hide_password=True))
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)
