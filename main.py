#
# ------------------------------------------------------------
# File: main.py
# Entry point: run the trading loop, list positions, emergency stop
# ------------------------------------------------------------
#

import argparse
import importlib
import logging
import sys

from app.bot_loop import BotLoop, DecisionSource, hold_everything
from app.circuit_breaker import circuit_breaker
from app.order_executor import OrderExecutor
from app.trading_service import TradingService
from config.settings import DATABASE_URL, LOG_FILE, LOG_LEVEL
from infra.database import create_db_engine, make_session_factory
from infra.exchange_client import get_exchange_client
from infra.persistence_service import PersistenceService
from infra.position_ledger import PositionLedger
from infra.telegram_bot import telegram_reporter
from utils.helpers import format_pnl
from utils.logger import setup_logging

logger = logging.getLogger("main")


def load_decision_source(target: str) -> DecisionSource:
    """ 'package.module:function' -> the callable """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"decision source must look like 'module:callable', got {target!r}")
    source = getattr(importlib.import_module(module_name), attr)
    if not callable(source):
        raise ValueError(f"{target} is not callable")
    return source


def build_services(database_url: str = DATABASE_URL):
    session_factory = make_session_factory(create_db_engine(database_url))
    ledger = PositionLedger(session_factory)
    persistence = PersistenceService(session_factory)
    executor = OrderExecutor(get_exchange_client())
    trading_service = TradingService(executor, ledger, persistence, circuit_breaker, telegram_reporter)
    return trading_service, ledger, persistence


def cmd_run(args) -> int:
    decision_source = load_decision_source(args.decisions) if args.decisions else hold_everything
    trading_service, _, persistence = build_services()
    get_exchange_client().connect()

    bot_loop = BotLoop(trading_service, persistence, circuit_breaker, decision_source, reporter=telegram_reporter)
    try:
        bot_loop.start()
    except KeyboardInterrupt:
        logger.info("Stopped by user")
    finally:
        bot_loop.stop()
    return 0


def cmd_positions(args) -> int:
    _, ledger, _ = build_services()
    open_positions = ledger.get_open_positions()
    print(f"Open positions: {len(open_positions)}")
    for p in open_positions:
        print(f"  {p.symbol:<18} {p.side:<5} {p.amount:>12} @ {p.avg_entry_price}  "
              f"SL {p.stop_loss}  TP {p.take_profit}  adds {p.add_count}  reduces {p.reduce_count}")

    print(f"\nHistory (last {args.limit}):")
    for p in ledger.get_position_history(limit=args.limit):
        if p.is_open:
            continue
        print(f"  {p.symbol:<18} {p.side:<5} exit {p.exit_price}  pnl {format_pnl(p.pnl or 0.0)}  "
              f"closed {p.closed_at}")
    return 0


def cmd_emergency_stop(args) -> int:
    trading_service, _, persistence = build_services()
    get_exchange_client().connect()
    report = trading_service.emergency_stop()
    persistence.flush()

    print("Closed: " + (", ".join(report.closed) if report.closed else "none"))
    if report.already_flat:
        print("Already flat: " + ", ".join(report.already_flat))
    for symbol, error in report.failures.items():
        print(f"STILL EXPOSED {symbol}: {error}")
    return 0 if report.ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Leveraged futures execution engine")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="start the trading loop")
    run.add_argument("--decisions", metavar="MODULE:CALLABLE",
                     help="decision source; every symbol is held when omitted")
    run.set_defaults(func=cmd_run)

    positions = sub.add_parser("positions", help="show open positions and recent history")
    positions.add_argument("--limit", type=int, default=20)
    positions.set_defaults(func=cmd_positions)

    stop = sub.add_parser("emergency-stop", help="block trading and close every live position")
    stop.set_defaults(func=cmd_emergency_stop)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(LOG_LEVEL, LOG_FILE)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
