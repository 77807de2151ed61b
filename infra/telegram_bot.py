#
# ------------------------------------------------------------
# File: infra/telegram_bot.py
# Operator alerts over the Telegram Bot API (fire and forget)
# ------------------------------------------------------------
#

import logging
from typing import List, Optional

import requests

from config.settings import ROUTE_SAFETY, ROUTE_URGENT_TRADE, TELEGRAM_BOT_TOKEN
from domain.models import EmergencyStopReport, OrderResult
from utils.helpers import format_pnl

logger = logging.getLogger(__name__)


class TelegramReporter:

    def __init__(self, bot_token: Optional[str] = None,
                 trade_chat_ids: Optional[List[str]] = None,
                 safety_chat_ids: Optional[List[str]] = None):
        self.bot_token = TELEGRAM_BOT_TOKEN if bot_token is None else bot_token
        self.trade_chat_ids = list(ROUTE_URGENT_TRADE if trade_chat_ids is None else trade_chat_ids)
        self.safety_chat_ids = list(ROUTE_SAFETY if safety_chat_ids is None else safety_chat_ids)
        if not self.bot_token:
            logger.info("Telegram token not set, alerts disabled")
            self.base_url = ""
            return
        self.base_url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)

    def send_message_to_chat_ids(self, chat_ids: List[str], message_text: str, parse_mode: Optional[str] = "HTML"):
        """
        Send one message per chat id. Failures are logged, never raised.
        """
        if not self.bot_token:
            return

        for chat_id in chat_ids:
            if not chat_id:
                continue
            payload = {
                'chat_id': chat_id,
                'text': message_text,
                'parse_mode': parse_mode,
                'disable_web_page_preview': True,
            }
            try:
                response = requests.post(self.base_url, data=payload, timeout=5)
                if not response.json().get('ok', False):
                    logger.warning("Telegram API error: %s", response.text)
            except requests.exceptions.Timeout:
                logger.warning("Telegram send timed out (chat %s)", chat_id)
            except (requests.exceptions.RequestException, ValueError) as e:
                logger.warning("Telegram send failed (chat %s): %s", chat_id, e)

    # --- reports ---

    def send_system_report(self, title: str, message: str):
        msg = f"ℹ️ <b>{title}</b>\n{message}"
        self.send_message_to_chat_ids(self.trade_chat_ids, msg)

    def send_safety_report(self, reason: str):
        """ Circuit breaker tripped """
        msg = (
            f"🔒 <b>Circuit breaker tripped</b>\n\n"
            f"<b>Reason:</b> {reason}\n"
            f"New positions are blocked until cooldown expiry or reset."
        )
        self.send_message_to_chat_ids(self.safety_chat_ids, msg)

    def send_emergency_report(self, report: EmergencyStopReport):
        lines = ["🛑 <b>Emergency stop</b>", ""]
        if report.closed:
            lines.append("<b>Closed:</b> " + ", ".join(report.closed))
        if report.already_flat:
            lines.append("<b>Already flat:</b> " + ", ".join(report.already_flat))
        if report.failures:
            lines.append("<b>STILL EXPOSED:</b>")
            for symbol, error in report.failures.items():
                lines.append(f"• {symbol}: {error}")
        if not report.closed and not report.already_flat and not report.failures:
            lines.append("No open positions.")
        self.send_message_to_chat_ids(self.safety_chat_ids, "\n".join(lines))

    def send_trade_report(self, action: str, result: OrderResult):
        msg = (
            f"🚀 <b>{action}</b> {result.symbol}\n\n"
            f"<b>Side:</b> {result.side}\n"
            f"<b>Amount:</b> {result.amount}\n"
            f"<b>Price:</b> {result.price}"
        )
        failed = result.failed_legs()
        if failed:
            msg += "\n⚠️ <b>Failed legs:</b> " + ", ".join(leg.kind.value for leg in failed)
        self.send_message_to_chat_ids(self.trade_chat_ids, msg)

    def send_exit_report(self, symbol: str, reason: str, exit_price: Optional[float], pnl: Optional[float]):
        msg = (
            f"🏁 <b>Exit</b> {symbol} ({reason})\n\n"
            f"<b>Price:</b> {exit_price}\n"
            f"<b>PnL:</b> {format_pnl(pnl or 0.0)}"
        )
        self.send_message_to_chat_ids(self.trade_chat_ids, msg)

    def send_error_report(self, title: str, details: str):
        msg = f"❌ <b>{title}</b>\n<code>{details}</code>"
        self.send_message_to_chat_ids(self.safety_chat_ids, msg)


# --- instance ---
telegram_reporter = TelegramReporter()
