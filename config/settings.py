#
# ------------------------------------------------------------
# File: config/settings.py
# Runtime settings (read from the environment / .env)
# ------------------------------------------------------------
#
import os
from typing import List

from dotenv import load_dotenv

PROJECT_ROOT: str = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
load_dotenv(os.path.join(PROJECT_ROOT, ".env"))


def _env_str(key: str, default: str = "") -> str:
    return os.getenv(key, default).strip()


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Environment variable {key} must be a boolean, got {raw!r}")


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {key} must be an integer, got {raw!r}") from None


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {key} must be a number, got {raw!r}") from None


def _env_list(key: str, default: List[str]) -> List[str]:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# --- 1. Exchange connection ---
EXCHANGE_ID: str = _env_str("EXCHANGE_ID", "binanceusdm")
API_KEY: str = _env_str("API_KEY")
API_SECRET: str = _env_str("API_SECRET")
API_PASSWORD: str = _env_str("API_PASSWORD")
TESTNET_ONLY: bool = _env_bool("TESTNET_ONLY", True)
EXCHANGE_TIMEOUT_MS: int = _env_int("EXCHANGE_TIMEOUT_MS", 10000)

# --- 2. Telegram alerts ---
TELEGRAM_BOT_TOKEN: str = _env_str("TELEGRAM_BOT_TOKEN")
ADMIN_CHAT_IDS: List[str] = _env_list("ADMIN_CHAT_IDS", [])
ROUTE_URGENT_TRADE: List[str] = ADMIN_CHAT_IDS
ROUTE_SAFETY: List[str] = ADMIN_CHAT_IDS

# --- 3. Storage and logging ---
DATA_DIR: str = _env_str("DATA_DIR", os.path.join(PROJECT_ROOT, "data"))
DATABASE_URL: str = _env_str("DATABASE_URL", "sqlite:///" + os.path.join(DATA_DIR, "trading.db"))
LOG_LEVEL: str = _env_str("LOG_LEVEL", "INFO").upper()
LOG_FILE: str = _env_str("LOG_FILE", os.path.join(DATA_DIR, "bot.log"))

# --- 4. Loop ---
TRADING_PAIRS: List[str] = _env_list("TRADING_PAIRS", ["BTC/USDT:USDT", "ETH/USDT:USDT"])
LOOP_INTERVAL_SECONDS: float = _env_float("LOOP_INTERVAL_SECONDS", 60.0)
MAX_CONCURRENCY: int = _env_int("MAX_CONCURRENCY", 3)

# --- 5. Risk / circuit breaker ---
MAX_DAILY_LOSS_PCT: float = _env_float("MAX_DAILY_LOSS_PCT", 5.0)
MAX_CONSECUTIVE_LOSSES: int = _env_int("MAX_CONSECUTIVE_LOSSES", 3)
MAX_CONSECUTIVE_API_FAILURES: int = _env_int("MAX_CONSECUTIVE_API_FAILURES", 5)
CIRCUIT_COOLDOWN_MS: int = _env_int("CIRCUIT_COOLDOWN_MS", 60 * 60 * 1000)

# per-position hard limits, checked before a decision reaches the exchange
MAX_ADD_COUNT: int = _env_int("MAX_ADD_COUNT", 2)
MIN_ADD_PROFIT_PCT: float = _env_float("MIN_ADD_PROFIT_PCT", 1.5)
MAX_POSITION_MULTIPLIER: float = _env_float("MAX_POSITION_MULTIPLIER", 2.5)
MAX_REDUCE_COUNT: int = _env_int("MAX_REDUCE_COUNT", 3)

# --- 6. Executor defaults ---
DEFAULT_ADD_PERCENT: float = _env_float("DEFAULT_ADD_PERCENT", 50.0)
DEFAULT_REDUCE_PERCENT: float = _env_float("DEFAULT_REDUCE_PERCENT", 30.0)

# --- 7. Retry ---
RETRY_MAX_ATTEMPTS: int = _env_int("RETRY_MAX_ATTEMPTS", 3)
RETRY_BASE_DELAY_SECONDS: float = _env_float("RETRY_BASE_DELAY_SECONDS", 1.0)
