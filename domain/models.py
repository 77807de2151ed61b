#
# ------------------------------------------------------------
# File: domain/models.py
# Data structures shared by the breaker, ledger and executor
# ------------------------------------------------------------
#

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

# --- 1. Labels ---

class TradeAction(str, Enum):
    """ Action requested by the decision source """
    LONG = "LONG"
    SHORT = "SHORT"
    CLOSE = "CLOSE"
    ADD = "ADD"
    REDUCE = "REDUCE"
    ADJUST = "ADJUST"
    HOLD = "HOLD"


class OperationType(str, Enum):
    OPEN = "OPEN"
    ADD = "ADD"
    REDUCE = "REDUCE"
    CLOSE = "CLOSE"


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class TriggerResult(Enum):
    """ Outcome of a stop-loss / take-profit check """
    SL = "sl"
    TP = "tp"
    NONE = "none"


class LegKind(str, Enum):
    LEVERAGE = "LEVERAGE"
    ENTRY = "ENTRY"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    CANCEL = "CANCEL"
    CLOSE = "CLOSE"
    ADD = "ADD"
    REDUCE = "REDUCE"


# Legs whose failure never aborts an execution sequence
PROTECTIVE_LEGS = frozenset({LegKind.STOP_LOSS, LegKind.TAKE_PROFIT, LegKind.CANCEL})

LONG_SIDES = ("long", "buy")


def opposite_order_side(position_side: str) -> str:
    """ Order side that shrinks a position held on `position_side`. """
    return "sell" if position_side in LONG_SIDES else "buy"


def entry_order_side(position_side: str) -> str:
    """ Order side that grows a position held on `position_side`. """
    return "buy" if position_side in LONG_SIDES else "sell"


def position_side_of(order_side: str) -> str:
    return "long" if order_side in LONG_SIDES else "short"


# --- 2. Decision input ---

@dataclass
class TradeParams:
    leverage: int = 1
    position_size_percent: float = 0.0
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    order_type: str = "MARKET"          # MARKET or LIMIT
    add_percent: Optional[float] = None
    reduce_percent: Optional[float] = None


@dataclass
class TradeDecision:
    """ One decision, consumed exactly once by the executor """
    action: TradeAction
    symbol: str
    params: Optional[TradeParams] = None
    confidence: float = 0.0
    reasoning: str = ""


# --- 3. Exchange views ---

@dataclass
class AccountBalance:
    total_balance: float
    available_balance: float
    used_margin: float = 0.0


@dataclass
class LivePosition:
    """ A position as the exchange reports it """
    symbol: str
    side: str                   # 'long' or 'short'
    contracts: float
    mark_price: float = 0.0
    entry_price: float = 0.0
    notional: float = 0.0
    unrealized_pnl: float = 0.0
    leverage: float = 1.0


# --- 4. Executor output ---

@dataclass
class LegResult:
    """ Result of one exchange call inside an execution sequence """
    kind: LegKind
    ok: bool
    order_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def protective(self) -> bool:
        return self.kind in PROTECTIVE_LEGS


@dataclass
class OrderResult:
    order_id: str
    symbol: str
    side: str                   # order side: 'buy' or 'sell'
    type: str
    amount: float
    price: Optional[float]
    status: str
    legs: List[LegResult] = field(default_factory=list)

    def failed_legs(self) -> List[LegResult]:
        return [leg for leg in self.legs if not leg.ok]


# --- 5. Ledger records (value copies) ---

@dataclass
class Position:
    symbol: str
    side: str
    amount: float
    id: Optional[int] = None
    entry_price: Optional[float] = None
    avg_entry_price: Optional[float] = None
    max_amount: float = 0.0
    add_count: int = 0
    reduce_count: int = 0
    realized_pnl_accum: float = 0.0
    status: PositionStatus = PositionStatus.OPEN
    leverage: Optional[int] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    entry_order_id: Optional[str] = None
    exit_order_id: Optional[str] = None
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    exit_price: Optional[float] = None
    pnl: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN


@dataclass
class PositionOperation:
    """ Append-only log entry; `position_id` must reference a stored position """
    position_id: int
    operation: OperationType
    side: str
    amount: float
    price: float
    realized_pnl: float = 0.0
    avg_entry_after: Optional[float] = None
    total_amount_after: Optional[float] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


# --- 6. Safety state ---

@dataclass
class CircuitState:
    tripped: bool = False
    reason: str = ""
    tripped_at: int = 0                 # epoch ms
    cooldown_ms: int = 60 * 60 * 1000
    consecutive_losses: int = 0
    consecutive_api_failures: int = 0
    daily_loss_pct: float = 0.0
    manual_stop: bool = False
    win_streak: int = 0
    loss_streak: int = 0


@dataclass
class EmergencyStopReport:
    closed: List[str] = field(default_factory=list)
    already_flat: List[str] = field(default_factory=list)    # gone between listing and closing
    failures: dict = field(default_factory=dict)    # {symbol: error message}

    @property
    def ok(self) -> bool:
        return not self.failures
