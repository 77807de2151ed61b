#
# ------------------------------------------------------------
# File: domain/errors.py
# Exception types raised across the engine
# ------------------------------------------------------------
#

from enum import Enum


class ErrorKind(Enum):
    """ Classification of a failed exchange call """
    TRANSIENT = "transient"                 # network, timeout, rate limit: retryable
    NO_CHANGE = "no_change"                 # e.g. leverage already at the requested value
    AUTH = "auth"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_ORDER = "invalid_order"
    BUSINESS = "business"                   # any other exchange-side rejection


class ExchangeGatewayError(Exception):
    """ An exchange call failed; `kind` tells callers how to react. """

    def __init__(self, kind: ErrorKind, message: str, operation: str = ""):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.operation = operation

    @property
    def is_transient(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT

    def __str__(self) -> str:
        if self.operation:
            return f"{self.operation}: {self.message}"
        return self.message


class LedgerError(Exception):
    """ A ledger rule was violated (e.g. a second open position for a symbol). """


class UnbookedFillError(LedgerError):
    """ The exchange filled an order but the ledger could not record it. """

    def __init__(self, message: str, result):
        super().__init__(message)
        self.result = result
