#
# ------------------------------------------------------------
# File: utils/retry.py
# Bounded retry with exponential backoff for exchange calls
# ------------------------------------------------------------
#

import logging
from typing import Callable, Optional, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import RETRY_BASE_DELAY_SECONDS, RETRY_MAX_ATTEMPTS
from domain.errors import ExchangeGatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """ Only network-class failures are worth another attempt. """
    return isinstance(exc, ExchangeGatewayError) and exc.is_transient


def _log_before_sleep(label: str):
    def _log(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s attempt %d failed, retrying in %.1fs: %s",
            label, retry_state.attempt_number, delay, exc,
        )
    return _log


def call_with_retry(
    fn: Callable[[], T],
    label: str,
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
) -> T:
    """
    Run `fn` up to `max_attempts` times.

    Waits base_delay * 2**(attempt-1) seconds between attempts. Anything that
    is not a transient gateway error is raised immediately; after the last
    attempt the original exception is re-raised.
    """
    attempts = max_attempts if max_attempts is not None else RETRY_MAX_ATTEMPTS
    delay = base_delay if base_delay is not None else RETRY_BASE_DELAY_SECONDS

    retryer = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=delay, exp_base=2),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_before_sleep(label),
        reraise=True,
    )
    try:
        return retryer(fn)
    except Exception as exc:
        if is_transient(exc):
            logger.error("%s failed after %d attempts: %s", label, attempts, exc)
        raise
