from __future__ import annotations
from typing import Callable, Optional, Tuple, Type, TypeVar
import logging

from .cancellation import CancelToken, ensure_token
from .errors import Canceled

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(backoff_seconds: float, retry_number: int) -> float:
    """Delay before retry `retry_number` (1-based): base * 2^(k-1)."""
    return backoff_seconds * (2 ** (retry_number - 1))


def call_with_retry(
    fn: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    token: Optional[CancelToken] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    what: str = "call",
) -> T:
    """
    Run `fn` once plus up to `max_retries` retries with exponential backoff.

    The last error is re-raised unchanged when the budget is exhausted so the
    caller can wrap it with its own context. Cancellation is checked before
    every attempt and during every wait.
    """
    token = ensure_token(token)
    attempt = 0
    while True:
        token.raise_if_cancelled(what)
        try:
            return fn()
        except Canceled:
            raise
        except retry_on as exc:
            if attempt >= max_retries:
                logger.warning("%s failed after %d attempt(s): %s", what, attempt + 1, exc)
                raise
            attempt += 1
            delay = backoff_delay(backoff_seconds, attempt)
            logger.info(
                "%s failed (%s); retry %d/%d in %.2fs",
                what, exc, attempt, max_retries, delay,
            )
            if token.wait(delay):
                raise Canceled(f"{what} cancelled during backoff") from exc
