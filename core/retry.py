"""
core/retry.py -- Bounded exponential backoff for storage calls (tenacity).

Stores decorate each repository method with @retried and carry a RetryPolicy
built from Settings. Only transient database errors are retried (SQLAlchemy
OperationalError / DisconnectionError: a locked SQLite file, a dropped
connection, a timeout). Integrity and programming errors fail fast --
retrying them cannot succeed.

When the attempts are exhausted the failure is logged and re-raised as
InternalFailure, the single surfaced kind for storage trouble. The original
exception is chained for the server log only; the API never renders it.

Layer rule: core/ -- no imports from api/, auth/, or clinic/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import DisconnectionError, OperationalError
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.errors import InternalFailure

logger = logging.getLogger("medportal.store")

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (OperationalError, DisconnectionError)


def _log_retry(retry_state: RetryCallState) -> None:
    fn = getattr(retry_state, "fn", None)
    exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
    logger.warning(
        "Retrying storage call %s (attempt %d): %s",
        getattr(fn, "__name__", "unknown"),
        retry_state.attempt_number,
        type(exc).__name__ if exc else "unknown",
    )


@dataclass(frozen=True)
class RetryPolicy:
    """attempts counts the first call; base_delay doubles per retry up to max_delay."""

    attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            attempts=settings.storage_retry_attempts,
            base_delay=settings.storage_retry_base_delay,
            max_delay=settings.storage_retry_max_delay,
        )

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            return retrying(func, *args, **kwargs)
        except TRANSIENT_ERRORS as exc:
            logger.error("Storage call %s failed after %d attempts", func.__name__, self.attempts)
            raise InternalFailure() from exc


def retried(method: Callable[..., T]) -> Callable[..., T]:
    """Method decorator: run the call under the owning store's retry_policy."""

    @wraps(method)
    def wrapper(self, *args: Any, **kwargs: Any) -> T:
        return self.retry_policy.call(method, self, *args, **kwargs)

    return wrapper
