"""Retry helpers for optimistic-lock conflicts."""
from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from core.logging_config import get_logger
from domain.payment.exceptions import ConcurrentModificationException


logger = get_logger(__name__)

T = TypeVar("T")


def _log_conflict(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "ledger_conflict_retry",
        attempt=retry_state.attempt_number,
        details=getattr(exc, "details", None),
    )


async def retry_on_conflict(fn: Callable[[], Awaitable[T]], *, attempts: int = 3) -> T:
    """Re-run ``fn`` (re-read and re-apply) when a compare-and-set loses a race."""
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_random(0, 0.05),
        retry=retry_if_exception_type(ConcurrentModificationException),
        before_sleep=_log_conflict,
        reraise=True,
    ):
        with attempt:
            return await fn()
    raise AssertionError("unreachable")  # pragma: no cover
