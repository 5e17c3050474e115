"""
Base payment client implementing shared concerns: timeout, retry, logging, mapping.

Concrete providers should subclass and implement provider-specific logic.
Provider SDKs are blocking, so every call runs in a worker thread bounded by
the configured total timeout.
"""
from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from application.dtos.payments import (
    CreatePaymentIntent,
    CreateRefund,
    PaymentIntent,
    RefundResult,
    WebhookEvent,
)
from application.ports.payment_gateway import PaymentGateway
from infrastructure.external.payments.exceptions import PaymentRecoverableError
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL, PaymentCode


logger = get_logger(__name__)

T = TypeVar("T")


class BasePaymentClient(PaymentGateway):
    provider: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 1.0, "read": 3.0, "write": 3.0, "total": 5.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}

    @property
    def total_timeout(self) -> float:
        return float(self._timeouts_cfg["total"])

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking SDK call off the event loop with timeout and bounded retries."""
        bound = functools.partial(fn, *args, **kwargs)

        async def _once() -> T:
            try:
                return await asyncio.wait_for(asyncio.to_thread(bound), timeout=self.total_timeout)
            except asyncio.TimeoutError as exc:
                raise PaymentRecoverableError(
                    f"{operation} timed out after {self.total_timeout}s",
                    provider=self.provider,
                    code=PaymentCode.TIMEOUT,
                ) from exc

        return await self._retry(operation, _once)

    async def _retry(self, operation: str, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type(PaymentRecoverableError),
            before_sleep=lambda rs: self._log(
                "payment_provider_retry",
                operation=operation,
                attempt=rs.attempt_number,
                error=str(rs.outcome.exception()) if rs.outcome else None,
            ),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def aclose(self) -> None:
        return None

    # Default implementations raise to force override where needed
    async def create_payment_intent(self, req: CreatePaymentIntent) -> PaymentIntent:  # type: ignore[override]
        raise NotImplementedError

    async def get_payment_intent(self, intent_id: str) -> PaymentIntent:  # type: ignore[override]
        raise NotImplementedError

    async def create_refund(self, req: CreateRefund) -> RefundResult:  # type: ignore[override]
        raise NotImplementedError

    def verify_and_parse_event(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:  # type: ignore[override]
        raise NotImplementedError

    # Helpers
    def _map_status(self, provider_status: str) -> str:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.provider, {})
        return mapping.get(provider_status, provider_status)

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
