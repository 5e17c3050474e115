"""
Exceptions for payment providers mapped to unified BusinessException variants.
"""
from __future__ import annotations

from typing import Optional
from domain.common.exceptions import BusinessException
from domain.payment.exceptions import ExternalProcessorError
from shared.codes.payment_codes import PaymentCode


class PaymentProviderError(ExternalProcessorError):
    """Non-retryable rejection (card declined, invalid request, auth)."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            message,
            provider=provider,
            provider_code=provider_code,
            details=details,
            code=PaymentCode.PROVIDER_ERROR,
            error_type="PaymentProviderError",
        )


class PaymentRecoverableError(ExternalProcessorError):
    """Transient failure (timeout, rate limit, connection); safe to retry with the same idempotency key."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_code: str | None = None,
        details: Optional[dict] = None,
        code: int = PaymentCode.PROVIDER_RECOVERABLE,
    ):
        super().__init__(
            message,
            provider=provider,
            provider_code=provider_code,
            details=details,
            code=code,
            error_type="PaymentRecoverableError",
        )


class PaymentSignatureError(BusinessException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=full_details,
        )
