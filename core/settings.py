"""
Payment and settlement ledger settings using pydantic-settings v2 with nested env keys.

Env vars use the ``PAYMENT__`` prefix, e.g. ``PAYMENT__STRIPE__SECRET_KEY`` or
``PAYMENT__LEDGER__COMMISSION_RATE``.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None


class LedgerSettings(BaseModel):
    commission_rate: Decimal = Decimal("0.15")
    default_currency: str = "USD"
    # Orphan events: the processor may notify before the local create() commits
    orphan_max_attempts: int = 3
    orphan_base_backoff: float = 0.5
    orphan_max_backoff: float = 5.0
    # Optimistic-lock conflicts
    conflict_max_attempts: int = 3
    dead_letter_max_replays: int = 10
    dead_letter_replay_batch: int = 100
    top_items_limit: int = 10

    @field_validator("commission_rate")
    @classmethod
    def _check_rate(cls, v: Decimal) -> Decimal:
        if v < 0 or v > 1:
            raise ValueError("commission_rate must be within [0, 1]")
        return v


class PaymentSettings(BaseSettings):
    default_provider: str = "stripe"
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    stripe: StripeSettings = Field(default_factory=StripeSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
