"""Deterministic idempotency keys for outbound processor calls."""
from __future__ import annotations

import hashlib


def idempotency_key(operation: str, *parts: object) -> str:
    # Stable, reproducible key derived from business identifiers (no timestamp)
    base = "|".join([operation, *(str(p) for p in parts)])
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


def lock_key(external_ref: str) -> str:
    return f"settlement:{external_ref}"
