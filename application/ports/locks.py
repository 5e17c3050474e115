"""
Keyed lock port serialising effects on a single transaction.
"""
from __future__ import annotations

from typing import AsyncContextManager, Protocol, runtime_checkable


@runtime_checkable
class KeyedLock(Protocol):
    """``async with locks.acquire(key):`` holds an exclusive lock for ``key``.

    Different keys never block each other.
    """

    def acquire(self, key: str) -> AsyncContextManager[None]: ...
