"""
Catalog port: resolves buyers and purchasable items owned by other services.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class CatalogItem:
    item_id: str
    creator_id: str
    title: str
    price: int  # minor currency units
    currency: str
    is_active: bool = True
    creator_name: Optional[str] = None


@runtime_checkable
class CatalogPort(Protocol):
    async def get_item(self, item_id: str) -> Optional[CatalogItem]: ...

    async def user_exists(self, user_id: str) -> bool: ...
