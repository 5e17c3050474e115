"""Catalog service client: resolves buyers and purchasable items over HTTP."""
from typing import Optional

from application.ports.catalog import CatalogItem
from core.config import CatalogSettings
from .base import APIError, BaseAPIClient, NotFoundError


class CatalogAPIClient(BaseAPIClient):
    """
    商品目录客户端（实现 CatalogPort）

    GET /items/{item_id} -> {id, creator_id, title, price, currency, is_active, creator_name}
    GET /users/{user_id}  -> 200 存在 / 404 不存在
    """

    def __init__(self, settings: CatalogSettings, **kwargs):
        super().__init__(
            base_url=settings.base_url,
            timeout=settings.timeout,
            max_retries=settings.max_retries,
            auth_token=settings.api_token,
            **kwargs,
        )

    async def get_item(self, item_id: str) -> Optional[CatalogItem]:
        try:
            response = await self.get(f"items/{item_id}")
        except NotFoundError:
            return None
        data = response.json()
        try:
            return CatalogItem(
                item_id=str(data.get("id") or item_id),
                creator_id=str(data["creator_id"]),
                title=data.get("title") or str(item_id),
                price=int(data["price"]),
                currency=(data.get("currency") or "USD").upper(),
                is_active=bool(data.get("is_active", True)),
                creator_name=data.get("creator_name"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise APIError(f"Malformed catalog item {item_id}: {exc}", status_code=response.status_code) from exc

    async def user_exists(self, user_id: str) -> bool:
        try:
            await self.get(f"users/{user_id}")
        except NotFoundError:
            return False
        return True
