import httpx
import pytest

from core.config import CatalogSettings
from infrastructure.external.api_clients import APIError, CatalogAPIClient


def _client(handler):
    return CatalogAPIClient(
        CatalogSettings(base_url="http://catalog.test/api/v1", max_retries=2, api_token="tok"),
        retry_delay=0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_get_item_maps_payload():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={
            "id": "item-1", "creator_id": 7, "title": "Brush Pack", "price": 1000,
            "currency": "usd", "creator_name": "Ana",
        })

    client = _client(handler)
    item = await client.get_item("item-1")
    await client.aclose()

    assert item.creator_id == "7"
    assert item.currency == "USD"
    assert item.is_active is True
    assert seen[0].url.path == "/api/v1/items/item-1"
    assert seen[0].headers["Authorization"] == "Bearer tok"


@pytest.mark.asyncio
async def test_missing_item_and_user():
    client = _client(lambda request: httpx.Response(404, json={"detail": "not found"}))
    assert await client.get_item("nope") is None
    assert await client.user_exists("ghost") is False
    await client.aclose()


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"id": "buyer-1"})

    client = _client(handler)
    assert await client.user_exists("buyer-1") is True
    assert len(calls) == 3
    await client.aclose()


@pytest.mark.asyncio
async def test_malformed_item_raises_api_error():
    client = _client(lambda request: httpx.Response(200, json={"id": "item-1", "title": "no price"}))
    with pytest.raises(APIError):
        await client.get_item("item-1")
    await client.aclose()
