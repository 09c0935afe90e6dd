import httpx
import pytest

from staygenie.services.liteapi import HotelDataError, LiteApiClient, retry_after_from


def _client(handler, api_key: str | None = "test-key", clock=lambda: 1_000.0) -> LiteApiClient:
    return LiteApiClient(api_key=api_key, transport=httpx.MockTransport(handler), clock=clock)


@pytest.mark.asyncio
async def test_get_hotel_sends_key_and_returns_payload() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("X-API-Key")
        return httpx.Response(200, json={"data": {"id": "lp1", "name": "Hotel Roma"}})

    client = _client(handler)
    payload = await client.get_hotel("lp1")
    await client.aclose()

    assert payload["data"]["name"] == "Hotel Roma"
    assert seen["key"] == "test-key"
    assert seen["url"] == "https://api.liteapi.travel/v3.0/data/hotel?hotelId=lp1"


@pytest.mark.asyncio
async def test_get_reviews_over_fetches_with_cap() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.url.params)
        return httpx.Response(200, json={"data": []})

    client = _client(handler)
    await client.get_reviews("lp1", limit=10)
    assert seen["limit"] == "40"
    await client.get_reviews("lp1", limit=200)
    assert seen["limit"] == "300"
    assert seen["getSentiment"] == "true"
    await client.aclose()


@pytest.mark.asyncio
async def test_timeout_maps_to_408() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(HotelDataError) as exc:
        await _client(handler).get_reviews("lp1")
    assert exc.value.status_code == 408


@pytest.mark.asyncio
async def test_rate_limit_maps_to_429_with_retry_after() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"x-ratelimit-reset": "1042"})

    with pytest.raises(HotelDataError) as exc:
        await _client(handler).get_hotel("lp1")
    assert exc.value.status_code == 429
    assert exc.value.retry_after == 42
    assert exc.value.to_dict()["retryAfter"] == 42


@pytest.mark.asyncio
async def test_not_found_maps_to_404() -> None:
    with pytest.raises(HotelDataError) as exc:
        await _client(lambda r: httpx.Response(404)).get_hotel("missing")
    assert exc.value.status_code == 404
    assert exc.value.error == "Hotel not found"


@pytest.mark.asyncio
async def test_other_status_is_mirrored() -> None:
    with pytest.raises(HotelDataError) as exc:
        await _client(lambda r: httpx.Response(503)).get_hotel("lp1")
    assert exc.value.status_code == 503


@pytest.mark.asyncio
async def test_missing_key_never_calls_provider() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(HotelDataError) as exc:
        await _client(handler, api_key=None).get_hotel("lp1")
    assert exc.value.status_code == 500
    assert calls == []


def test_retry_after_defaults_to_sixty() -> None:
    assert retry_after_from(httpx.Headers({}), now=0) == 60
    assert retry_after_from(httpx.Headers({"x-ratelimit-reset": "soon"}), now=0) == 60
    assert retry_after_from(httpx.Headers({"x-ratelimit-reset": "10"}), now=20) == 0
