import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import completion, fake_openai, stream_chunks
from staygenie.main import (
    app,
    get_conversation_store,
    get_engine,
    get_hotel_conversation_store,
    get_hotel_chat,
    get_liteapi,
    get_openai,
)
from staygenie.models import RefinementResult
from staygenie.refinement import ModelRefiner, RefinementEngine
from staygenie.services.conversation_store import ConversationStore
from staygenie.services.hotel_chat import HotelChatService
from staygenie.services.liteapi import LiteApiClient


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def store() -> ConversationStore:
    s = ConversationStore()
    app.dependency_overrides[get_conversation_store] = lambda: s
    return s


def _sse_events(body: str) -> list:
    frames = [f for f in body.split("\n\n") if f.startswith("data: ")]
    return [json.loads(f[len("data: "):]) for f in frames]


def test_health(client: TestClient) -> None:
    for path in ("/health", "/api/health"):
        response = client.get(path)
        assert response.status_code == 200
        assert response.json()["status"] == "OK"


@pytest.mark.parametrize("missing", ["conversationId", "userMessage", "currentSearch"])
def test_refine_rejects_missing_field_without_calling_engine(client: TestClient, store, missing: str) -> None:
    engine = MagicMock(spec=RefinementEngine)
    engine.refine = AsyncMock()
    app.dependency_overrides[get_engine] = lambda: engine
    body = {"conversationId": "c1", "userMessage": "with pool", "currentSearch": "hotels in Rome"}
    del body[missing]

    response = client.post("/api/hotels/conversational-refine", json=body)

    assert response.status_code == 400
    assert response.json()["success"] is False
    engine.refine.assert_not_called()
    assert len(store) == 0


def test_refine_rejects_blank_message(client: TestClient, store) -> None:
    response = client.post(
        "/api/hotels/conversational-refine",
        json={"conversationId": "c1", "userMessage": "   ", "currentSearch": "hotels"},
    )
    assert response.status_code == 400


def test_refine_success_uses_rules_without_model(client: TestClient, store) -> None:
    app.dependency_overrides[get_engine] = lambda: RefinementEngine()
    response = client.post(
        "/api/hotels/conversational-refine",
        json={
            "conversationId": "c1",
            "userMessage": "under $150 with breakfast",
            "currentSearch": "hotels in Rome",
            "searchContext": {"location": "Rome", "resultCount": 20},
            "chatHistory": [{"id": "1", "type": "ai", "text": "Hi!", "timestamp": "2025-01-01T00:00:00Z"}],
        },
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["refinedSearch"] == "hotels in Rome under 150"
    assert data["conversationId"] == "c1"
    assert len(data["suggestions"]) == 2
    assert "c1" in store


def test_refine_omits_refined_search_when_none(client: TestClient, store) -> None:
    engine = MagicMock(spec=RefinementEngine)
    engine.refine = AsyncMock(return_value=RefinementResult(response="Tell me more", suggestions=[]))
    app.dependency_overrides[get_engine] = lambda: engine
    response = client.post(
        "/api/hotels/conversational-refine",
        json={"conversationId": "c1", "userMessage": "hmm", "currentSearch": "hotels"},
    )
    assert response.json() == {
        "success": True,
        "aiResponse": "Tell me more",
        "suggestions": [],
        "conversationId": "c1",
    }


@pytest.mark.parametrize("search_context", [{"dates": "2025-03-15"}, {"guests": 2}, {"budget": 200}])
def test_refine_malformed_search_context_falls_back_to_rules(client: TestClient, store, search_context) -> None:
    create = AsyncMock(return_value=completion("not json"))
    app.dependency_overrides[get_engine] = lambda: RefinementEngine(
        ModelRefiner(fake_openai(create), model="gpt-4o-mini")
    )
    response = client.post(
        "/api/hotels/conversational-refine",
        json={
            "conversationId": "c1",
            "userMessage": "under $100",
            "currentSearch": "hotels in Rome",
            "searchContext": search_context,
        },
    )
    assert response.status_code == 200
    assert response.json()["refinedSearch"] == "hotels in Rome under 100"


def test_refine_internal_failure(client: TestClient, store) -> None:
    engine = MagicMock(spec=RefinementEngine)
    engine.refine = AsyncMock(side_effect=RuntimeError("boom"))
    app.dependency_overrides[get_engine] = lambda: engine
    response = client.post(
        "/api/hotels/conversational-refine",
        json={"conversationId": "c1", "userMessage": "hmm", "currentSearch": "hotels"},
    )
    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "boom", "conversationId": "c1"}


def test_search_chat_stream_events(client: TestClient) -> None:
    create = AsyncMock(return_value=stream_chunks("Let me ", "look! ", "[REFINE:rome with pool]"))
    app.dependency_overrides[get_openai] = lambda: fake_openai(create)

    response = client.get(
        "/api/ai-search-chat/stream",
        params={
            "message": "any with pools?",
            "search": "rome",
            "history": json.dumps([{"role": "user", "content": "hi"}]),
            "hotels": json.dumps([{"id": "1", "name": "Hotel Roma", "price": 120, "rating": 8.1}]),
            "params": json.dumps({"location": "Rome"}),
        },
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-accel-buffering"] == "no"
    events = _sse_events(response.text)
    assert [e["type"] for e in events] == ["connected", "content", "content", "content", "complete"]
    assert events[-1]["fullResponse"] == "Let me look!"
    assert events[-1]["refinedQuery"] == "rome with pool"
    messages = create.call_args.kwargs["messages"]
    assert messages[1] == {"role": "user", "content": "hi"}
    assert messages[-1] == {"role": "user", "content": "any with pools?"}


def test_search_chat_stream_without_model_sends_error(client: TestClient) -> None:
    app.dependency_overrides[get_openai] = lambda: None
    response = client.get("/api/ai-search-chat/stream", params={"message": "hello"})
    events = _sse_events(response.text)
    assert [e["type"] for e in events] == ["connected", "error"]


def test_search_chat_stream_requires_message(client: TestClient) -> None:
    response = client.get("/api/ai-search-chat/stream", params={"message": "  "})
    assert response.status_code == 400
    assert response.json() == {"error": "Message is required"}


def test_search_chat_stream_rejects_bad_json(client: TestClient) -> None:
    response = client.get("/api/ai-search-chat/stream", params={"message": "hi", "hotels": "[not json"})
    assert response.status_code == 400


def test_search_chat_post(client: TestClient) -> None:
    create = AsyncMock(return_value=stream_chunks("Sure! ", "[REFINE:beach hotels under 200]"))
    app.dependency_overrides[get_openai] = lambda: fake_openai(create)
    history = [{"role": "assistant", "content": "Hello"}]

    response = client.post(
        "/api/ai-search-chat",
        json={"message": "cheaper near the beach", "conversationHistory": history, "currentSearch": "beach"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["response"] == "Sure!"
    assert data["shouldRefineSearch"] is True
    assert data["refinedQuery"] == "beach hotels under 200"
    assert data["conversationHistory"] == history + [
        {"role": "user", "content": "cheaper near the beach"},
        {"role": "assistant", "content": "Sure!"},
    ]


def test_search_chat_post_failure(client: TestClient) -> None:
    app.dependency_overrides[get_openai] = lambda: None
    response = client.post("/api/ai-search-chat", json={"message": "hi"})
    assert response.status_code == 500
    assert response.json() == {"error": "AI chat failed", "message": "OpenAI not configured"}


def _liteapi(handler) -> LiteApiClient:
    return LiteApiClient(api_key="k", transport=httpx.MockTransport(handler))


def test_reviews_endpoint(client: TestClient) -> None:
    payload = {
        "data": [
            {
                "averageScore": 8,
                "name": "Anna",
                "date": "2025-05-20",
                "headline": "Lovely stay near the old town",
                "language": "en-gb",
                "pros": "Friendly staff",
                "cons": "",
            }
        ]
    }
    app.dependency_overrides[get_liteapi] = lambda: _liteapi(lambda r: httpx.Response(200, json=payload))
    response = client.post("/api/hotels/reviews", json={"hotelId": "lp1", "limit": 5})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total"] == 1
    assert data["reviews"][0]["author"] == "Anna"
    assert data["hotelId"] == "lp1"


def test_reviews_requires_hotel_id(client: TestClient) -> None:
    response = client.post("/api/hotels/reviews", json={})
    assert response.status_code == 400
    assert response.json()["error"] == "Hotel ID is required"


def test_reviews_rate_limit_is_forwarded(client: TestClient) -> None:
    app.dependency_overrides[get_liteapi] = lambda: _liteapi(lambda r: httpx.Response(429))
    response = client.post("/api/hotels/reviews", json={"hotelId": "lp1"})
    assert response.status_code == 429
    assert response.json()["retryAfter"] == 60


def test_fetch_details_for_chat(client: TestClient) -> None:
    details = {"data": {"id": "lp1", "name": "Hotel Roma", "hotelFacilities": ["Bar"]}}
    app.dependency_overrides[get_liteapi] = lambda: _liteapi(lambda r: httpx.Response(200, json=details))
    response = client.post("/api/hotels/fetch-details-for-chat", json={"hotelId": "lp1"})
    data = response.json()
    assert data["success"] is True
    assert data["hotelName"] == "Hotel Roma"
    assert "• Bar" in data["allHotelInfo"]
    assert data["dataLength"] == len(data["allHotelInfo"])


def test_fetch_details_timeout(client: TestClient) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    app.dependency_overrides[get_liteapi] = lambda: _liteapi(handler)
    response = client.post("/api/hotels/fetch-details-for-chat", json={"hotelId": "lp1"})
    assert response.status_code == 408


def test_hotel_chat_keeps_history(client: TestClient) -> None:
    hotel_store = ConversationStore()
    app.dependency_overrides[get_hotel_conversation_store] = lambda: hotel_store
    app.dependency_overrides[get_hotel_chat] = lambda: HotelChatService(None, model="gpt-4o-mini")
    hotel = {"id": "lp1", "name": "Hotel Roma", "topAmenities": ["Free WiFi"]}

    first = client.post(
        "/api/hotels/chat", json={"conversationId": "h1", "userMessage": "is there wifi?", "hotelData": hotel}
    )
    second = client.post(
        "/api/hotels/chat", json={"conversationId": "h1", "userMessage": "pets?", "hotelData": hotel}
    )

    assert first.json()["fallback"] is True
    assert first.json()["aiResponse"].startswith("Yes, Hotel Roma offers WiFi access.")
    assert second.json()["hotelName"] == "Hotel Roma"
    assert "h1" in hotel_store


def test_hotel_chat_validation(client: TestClient) -> None:
    response = client.post(
        "/api/hotels/chat",
        json={"conversationId": "h1", "userMessage": "hi", "hotelData": {"name": "No id"}},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Hotel data must include at least name and id"
