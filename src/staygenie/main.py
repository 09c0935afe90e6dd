import asyncio
import contextlib
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, AsyncIterator, Dict

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from openai import AsyncOpenAI
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .models import ChatMessage, parse_history
from .refinement import ModelRefiner, RefinementEngine
from .services.conversation_store import ConversationStore, RedisConversationStore, run_sweeper
from .services.hotel_chat import HotelChatService, consolidate_hotel_info
from .services.liteapi import HotelDataError, LiteApiClient
from .services.redis import get_redis_crud_service
from .services.reviews import summarize_reviews
from .services.search_chat import (
    CollectingEventSink,
    SSEEventSink,
    build_search_chat_messages,
    run_search_chat,
    stream_completion,
    stream_search_chat,
)
from .settings import Settings, get_settings

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
    "X-Accel-Buffering": "no",
}


def setup_server_logging(settings: Settings) -> logging.Logger:
    """Configure and return the server logger."""
    logs_dir = settings.log_dir
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("staygenie")
    if logger.handlers:
        return logger.getChild("server")

    logger.setLevel(settings.log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger.getChild("server")


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


def _openai_client(settings: Settings) -> AsyncOpenAI | None:
    if not settings.openai_api_key:
        LOGGER.warning("OPENAI_API_KEY not set; refinement and hotel chat will use rule-based fallbacks")
        return None
    return AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)


settings = get_settings()
LOGGER = setup_server_logging(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire services onto app.state; start the conversation sweeper; tear everything down on shutdown."""
    settings = get_settings()
    client = _openai_client(settings)

    conversations: Any = ConversationStore(ttl_seconds=settings.conversation_ttl_seconds)
    hotel_conversations: Any = ConversationStore(ttl_seconds=settings.conversation_ttl_seconds)
    redis_crud = get_redis_crud_service()
    if redis_crud is not None:
        try:
            await redis_crud.connect()
            conversations = RedisConversationStore(redis_crud, ttl_seconds=settings.conversation_ttl_seconds)
            hotel_conversations = RedisConversationStore(
                redis_crud, ttl_seconds=settings.conversation_ttl_seconds, namespace="hotel-chat:"
            )
            LOGGER.info("Conversation state mirrored to Redis")
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            LOGGER.warning("Redis unavailable, keeping conversations in memory: %s", e)
            redis_crud = None

    app.state.openai = client
    app.state.conversations = conversations
    app.state.hotel_conversations = hotel_conversations
    app.state.engine = RefinementEngine(
        ModelRefiner(
            client,
            model=settings.model,
            temperature=settings.refine_temperature,
            max_tokens=settings.refine_max_tokens,
            history_limit=settings.refine_history_limit,
        )
    )
    app.state.hotel_chat = HotelChatService(
        client,
        model=settings.model,
        temperature=settings.hotel_chat_temperature,
        max_tokens=settings.hotel_chat_max_tokens,
        history_limit=settings.hotel_chat_history_limit,
    )
    app.state.liteapi = LiteApiClient.from_settings(settings)

    sweeper = asyncio.create_task(
        run_sweeper([conversations, hotel_conversations], settings.conversation_sweep_interval_seconds)
    )

    yield

    LOGGER.info("Shutting down...")
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await app.state.liteapi.aclose()
    if redis_crud is not None:
        await redis_crud.close()
    if client is not None:
        await client.close()


app = FastAPI(
    title="StayGenie Search Assistant",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_engine(request: Request) -> RefinementEngine:
    return request.app.state.engine


def get_conversation_store(request: Request) -> Any:
    return request.app.state.conversations


def get_hotel_conversation_store(request: Request) -> Any:
    return request.app.state.hotel_conversations


def get_openai(request: Request) -> AsyncOpenAI | None:
    return request.app.state.openai


def get_hotel_chat(request: Request) -> HotelChatService:
    return request.app.state.hotel_chat


def get_liteapi(request: Request) -> LiteApiClient:
    return request.app.state.liteapi


@app.exception_handler(HotelDataError)
async def hotel_data_error_handler(request: Request, exc: HotelDataError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    body: Dict[str, Any] = {"success": False, "error": "Internal server error"}
    if get_settings().debug:
        body["details"] = str(exc)
    return JSONResponse(status_code=500, content=body)


async def _json_body(request: Request) -> Dict[str, Any] | None:
    """Parsed JSON object body, or None when the body is not a JSON object."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def _bad_request(error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": error, **extra})


@app.get("/health")
@app.get("/api/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "StayGenie Backend",
    }


@app.post("/api/hotels/conversational-refine")
async def conversational_refine(
    request: Request,
    engine: RefinementEngine = Depends(get_engine),
    store: Any = Depends(get_conversation_store),
) -> JSONResponse:
    """Non-streaming refinement turn.

    Body: ``{conversationId, userMessage, currentSearch, searchContext?, chatHistory?}``.
    Returns ``{success, aiResponse, refinedSearch?, suggestions, conversationId}``.
    """
    payload = await _json_body(request) or {}
    conversation_id = payload.get("conversationId")
    user_message = str(payload.get("userMessage") or "").strip()
    current_search = str(payload.get("currentSearch") or "").strip()

    if not conversation_id or not user_message or not current_search:
        return _bad_request(
            "Missing required fields: conversationId, userMessage, currentSearch",
            conversationId=conversation_id,
        )

    conversation_id = str(conversation_id)
    history = parse_history(payload.get("chatHistory"))
    search_context = payload.get("searchContext")
    if not isinstance(search_context, dict):
        search_context = None

    LOGGER.info(
        "Conversational refine conversation=%s message=%r search=%r",
        conversation_id,
        user_message[:100],
        current_search[:100],
    )

    try:
        await store.put(conversation_id, history, search_context)
        result = await engine.refine(user_message, current_search, search_context, history)
    except Exception as e:
        LOGGER.exception("Conversational refine failed for %s: %s", conversation_id, e)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": str(e) or "Failed to process conversational refinement",
                "conversationId": conversation_id,
            },
        )

    body: Dict[str, Any] = {
        "success": True,
        "aiResponse": result.response,
        "suggestions": result.suggestions,
        "conversationId": conversation_id,
    }
    if result.refined_search:
        body["refinedSearch"] = result.refined_search
    LOGGER.info(
        "Conversational refine done conversation=%s refined=%r suggestions=%d",
        conversation_id,
        result.refined_search,
        len(result.suggestions),
    )
    return JSONResponse(content=body)


def _query_json(request: Request, name: str, default: Any) -> Any:
    raw = request.query_params.get(name)
    if not raw:
        return default
    return json.loads(raw)


def _search_chat_deltas(
    client: AsyncOpenAI | None,
    message: str,
    history: list[ChatMessage],
    current_search: str,
    hotel_context: Any,
    search_params: Any,
) -> AsyncIterator[str]:
    settings = get_settings()
    hotels = [h for h in hotel_context if isinstance(h, dict)] if isinstance(hotel_context, list) else []
    params = search_params if isinstance(search_params, dict) else {}
    LOGGER.info(
        "AI search chat message=%r search=%r hotels=%d params=%s",
        message[:100],
        current_search[:100],
        len(hotels),
        bool(params),
    )
    messages = build_search_chat_messages(
        message,
        history,
        current_search,
        hotels,
        params,
        history_limit=settings.search_chat_history_limit,
    )
    return stream_completion(
        client,
        settings.model,
        messages,
        temperature=settings.search_chat_temperature,
        max_tokens=settings.search_chat_max_tokens,
    )


@app.get("/api/ai-search-chat/stream")
async def ai_search_chat_stream(request: Request, client: AsyncOpenAI | None = Depends(get_openai)):
    """Server-Sent Events variant.

    Query parameters: ``message``, ``history`` (JSON), ``search``, ``hotels`` (JSON), ``params`` (JSON).
    Emits ``connected``, ``content`` per token, then ``complete`` or ``error``.
    """
    message = request.query_params.get("message", "").strip()
    if not message:
        return JSONResponse(status_code=400, content={"error": "Message is required"})
    try:
        history = parse_history(_query_json(request, "history", []))
        hotels = _query_json(request, "hotels", [])
        params = _query_json(request, "params", {})
    except json.JSONDecodeError as e:
        return JSONResponse(status_code=400, content={"error": f"Invalid JSON in query parameters: {e}"})
    current_search = request.query_params.get("search", "")

    sink = SSEEventSink(heartbeat_seconds=get_settings().sse_heartbeat_seconds)
    deltas = _search_chat_deltas(client, message, history, current_search, hotels, params)

    return StreamingResponse(
        stream_search_chat(deltas, sink), media_type="text/event-stream", headers=SSE_HEADERS
    )


@app.post("/api/ai-search-chat")
async def ai_search_chat(request: Request, client: AsyncOpenAI | None = Depends(get_openai)) -> JSONResponse:
    """Plain JSON variant of the AI search chat; same events, collected into one body."""
    payload = await _json_body(request) or {}
    message = str(payload.get("message") or "").strip()
    if not message:
        return JSONResponse(status_code=400, content={"error": "Message is required"})

    raw_history = payload.get("conversationHistory")
    history = parse_history(raw_history)
    deltas = _search_chat_deltas(
        client,
        message,
        history,
        str(payload.get("currentSearch") or ""),
        payload.get("hotelContext") or [],
        payload.get("searchParams") or {},
    )

    sink = CollectingEventSink()
    turn = await run_search_chat(deltas, sink)
    if turn is None:
        error = next((e for e in sink.events if e.get("type") == "error"), {})
        return JSONResponse(
            status_code=500,
            content={"error": "AI chat failed", "message": error.get("message", "Unknown error")},
        )

    return JSONResponse(
        content={
            "success": True,
            "response": turn.full_response,
            "shouldRefineSearch": turn.should_refine_search,
            "refinedQuery": turn.refined_query,
            "conversationHistory": [
                *(raw_history if isinstance(raw_history, list) else []),
                {"role": "user", "content": message},
                {"role": "assistant", "content": turn.full_response},
            ],
        }
    )


@app.post("/api/hotels/fetch-details-for-chat")
async def fetch_hotel_details_for_chat(
    request: Request,
    liteapi: LiteApiClient = Depends(get_liteapi),
) -> JSONResponse:
    """Fetch a hotel's details and flatten them into chat context text."""
    payload = await _json_body(request) or {}
    hotel_id = payload.get("hotelId")
    if not hotel_id:
        return _bad_request("hotelId is required")

    details = await liteapi.get_hotel(str(hotel_id))
    hotel = details.get("data") if isinstance(details, dict) else None
    if not hotel:
        return JSONResponse(
            status_code=404,
            content={"success": False, "error": "Hotel details not found", "hotelId": hotel_id},
        )

    info = consolidate_hotel_info(details)
    return JSONResponse(
        content={
            "success": True,
            "hotelId": hotel_id,
            "hotelName": hotel.get("name"),
            "allHotelInfo": info,
            "dataLength": len(info),
            "generatedAt": datetime.now(timezone.utc).isoformat(),
        }
    )


@app.post("/api/hotels/reviews")
async def fetch_hotel_reviews(
    request: Request,
    liteapi: LiteApiClient = Depends(get_liteapi),
) -> JSONResponse:
    """English reviews with low-information ones pushed to the back."""
    payload = await _json_body(request) or {}
    hotel_id = payload.get("hotelId")
    if not hotel_id:
        return _bad_request("Hotel ID is required", message="Please provide a valid hotel ID to fetch reviews")
    try:
        limit = max(1, int(payload.get("limit", 50)))
        offset = max(0, int(payload.get("offset", 0)))
    except (TypeError, ValueError):
        return _bad_request("limit and offset must be integers")
    get_sentiment = bool(payload.get("getSentiment", True))

    raw = await liteapi.get_reviews(str(hotel_id), limit=limit, offset=offset, get_sentiment=get_sentiment)
    data = summarize_reviews(raw, str(hotel_id), limit)
    LOGGER.info("Reviews for %s: %d returned of %d", hotel_id, len(data["reviews"]), data["total"])
    return JSONResponse(content={"success": True, "data": data})


@app.post("/api/hotels/chat")
async def hotel_chat(
    request: Request,
    service: HotelChatService = Depends(get_hotel_chat),
    store: Any = Depends(get_hotel_conversation_store),
) -> JSONResponse:
    """Q&A about one hotel: ``{conversationId, userMessage, hotelData, chatHistory?}``."""
    payload = await _json_body(request) or {}
    conversation_id = payload.get("conversationId")
    user_message = str(payload.get("userMessage") or "").strip()
    hotel = payload.get("hotelData")

    if not conversation_id or not user_message or not hotel:
        return _bad_request("Missing required fields: conversationId, userMessage, and hotelData are required")
    if not isinstance(hotel, dict) or not hotel.get("name") or not hotel.get("id"):
        return _bad_request("Hotel data must include at least name and id")

    conversation_id = str(conversation_id)
    state = await store.get(conversation_id)
    history = list(state.history) if state else parse_history(payload.get("chatHistory"))
    history.append(ChatMessage(role="user", text=user_message))

    answer, used_fallback = await service.answer(user_message, hotel, history)
    history.append(ChatMessage(role="assistant", text=answer))
    await store.put(
        conversation_id,
        history[-get_settings().hotel_chat_stored_messages:],
        {"hotelId": hotel["id"]},
    )

    body: Dict[str, Any] = {
        "success": True,
        "aiResponse": answer,
        "conversationId": conversation_id,
        "hotelName": hotel["name"],
    }
    if used_fallback:
        body["fallback"] = True
    return JSONResponse(content=body)


def run() -> None:
    import uvicorn

    uvicorn.run("staygenie.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
