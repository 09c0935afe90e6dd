"""Streaming AI search chat.

The model's token stream is turned into a transport-agnostic event sequence:
``connected``, one ``content`` event per delta, then exactly one ``complete``
or ``error`` event, after which the sink is closed. Sinks decide how the
events reach the client (SSE frames or a single JSON body).
"""

import asyncio
import contextlib
import json
import logging
import re
from typing import Any, AsyncIterator, Dict, List, Protocol

from openai import AsyncOpenAI

from ..models import ChatMessage, SearchChatTurn

logger = logging.getLogger(__name__)

REFINE_MARKER_RE = re.compile(r"\[REFINE:(.+?)\]")

SSE_HEARTBEAT_FRAME = ": heartbeat\n\n"


class EventSink(Protocol):
    async def send(self, event: Dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class CollectingEventSink:
    """Keeps every event in memory; used by the plain JSON transport and tests."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []
        self.closed = False

    async def send(self, event: Dict[str, Any]) -> None:
        if not self.closed:
            self.events.append(event)

    async def close(self) -> None:
        self.closed = True


def format_sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


class SSEEventSink:
    """Queue-backed sink read by the streaming response.

    :meth:`frames` yields ``data:`` frames in send order and a heartbeat
    comment whenever nothing was sent for ``heartbeat_seconds``. It stops
    after :meth:`close`.
    """

    def __init__(self, heartbeat_seconds: float = 15.0) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._heartbeat = heartbeat_seconds
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: Dict[str, Any]) -> None:
        if self._closed:
            return
        await self._queue.put(format_sse(event))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(None)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            try:
                frame = await asyncio.wait_for(self._queue.get(), timeout=self._heartbeat)
            except asyncio.TimeoutError:
                yield SSE_HEARTBEAT_FRAME
                continue
            if frame is None:
                return
            yield frame


def extract_refine_marker(text: str) -> SearchChatTurn:
    """Strip the first ``[REFINE:<query>]`` marker out of the model's text."""
    match = REFINE_MARKER_RE.search(text)
    if not match:
        return SearchChatTurn(full_response=text)
    return SearchChatTurn(
        full_response=REFINE_MARKER_RE.sub("", text, count=1).strip(),
        should_refine_search=True,
        refined_query=match.group(1).strip(),
    )


def _hotel_line(index: int, hotel: Dict[str, Any]) -> str:
    line = f"{index}. {hotel.get('name', 'Unknown hotel')}"
    if hotel.get("city") and hotel.get("country"):
        line += f" in {hotel['city']}, {hotel['country']}"
    line += f" - ${hotel.get('price', '?')}/night"
    if hotel.get("aiMatchPercent"):
        line += f" ({hotel['aiMatchPercent']}% match)"
    rating = hotel.get("rating")
    if isinstance(rating, (int, float)) and rating:
        line += f" - {rating:.1f}⭐"
    distance = hotel.get("distanceFromSearch") or {}
    if distance.get("formatted") and distance.get("fromLocation"):
        line += f" - {distance['formatted']} from {distance['fromLocation']}"
    amenities = hotel.get("topAmenities") or []
    if amenities:
        line += f"\n   Amenities: {', '.join(str(a) for a in amenities[:3])}"
    return line + "\n"


def build_search_chat_prompt(
    current_search: str,
    hotel_context: List[Dict[str, Any]],
    search_params: Dict[str, Any],
) -> str:
    """System prompt describing the current search and its top results."""
    lines = [
        "You are Genie, a friendly AI hotel search assistant. "
        "You help users find and refine their perfect hotel search.",
        "",
        "**Current Context:**",
        f'- User\'s search: "{current_search}"' if current_search else "- No active search yet",
    ]
    if search_params.get("location"):
        lines.append(f"- Location: {search_params['location']}")
    if search_params.get("checkin") and search_params.get("checkout"):
        lines.append(f"- Dates: {search_params['checkin']} to {search_params['checkout']}")
    if search_params.get("adults"):
        guests = f"- Guests: {search_params['adults']} adults"
        if search_params.get("children"):
            guests += f", {search_params['children']} children"
        lines.append(guests)
    prompt = "\n".join(lines) + "\n\n"

    top = hotel_context[:3]
    if hotel_context:
        prompt += f"**Current Results ({len(hotel_context)} hotels found):**\n"
        for idx, hotel in enumerate(top, start=1):
            prompt += _hotel_line(idx, hotel)
        if len(hotel_context) > 3:
            prompt += f"   ... and {len(hotel_context) - 3} more hotels\n"
    else:
        prompt += "**No results yet** - Ready to help find the perfect hotels!\n"

    top_name = top[0].get("name") if top else None
    top_price = top[0].get("price") if top else None
    prompt += f"""
**Your Capabilities:**
1. Answer questions about current search results
2. Suggest refinements to improve results
3. Help adjust search parameters (price, location, dates, amenities)
4. Provide hotel recommendations from current results
5. Trigger new searches when requested

**Instructions:**
- Be conversational, friendly, and concise (2-3 sentences max)
- If user wants to refine search, end your response with [REFINE:new search query]
- Use emojis sparingly (1-2 max per response)
- Don't apologize for limitations - focus on what you CAN do
- If asked about specific hotels, reference them by name from the results
- Suggest actionable next steps

**Example Responses:**
User: "Show me cheaper options"
You: "I'll find more budget-friendly hotels for you! [REFINE:{current_search} under $150 per night]"

User: "What about the Hilton?"
You: "I don't see a Hilton in your current results. The top match is {top_name or 'a great option'} at ${top_price or 'competitive price'}/night. Want me to search specifically for Hilton hotels?"

User: "Any with pools?"
You: "Let me find hotels with swimming pools for you! [REFINE:{current_search} with pool]"

Stay helpful and natural! 🌟"""
    return prompt


def build_search_chat_messages(
    message: str,
    history: List[ChatMessage],
    current_search: str,
    hotel_context: List[Dict[str, Any]],
    search_params: Dict[str, Any],
    history_limit: int = 6,
) -> List[Dict[str, str]]:
    recent = history[-history_limit:] if history_limit > 0 else []
    return [
        {"role": "system", "content": build_search_chat_prompt(current_search, hotel_context, search_params)},
        *(m.to_openai() for m in recent),
        {"role": "user", "content": message},
    ]


async def stream_completion(
    client: AsyncOpenAI | None,
    model: str,
    messages: List[Dict[str, str]],
    temperature: float = 0.7,
    max_tokens: int = 500,
) -> AsyncIterator[str]:
    """Yield content deltas from a streamed chat completion."""
    if client is None:
        raise RuntimeError("OpenAI not configured")

    stream = await client.chat.completions.create(
        model=model,
        messages=messages,
        temperature=temperature,
        max_tokens=max_tokens,
        stream=True,
        stream_options={"include_usage": True},
    )
    async for chunk in stream:
        if chunk.choices:
            content = chunk.choices[0].delta.content
            if content:
                yield content
        if chunk.usage:
            logger.info(
                "AI search chat tokens: %s prompt + %s completion",
                chunk.usage.prompt_tokens,
                chunk.usage.completion_tokens,
            )


async def run_search_chat(deltas: AsyncIterator[str], sink: EventSink) -> SearchChatTurn | None:
    """Forward deltas to the sink and finish with ``complete``, or ``error`` on failure.

    Returns the finished turn, or None if the stream failed. The sink is
    always closed on return.
    """
    await sink.send({"type": "connected"})
    parts: List[str] = []
    try:
        async for delta in deltas:
            parts.append(delta)
            await sink.send({"type": "content", "content": delta})
        turn = extract_refine_marker("".join(parts))
    except Exception as e:
        logger.exception("AI search chat stream failed: %s", e)
        await sink.send({"type": "error", "message": str(e) or "Unknown error"})
        await sink.close()
        return None

    logger.info(
        "AI search chat complete: %d chars, refine=%s %r",
        len(turn.full_response),
        turn.should_refine_search,
        turn.refined_query,
    )
    await sink.send(
        {
            "type": "complete",
            "fullResponse": turn.full_response,
            "shouldRefineSearch": turn.should_refine_search,
            "refinedQuery": turn.refined_query,
        }
    )
    await sink.close()
    return turn


async def stream_search_chat(deltas: AsyncIterator[str], sink: SSEEventSink) -> AsyncIterator[str]:
    """Run :func:`run_search_chat` in a task and yield the sink's SSE frames.

    When the consumer stops early (client disconnect), the producer task is
    cancelled and awaited, and the sink is closed so nothing more is queued.
    """
    task = asyncio.create_task(run_search_chat(deltas, sink))
    try:
        async for frame in sink.frames():
            yield frame
    finally:
        if not task.done():
            logger.info("AI search chat client disconnected")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await sink.close()
