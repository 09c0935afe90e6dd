import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from conftest import collect, fake_openai, stream_chunks
from staygenie.models import ChatMessage
from staygenie.services.search_chat import (
    SSE_HEARTBEAT_FRAME,
    CollectingEventSink,
    SSEEventSink,
    build_search_chat_messages,
    build_search_chat_prompt,
    extract_refine_marker,
    run_search_chat,
    stream_completion,
    stream_search_chat,
)


async def _deltas(*parts: str):
    for part in parts:
        yield part


async def _failing_after(*parts: str):
    for part in parts:
        yield part
    raise RuntimeError("model stream dropped")


@pytest.mark.asyncio
async def test_event_order_and_full_response() -> None:
    """connected, one content per delta, then complete carrying the joined text."""
    sink = CollectingEventSink()
    turn = await run_search_chat(_deltas("Hello", " there", "!"), sink)

    types = [e["type"] for e in sink.events]
    assert types == ["connected", "content", "content", "content", "complete"]
    contents = [e["content"] for e in sink.events if e["type"] == "content"]
    assert sink.events[-1]["fullResponse"] == "".join(contents) == "Hello there!"
    assert sink.events[-1]["shouldRefineSearch"] is False
    assert turn.full_response == "Hello there!"
    assert sink.closed


@pytest.mark.asyncio
async def test_refine_marker_is_extracted_from_stream() -> None:
    sink = CollectingEventSink()
    turn = await run_search_chat(_deltas("Sure! [REFINE:", "beach hotels under 200", "]"), sink)

    complete = sink.events[-1]
    assert complete["type"] == "complete"
    assert complete["fullResponse"] == "Sure!"
    assert complete["shouldRefineSearch"] is True
    assert complete["refinedQuery"] == "beach hotels under 200"
    assert turn.should_refine_search


@pytest.mark.asyncio
async def test_failure_mid_stream_ends_with_error() -> None:
    sink = CollectingEventSink()
    turn = await run_search_chat(_failing_after("Partial"), sink)

    assert turn is None
    assert [e["type"] for e in sink.events] == ["connected", "content", "error"]
    assert sink.events[-1]["message"] == "model stream dropped"
    assert sink.closed


@pytest.mark.asyncio
async def test_missing_client_surfaces_as_error_event() -> None:
    sink = CollectingEventSink()
    deltas = stream_completion(None, "gpt-4o-mini", [{"role": "user", "content": "hi"}])
    assert await run_search_chat(deltas, sink) is None
    assert sink.events[-1] == {"type": "error", "message": "OpenAI not configured"}


def test_extract_refine_marker() -> None:
    turn = extract_refine_marker("Sure! [REFINE:beach hotels under 200]")
    assert turn.full_response == "Sure!"
    assert turn.refined_query == "beach hotels under 200"


def test_extract_refine_marker_trims_and_keeps_later_markers() -> None:
    turn = extract_refine_marker("[REFINE:  a  ] ok [REFINE:b]")
    assert turn.refined_query == "a"
    assert turn.full_response == "ok [REFINE:b]"


def test_no_marker() -> None:
    turn = extract_refine_marker("Just chatting ")
    assert turn.should_refine_search is False
    assert turn.refined_query == ""
    assert turn.full_response == "Just chatting "


@pytest.mark.asyncio
async def test_sse_sink_frames_in_order_then_stops() -> None:
    sink = SSEEventSink(heartbeat_seconds=5)
    await run_search_chat(_deltas("a", "b"), sink)
    frames = await collect(sink.frames())

    events = [json.loads(f[len("data: "):]) for f in frames]
    assert all(f.startswith("data: ") and f.endswith("\n\n") for f in frames)
    assert [e["type"] for e in events] == ["connected", "content", "content", "complete"]


@pytest.mark.asyncio
async def test_sse_sink_heartbeat_when_idle() -> None:
    sink = SSEEventSink(heartbeat_seconds=0.01)

    async def produce() -> None:
        await sink.send({"type": "connected"})
        await asyncio.sleep(0.05)
        await sink.close()

    producer = asyncio.create_task(produce())
    frames = await collect(sink.frames())
    await producer

    assert frames[0] == 'data: {"type": "connected"}\n\n'
    assert SSE_HEARTBEAT_FRAME in frames[1:]


@pytest.mark.asyncio
async def test_sse_sink_ignores_sends_after_close() -> None:
    sink = SSEEventSink()
    await sink.close()
    await sink.send({"type": "content", "content": "late"})
    await sink.close()
    assert await collect(sink.frames()) == []


@pytest.mark.asyncio
async def test_stream_search_chat_relays_full_sequence() -> None:
    sink = SSEEventSink(heartbeat_seconds=5)
    frames = await collect(stream_search_chat(_deltas("Hi ", "[REFINE:rome]"), sink))
    events = [json.loads(f[len("data: "):]) for f in frames]
    assert [e["type"] for e in events] == ["connected", "content", "content", "complete"]
    assert events[-1]["refinedQuery"] == "rome"


@pytest.mark.asyncio
async def test_stream_search_chat_cancels_producer_on_disconnect() -> None:
    producer_cancelled = asyncio.Event()

    async def endless():
        try:
            while True:
                await asyncio.sleep(3600)
                yield "never"
        except asyncio.CancelledError:
            producer_cancelled.set()
            raise

    sink = SSEEventSink(heartbeat_seconds=0.01)
    stream = stream_search_chat(endless(), sink)

    assert await stream.__anext__() == 'data: {"type": "connected"}\n\n'
    assert await stream.__anext__() == SSE_HEARTBEAT_FRAME
    await stream.aclose()

    assert producer_cancelled.is_set()
    assert sink.closed
    await sink.send({"type": "content", "content": "late"})
    assert await collect(sink.frames()) == []


@pytest.mark.asyncio
async def test_stream_completion_yields_deltas_and_skips_usage_chunks() -> None:
    usage = SimpleNamespace(prompt_tokens=10, completion_tokens=3)
    create = AsyncMock(return_value=stream_chunks("Hi", "", " you", usage=usage))
    deltas = await collect(
        stream_completion(fake_openai(create), "gpt-4o-mini", [{"role": "user", "content": "hi"}])
    )

    assert deltas == ["Hi", " you"]
    kwargs = create.call_args.kwargs
    assert kwargs["stream"] is True
    assert kwargs["stream_options"] == {"include_usage": True}
    assert kwargs["max_tokens"] == 500


def test_prompt_lists_top_three_hotels() -> None:
    hotels = [
        {
            "id": str(i),
            "name": f"Hotel {i}",
            "city": "Rome",
            "country": "Italy",
            "price": 100 + i,
            "rating": 8.3,
            "aiMatchPercent": 90,
            "topAmenities": ["Pool", "Spa", "Gym", "Bar"],
            "distanceFromSearch": {"formatted": "1.2 km", "fromLocation": "Colosseum"},
        }
        for i in range(5)
    ]
    prompt = build_search_chat_prompt("hotels in Rome", hotels, {"location": "Rome", "adults": 2, "children": 1})

    assert '- User\'s search: "hotels in Rome"' in prompt
    assert "- Guests: 2 adults, 1 children" in prompt
    assert "**Current Results (5 hotels found):**" in prompt
    assert "1. Hotel 0 in Rome, Italy - $100/night (90% match) - 8.3⭐ - 1.2 km from Colosseum" in prompt
    assert "Amenities: Pool, Spa, Gym\n" in prompt
    assert "Hotel 3" not in prompt
    assert "... and 2 more hotels" in prompt
    assert "[REFINE:hotels in Rome with pool]" in prompt


def test_prompt_without_results() -> None:
    prompt = build_search_chat_prompt("", [], {})
    assert "- No active search yet" in prompt
    assert "**No results yet**" in prompt


def test_messages_keep_last_six_history_turns() -> None:
    history = [ChatMessage(role="user" if i % 2 == 0 else "assistant", text=f"m{i}") for i in range(8)]
    messages = build_search_chat_messages("next", history, "hotels", [], {})

    assert messages[0]["role"] == "system"
    assert [m["content"] for m in messages[1:-1]] == [f"m{i}" for i in range(2, 8)]
    assert messages[-1] == {"role": "user", "content": "next"}
