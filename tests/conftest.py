import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, List
from unittest.mock import AsyncMock, MagicMock


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

import pytest


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def completion(content: str | None) -> SimpleNamespace:
    """Non-streaming chat completion shaped like the OpenAI SDK object."""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def stream_chunks(*deltas: str, usage: Any = None):
    """Async iterator of streaming chunks, optionally ending with a usage-only chunk."""

    async def _gen():
        for delta in deltas:
            yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=delta))], usage=None)
        if usage is not None:
            yield SimpleNamespace(choices=[], usage=usage)

    return _gen()


def fake_openai(create: AsyncMock) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = create
    return client


async def collect(aiter) -> List[Any]:
    return [item async for item in aiter]
