"""Model-backed search refinement.

:meth:`ModelRefiner.attempt` never raises for expected failures. It returns a
:class:`ModelReply` when the chat-completion service produced a well-formed
JSON reply and a :class:`ModelUnavailable` otherwise (no client configured,
API error, empty or unparseable content, or any other error while building
the request or reading the reply). There is no retry.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Union

from openai import AsyncOpenAI, OpenAIError

from ..models import ChatMessage, RefinementResult

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 2
DEFAULT_MODEL_RESPONSE = "I understand. What else would you like to refine?"

REFINE_SYSTEM_PROMPT = """You are a helpful hotel search assistant. Your job is to help users refine their hotel search queries through conversation.

IMPORTANT RULES:
1. Keep responses SHORT and conversational (1-2 sentences max)
2. If the user's input should modify the search query, provide a "refinedSearch"
3. Be helpful but concise - don't over-explain
4. Suggest only 1-2 refinements at a time
5. Focus on practical refinements: price, dates, amenities, location specifics
6. Always respond as if the user is directly telling you what they want
7. Use encouraging language like "Got it!", "Perfect!", "Great choice!"

Current search: "{current_search}"
{context}

Recent conversation:
{history}

User's new input: "{user_message}"

Respond with a JSON object:
{{
  "response": "Your conversational response (short!)",
  "refinedSearch": "Updated search query (only if user input should change it, otherwise null)",
  "suggestions": ["suggestion1", "suggestion2"]
}}"""


@dataclass
class ModelReply:
    result: RefinementResult


@dataclass
class ModelUnavailable:
    reason: str


ModelOutcome = Union[ModelReply, ModelUnavailable]


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def build_context_line(search_context: Dict[str, Any] | None) -> str:
    """Summarise the structured search context on one line, or return '' when there is none.

    Nested fields of the wrong shape are ignored.
    """
    if not isinstance(search_context, dict) or not search_context:
        return ""

    parts: List[str] = []
    if search_context.get("resultCount"):
        parts.append(f"Found {search_context['resultCount']} results currently")
    if search_context.get("location"):
        parts.append(f"Location: {search_context['location']}")

    dates = _mapping(search_context.get("dates"))
    if dates.get("checkin") and dates.get("checkout"):
        parts.append(f"Dates: {dates['checkin']} to {dates['checkout']}")

    guests = _mapping(search_context.get("guests"))
    if guests:
        line = f"Guests: {guests.get('adults', 0)} adults"
        if guests.get("children"):
            line += f", {guests['children']} children"
        parts.append(line)

    budget = _mapping(search_context.get("budget"))
    low, high = budget.get("min"), budget.get("max")
    if low and high:
        parts.append(f"Budget: {low}-{high}")
    elif low:
        parts.append(f"Budget: over {low}")
    elif high:
        parts.append(f"Budget: under {high}")

    return f"Context: {', '.join(parts)}" if parts else ""


def build_refine_prompt(
    user_message: str,
    current_search: str,
    search_context: Dict[str, Any] | None,
    history: List[ChatMessage],
) -> str:
    return REFINE_SYSTEM_PROMPT.format(
        current_search=current_search,
        context=build_context_line(search_context),
        history="\n".join(f"{m.role}: {m.text}" for m in history),
        user_message=user_message,
    )


def parse_model_reply(content: str | None) -> RefinementResult:
    """Turn the model's JSON text into a result. Raises ValueError if the shape is wrong."""
    if not content or not content.strip():
        raise ValueError("Empty response from model")
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("Model reply is not a JSON object")

    refined = data.get("refinedSearch")
    if refined is not None and not isinstance(refined, str):
        raise ValueError("refinedSearch must be a string or null")
    suggestions = data.get("suggestions") or []
    if not isinstance(suggestions, list):
        raise ValueError("suggestions must be a list")

    return RefinementResult(
        response=str(data.get("response") or DEFAULT_MODEL_RESPONSE),
        refined_search=refined.strip() if refined and refined.strip() else None,
        suggestions=[str(s) for s in suggestions if s][:MAX_SUGGESTIONS],
    )


class ModelRefiner:
    """Strategy A: ask the chat-completion service for a JSON refinement."""

    def __init__(
        self,
        client: AsyncOpenAI | None,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 300,
        history_limit: int = 4,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._history_limit = history_limit

    async def attempt(
        self,
        user_message: str,
        current_search: str,
        search_context: Dict[str, Any] | None,
        chat_history: List[ChatMessage],
    ) -> ModelOutcome:
        if self._client is None:
            return ModelUnavailable("OpenAI not configured")

        recent = chat_history[-self._history_limit:] if self._history_limit > 0 else []
        try:
            prompt = build_refine_prompt(user_message, current_search, search_context, recent)
            completion = await self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "system", "content": prompt}],
                max_tokens=self._max_tokens,
                temperature=self._temperature,
            )
        except OpenAIError as e:
            logger.warning("Refinement model call failed: %s", e)
            return ModelUnavailable(f"OpenAI API error: {e}")
        except Exception as e:
            logger.exception("Refinement model request could not be built: %s", e)
            return ModelUnavailable(f"Model request failed: {e}")

        try:
            content = completion.choices[0].message.content if completion.choices else None
            return ModelReply(parse_model_reply(content))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Failed to parse refinement model reply: %s", e)
            return ModelUnavailable(f"Unparseable model reply: {e}")
        except Exception as e:
            logger.exception("Unexpected refinement model reply: %s", e)
            return ModelUnavailable(f"Unexpected model reply: {e}")
