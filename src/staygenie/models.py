from dataclasses import dataclass, field
from typing import Any, Dict, List

ROLE_ALIASES = {"ai": "assistant", "bot": "assistant", "human": "user"}
VALID_ROLES = ("user", "assistant", "system")


@dataclass
class ChatMessage:
    """One turn of a chat, normalised from the client's payload."""

    role: str
    text: str
    timestamp: str | None = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        """Accept both ``{type, text}`` (mobile refine chat) and ``{role, content}`` shapes."""
        raw_role = str(data.get("role") or data.get("type") or "user").lower()
        role = ROLE_ALIASES.get(raw_role, raw_role)
        if role not in VALID_ROLES:
            role = "user"
        text = data.get("text")
        if text is None:
            text = data.get("content")
        timestamp = data.get("timestamp")
        return cls(
            role=role,
            text=str(text or ""),
            timestamp=str(timestamp) if timestamp is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.text}
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp
        return data

    def to_openai(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.text}


def parse_history(raw: Any) -> List[ChatMessage]:
    """Build a message list from untrusted JSON, skipping anything that is not an object."""
    if not isinstance(raw, list):
        return []
    return [ChatMessage.from_dict(item) for item in raw if isinstance(item, dict)]


@dataclass
class ConversationState:
    """Server-side mirror of one conversation (history, search context, last write)."""

    history: List[ChatMessage] = field(default_factory=list)
    context: Dict[str, Any] | None = None
    last_activity: float = 0.0


@dataclass
class RefinementResult:
    """Reply to one refinement turn. ``refined_search`` is set only when the client should re-search."""

    response: str
    refined_search: str | None = None
    suggestions: List[str] = field(default_factory=list)


@dataclass
class SearchChatTurn:
    """Outcome of one streamed AI search chat turn."""

    full_response: str
    should_refine_search: bool = False
    refined_query: str = ""
