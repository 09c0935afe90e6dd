import logging
from typing import Any, Callable, Dict, List

from ..models import ChatMessage, RefinementResult
from .model import ModelOutcome, ModelRefiner, ModelReply, ModelUnavailable
from .rules import fallback_refinement

logger = logging.getLogger(__name__)


def resolve_refinement(
    outcome: ModelOutcome,
    fallback: Callable[[], RefinementResult],
) -> RefinementResult:
    """Use the model's result when there is one, else the rule-based fallback."""
    if isinstance(outcome, ModelReply):
        return outcome.result
    if isinstance(outcome, ModelUnavailable):
        logger.info("Model refinement unavailable (%s); using rule-based fallback", outcome.reason)
    return fallback()


class RefinementEngine:
    """Turns a user utterance into a refinement, trying the model before the rules."""

    def __init__(self, model: ModelRefiner | None = None) -> None:
        self._model = model

    async def refine(
        self,
        user_message: str,
        current_search: str,
        search_context: Dict[str, Any] | None = None,
        chat_history: List[ChatMessage] | None = None,
    ) -> RefinementResult:
        """Return the reply text, an optional refined search string, and up to two suggestions."""
        history = list(chat_history or [])
        if self._model is None:
            outcome: ModelOutcome = ModelUnavailable("model refinement disabled")
        else:
            outcome = await self._model.attempt(user_message, current_search, search_context, history)
        return resolve_refinement(outcome, lambda: fallback_refinement(user_message, current_search))
