"""One-question-per-turn enforcement for assistant utterances."""
import logging
from typing import Optional

from pydantic import BaseModel

from app.services.session.state import normalize_text

logger = logging.getLogger(__name__)


class TurnDecision(BaseModel):
    """Result of checking one assistant utterance."""

    text: str  # Text to log and speak
    original_text: str
    corrected: bool = False


def count_questions(text: str) -> int:
    return text.count("?")


def truncate_at_first_question(text: str) -> str:
    """Text up to and including the first question mark, trimmed."""
    index = text.find("?")
    if index == -1:
        return text.strip()
    return text[: index + 1].strip()


class TurnEnforcer:
    """Rejects assistant utterances that ask more than one question."""

    def __init__(self, max_questions: int = 1):
        self.max_questions = max_questions

    def enforce(self, text: Optional[str]) -> TurnDecision:
        """Check an utterance and, if needed, rewrite it to a single question."""
        normalized = normalize_text(text)
        if count_questions(normalized) <= self.max_questions:
            return TurnDecision(text=normalized, original_text=normalized)

        corrected = truncate_at_first_question(normalized)
        logger.info(
            f"[TURN ENFORCER] Rejected multi-question utterance "
            f"({count_questions(normalized)} questions) - Corrected to: '{corrected}'"
        )
        return TurnDecision(text=corrected, original_text=normalized, corrected=True)
