"""Coverage-gated closing sequence for intake calls."""
import logging
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from app.services.intake.base import IntakeProtocol
from app.services.session.intents import is_confirmation, is_goodbye
from app.services.session.state import Session, normalize_text

logger = logging.getLogger(__name__)


class ClosingAction(str, Enum):
    """What the controller should do with a caller utterance."""

    NONE = "none"  # Not a closing cue
    FOLLOW_UP = "follow_up"  # Wants to leave, topics still missing
    REQUEST_SUMMARY = "request_summary"  # Wants to leave, coverage complete
    CONFIRM_CLOSE = "confirm_close"  # Confirmed nothing else after the summary
    KEEP_OPEN = "keep_open"  # Summary offered, caller is adding more

    def __str__(self) -> str:
        return self.value


class ClosingDecision(BaseModel):
    """Outcome of evaluating one caller utterance."""

    action: ClosingAction
    text: Optional[str] = None
    missing: List[str] = []


def join_phrases(phrases: List[str]) -> str:
    """Join phrases as natural speech: "a", "a and b", "a, b, and c"."""
    if not phrases:
        return ""
    if len(phrases) == 1:
        return phrases[0]
    if len(phrases) == 2:
        return f"{phrases[0]} and {phrases[1]}"
    return f"{', '.join(phrases[:-1])}, and {phrases[-1]}"


class ClosingProtocol:
    """Decides how a caller's end-of-call intent is handled.

    Evaluation only reads the session; the controller applies the decision.
    """

    def __init__(self, protocol: IntakeProtocol):
        self.protocol = protocol

    def evaluate(self, session: Session, text: str) -> ClosingDecision:
        """Classify a caller utterance against the closing sequence."""
        if session.pending_close:
            if is_confirmation(text):
                logger.info(f"[CLOSING] Caller confirmed closing - Session: {session.session_id}")
                return ClosingDecision(action=ClosingAction.CONFIRM_CLOSE)
            return ClosingDecision(action=ClosingAction.KEEP_OPEN)

        if not is_goodbye(text):
            return ClosingDecision(action=ClosingAction.NONE)

        missing = session.coverage.missing_categories()
        if missing:
            logger.info(
                f"[CLOSING] End-of-call intent with uncovered topics {session.coverage.missing_labels()} - "
                f"Session: {session.session_id}"
            )
            return ClosingDecision(
                action=ClosingAction.FOLLOW_UP,
                text=self.follow_up_text(missing),
                missing=missing,
            )

        logger.info(f"[CLOSING] End-of-call intent with full coverage - Session: {session.session_id}")
        return ClosingDecision(action=ClosingAction.REQUEST_SUMMARY)

    def waits_for_extraction(self, session: Session, text: str) -> bool:
        """Whether the utterance must be evaluated after its own fields are extracted.

        A goodbye can carry the last missing topic ("I'm allergic to
        penicillin, bye"), so it is only judged once coverage reflects it.
        """
        return not session.pending_close and is_goodbye(text) and not session.coverage.is_complete()

    def follow_up_text(self, missing: List[str]) -> str:
        """A single question naming every missing topic."""
        return (
            "Before we wrap up, I still need a little more information. "
            f"Could you tell me about {join_phrases(missing)}?"
        )

    def summary_text(self, summary: Optional[str]) -> str:
        """Spoken summary ending with the fixed closing question."""
        body = normalize_text(summary) or self.protocol.summary_fallback
        # The closing question must be the only question in the turn
        body = body.replace("?", ".")
        if not body.endswith((".", "!")):
            body = f"{body}."
        return f"{body} {self.protocol.closing_question}"

    def farewell_text(self) -> str:
        return self.protocol.farewell
