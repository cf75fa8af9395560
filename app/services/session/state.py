"""Per-call session state."""
import logging
import re
import uuid
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

from pydantic import BaseModel

from app.services.session.coverage import CoverageTracker, has_value
from app.services.session.phases import SessionPhase, VoiceProfile
from app.services.session.transitions import can_transition

logger = logging.getLogger(__name__)

# Values the telephony handshake uses for "no conversation id"
_UNSET_REFS = {"", "null", "none", "undefined"}


class Speaker(str, Enum):
    """Who spoke a turn."""

    CALLER = "caller"
    ASSISTANT = "assistant"

    def __str__(self) -> str:
        return self.value


class Utterance(BaseModel):
    """One spoken turn."""

    speaker: Speaker
    text: str


def normalize_text(text: Optional[str]) -> str:
    """Collapse runs of whitespace and trim."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip()


def normalize_conversation_ref(value: Any) -> Optional[str]:
    """Map the handshake's placeholder values to ``None``."""
    if value is None:
        return None
    ref = str(value).strip()
    if ref.lower() in _UNSET_REFS:
        return None
    return ref


def resolve_conversation_ref(primary: Any, fallback: Any = None) -> Optional[str]:
    """Prefer the start payload's parameter over the query-string fallback."""
    return normalize_conversation_ref(primary) or normalize_conversation_ref(fallback)


def _echo_key(text: str) -> str:
    return re.sub(r"[^a-z0-9 ]", "", normalize_text(text).lower())


class Session:
    """Live state for one telephone call.

    Only the session controller mutates a Session.
    """

    def __init__(
        self,
        coverage: CoverageTracker,
        conversation_ref: Optional[str] = None,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.conversation_ref = normalize_conversation_ref(conversation_ref)
        self.call_sid: Optional[str] = None
        self.stream_sid: Optional[str] = None
        self.phase = SessionPhase.INIT
        self.voice_profile = VoiceProfile.INTRO
        self.pending_close = False
        self.coverage = coverage
        self.clinical_data: Dict[str, Any] = {}
        self.transcript: List[Utterance] = []
        self.active_specialties: List[str] = []
        self.summary: Optional[str] = None

        # Greeting preconditions; each must fire at least once
        self.model_configured = False
        self.stream_started = False

        self.logged_item_ids: Set[str] = set()
        # Model responses and output items produced by scripted speech
        self.scripted_response_ids: Set[str] = set()
        self.scripted_item_ids: Set[str] = set()
        self._scripted_echoes: Deque[str] = deque(maxlen=8)

    def transition_to(self, target: SessionPhase) -> bool:
        """Move to ``target`` if the transition table allows it."""
        if self.phase == target:
            return False
        if not can_transition(self.phase, target):
            logger.debug(
                f"[SESSION] Ignored transition {self.phase.value} -> {target.value} - "
                f"Session: {self.session_id}"
            )
            return False
        logger.info(
            f"[SESSION] Phase changed: {self.phase.value} -> {target.value} - "
            f"Session: {self.session_id}"
        )
        self.phase = target
        return True

    def request_close(self) -> None:
        """Flag that a closing summary has been offered."""
        if not self.coverage.is_complete():
            raise ValueError(
                f"Cannot offer closing with uncovered topics: {self.coverage.missing_labels()}"
            )
        self.pending_close = True

    def add_utterance(self, speaker: Speaker, text: str) -> Utterance:
        """Append a turn to the transcript."""
        utterance = Utterance(speaker=speaker, text=text)
        self.transcript.append(utterance)
        return utterance

    def get_transcript_text(self) -> str:
        """Get full transcript as text."""
        labels = {Speaker.CALLER: "Patient", Speaker.ASSISTANT: "Assistant"}
        return "\n".join(f"{labels[u.speaker]}: {u.text}" for u in self.transcript)

    def last_assistant_text(self) -> Optional[str]:
        for utterance in reversed(self.transcript):
            if utterance.speaker == Speaker.ASSISTANT:
                return utterance.text
        return None

    def merge_clinical_data(self, fields: Dict[str, Any]) -> None:
        """Merge non-empty extracted fields into the accumulated clinical data."""
        for key, value in fields.items():
            if has_value(value):
                self.clinical_data[key] = value

    def expect_echo(self, text: str) -> None:
        """Remember scripted text so the model's rendition is not logged twice."""
        self._scripted_echoes.append(_echo_key(text))

    def consume_echo(self, text: str) -> bool:
        key = _echo_key(text)
        if key in self._scripted_echoes:
            self._scripted_echoes.remove(key)
            return True
        return False

    def settle_echo(self, text: str) -> None:
        """Drop the expected echo that a tagged scripted response fulfilled.

        The rendition may be paraphrased, so the oldest expectation goes when
        nothing matches.
        """
        if not self.consume_echo(text) and self._scripted_echoes:
            self._scripted_echoes.popleft()
