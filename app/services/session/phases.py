"""Session phase enumeration."""
from enum import Enum


class SessionPhase(str, Enum):
    """Lifecycle phases of a live intake call."""

    INIT = "init"  # Telephony leg attached, no start event yet
    STREAM_STARTING = "stream_starting"  # Media stream started, greeting not yet sent
    GREETED = "greeted"  # Scripted opening line issued
    AWAITING_CONSENT = "awaiting_consent"  # Opening line finished, waiting for the caller
    INTAKE_ACTIVE = "intake_active"  # Caller has spoken at least once
    CLOSE_REQUESTED = "close_requested"  # Summary offered, waiting for confirmation
    CLOSED = "closed"
    ERROR = "error"

    def __str__(self) -> str:
        """Return the string value of the phase."""
        return self.value


class VoiceProfile(str, Enum):
    """Which synthesized voice is active."""

    INTRO = "intro"
    QUESTION = "question"

    def __str__(self) -> str:
        return self.value
