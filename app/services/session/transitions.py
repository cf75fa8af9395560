"""Legal phase transitions for a call session."""
import logging
from typing import Dict, FrozenSet

from app.services.session.phases import SessionPhase

logger = logging.getLogger(__name__)

_TERMINAL = frozenset({SessionPhase.CLOSED, SessionPhase.ERROR})

ALLOWED_TRANSITIONS: Dict[SessionPhase, FrozenSet[SessionPhase]] = {
    SessionPhase.INIT: frozenset({
        SessionPhase.STREAM_STARTING,
        SessionPhase.INTAKE_ACTIVE,
    }) | _TERMINAL,
    SessionPhase.STREAM_STARTING: frozenset({
        SessionPhase.GREETED,
        SessionPhase.INTAKE_ACTIVE,
    }) | _TERMINAL,
    SessionPhase.GREETED: frozenset({
        SessionPhase.AWAITING_CONSENT,
        SessionPhase.INTAKE_ACTIVE,
    }) | _TERMINAL,
    SessionPhase.AWAITING_CONSENT: frozenset({
        SessionPhase.INTAKE_ACTIVE,
    }) | _TERMINAL,
    SessionPhase.INTAKE_ACTIVE: frozenset({
        SessionPhase.CLOSE_REQUESTED,
    }) | _TERMINAL,
    SessionPhase.CLOSE_REQUESTED: _TERMINAL,
    SessionPhase.CLOSED: frozenset(),
    SessionPhase.ERROR: frozenset(),
}

# Phases from which the first caller transcript moves the call into intake
PRE_INTAKE_PHASES = frozenset({
    SessionPhase.INIT,
    SessionPhase.STREAM_STARTING,
    SessionPhase.GREETED,
    SessionPhase.AWAITING_CONSENT,
})


def can_transition(current: SessionPhase, target: SessionPhase) -> bool:
    """Check whether moving from ``current`` to ``target`` is allowed."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_terminal(phase: SessionPhase) -> bool:
    """Check whether no further transitions are possible."""
    return not ALLOWED_TRANSITIONS.get(phase)
