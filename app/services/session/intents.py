"""Caller intent cues for the closing sequence.

Matching is a fixed set of case-insensitive regular expressions. The cues are
heuristics: "no" counts as a confirmation wherever it appears.
"""
import re
from typing import List, Pattern

# Caller wants to end the call
GOODBYE_INDICATORS = [
    r"\b(good ?)?bye\b",
    r"\bhang(ing)? up\b",
    r"\bthat'?s all\b",
    r"\bthat'?s everything\b",
    r"\bi'?m done\b",
    r"\bwe'?re done\b",
    r"\bi'?m finished\b",
    r"\b(have|got) to go\b",
    r"\bgotta go\b",
    r"\bend (the|this) call\b",
]

# Caller confirms there is nothing further to add
CONFIRMATION_INDICATORS = [
    r"\bno\b",
    r"\bnope\b",
    r"\bthat'?s (all|it|everything)\b",
    r"\bnothing (else|more)\b",
    r"\bi'?m (good|fine|all set)\b",
    r"\ball set\b",
    r"\bnot really\b",
    r"\b(good ?)?bye\b",
]


def _compile(patterns: List[str]) -> List[Pattern[str]]:
    return [re.compile(pattern, re.IGNORECASE) for pattern in patterns]


_GOODBYE_PATTERNS = _compile(GOODBYE_INDICATORS)
_CONFIRMATION_PATTERNS = _compile(CONFIRMATION_INDICATORS)


def _prepare(text: str) -> str:
    # Transcripts often carry typographic apostrophes
    return text.replace("’", "'").replace("‘", "'").lower()


def is_goodbye(text: str) -> bool:
    """Check whether an utterance signals the caller wants to end the call."""
    prepared = _prepare(text)
    return any(pattern.search(prepared) for pattern in _GOODBYE_PATTERNS)


def is_confirmation(text: str) -> bool:
    """Check whether an utterance confirms nothing further is needed."""
    prepared = _prepare(text)
    return any(pattern.search(prepared) for pattern in _CONFIRMATION_PATTERNS)
