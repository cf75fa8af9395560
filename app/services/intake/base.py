"""Intake protocol provider interface."""
from abc import ABC, abstractmethod
from typing import List
from pydantic import BaseModel


class CoverageCategory(BaseModel):
    """A mandatory clinical topic the intake must cover before closing."""

    name: str
    label: str
    prompt: str  # Phrase used when asking about the topic, e.g. "any allergies you have"
    fields: List[str] = []  # Extraction keys that count as covering this topic


class SpecialtyGuidance(BaseModel):
    """Condition-specific guidance activated by caller keywords."""

    name: str
    triggers: List[str] = []
    instructions: str = ""
    fields: List[str] = []  # Extra extraction keys for this condition


class IntakeProtocol(BaseModel):
    """Scripted lines and rules for a clinical intake call."""

    instructions: str
    greeting: str
    closing_question: str = "Is there anything else you'd like to share before we end the call?"
    farewell: str = "Thank you for your time. Take care, goodbye."
    summary_fallback: str = "Thank you for sharing all of that with me."
    coverage_categories: List[CoverageCategory] = []
    specialties: List[SpecialtyGuidance] = []


class IntakeProtocolProvider(ABC):
    """Abstract base class for intake protocol providers."""

    @abstractmethod
    async def get_protocol(self) -> IntakeProtocol:
        """Get the full intake protocol."""
        pass
