"""Intake protocol repository."""
import re
from typing import Iterable, List, Optional
from app.services.intake.base import (
    IntakeProtocol,
    IntakeProtocolProvider,
    SpecialtyGuidance,
)


class IntakeRepository:
    """Repository for intake protocol operations."""

    def __init__(self, provider: IntakeProtocolProvider):
        self.provider = provider

    async def get_protocol(self) -> IntakeProtocol:
        """Get the full intake protocol."""
        return await self.provider.get_protocol()

    async def get_specialty(self, name: str) -> Optional[SpecialtyGuidance]:
        """Get specialty guidance by name."""
        protocol = await self.get_protocol()
        for specialty in protocol.specialties:
            if specialty.name == name:
                return specialty
        return None

    async def match_specialties(self, text: str) -> List[SpecialtyGuidance]:
        """Find specialties whose trigger words appear in the text."""
        protocol = await self.get_protocol()
        text_lower = text.lower()
        matches = []
        for specialty in protocol.specialties:
            for trigger in specialty.triggers:
                if re.search(rf"\b{re.escape(trigger.lower())}", text_lower):
                    matches.append(specialty)
                    break
        return matches

    async def get_instructions_text(
        self, clinic_name: str, active_specialties: Iterable[str] = ()
    ) -> str:
        """Get the model instructions, with any active specialty guidance appended."""
        protocol = await self.get_protocol()
        lines = [protocol.instructions.strip().replace("{clinic_name}", clinic_name)]

        if protocol.coverage_categories:
            lines.append("\nBefore the call can end you must have asked about:")
            for category in protocol.coverage_categories:
                lines.append(f"  - {category.label}")

        lines.append(
            "\nWhen the caller wants to end the call, briefly summarize what they told you "
            f"and ask: \"{protocol.closing_question}\""
        )

        for name in active_specialties:
            specialty = await self.get_specialty(name)
            if specialty and specialty.instructions:
                lines.append(f"\n{specialty.name.upper()}-SPECIFIC INTAKE GUIDANCE:")
                lines.append(specialty.instructions.strip())
        return "\n".join(lines)
