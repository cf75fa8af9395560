"""Clinical extraction persistence service."""
import json
from typing import Optional, Dict, Any, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.db.models import ClinicalExtraction


def _field_value_text(value: Any) -> str:
    """Render an extracted value as text for the field_value column."""
    if isinstance(value, str):
        return value.strip()
    return json.dumps(value)


class ExtractionPersistenceService:
    """Service for persisting structured clinical extractions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add_extractions(
        self,
        conversation_id: str,
        fields: Dict[str, Any],
        confidence_score: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[ClinicalExtraction]:
        """Add one extraction row per field."""
        extractions = []
        for field_name, value in fields.items():
            extraction = ClinicalExtraction(
                conversation_id=conversation_id,
                field_name=field_name,
                field_value=_field_value_text(value),
                confidence_score=confidence_score,
                meta=metadata or {},
            )
            extractions.append(extraction)
            self.db.add(extraction)

        await self.db.commit()
        for extraction in extractions:
            await self.db.refresh(extraction)
        return extractions

    async def get_extractions(self, conversation_id: str) -> List[ClinicalExtraction]:
        """Get all extractions for a conversation."""
        result = await self.db.execute(
            select(ClinicalExtraction)
            .where(ClinicalExtraction.conversation_id == conversation_id)
            .order_by(ClinicalExtraction.id)
        )
        return list(result.scalars().all())
