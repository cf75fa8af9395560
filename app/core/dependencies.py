"""FastAPI dependencies."""
from functools import lru_cache

from app.core.config import settings
from app.db.database import AsyncSessionLocal
from app.services.extraction.extractor import ClinicalExtractionService
from app.services.intake.repository import IntakeRepository
from app.services.intake.yaml_protocol import YamlIntakeProtocolProvider
from app.services.persistence.store import ConversationStore
from app.services.realtime.client import RealtimeClient


@lru_cache
def get_intake_repository() -> IntakeRepository:
    """Get intake protocol repository instance."""
    return IntakeRepository(provider=YamlIntakeProtocolProvider(settings.intake_protocol_file))


def get_conversation_store() -> ConversationStore:
    """Get conversation store bound to the application's session factory."""
    return ConversationStore(session_factory=AsyncSessionLocal)


@lru_cache
def get_extraction_service() -> ClinicalExtractionService:
    """Get clinical extraction service instance."""
    return ClinicalExtractionService()


def get_realtime_client() -> RealtimeClient:
    """Get a new speech model client (one per call)."""
    return RealtimeClient(
        api_key=settings.openai_api_key,
        url=settings.openai_realtime_url,
        model=settings.openai_realtime_model,
        connect_timeout=settings.model_connect_timeout_seconds,
    )
