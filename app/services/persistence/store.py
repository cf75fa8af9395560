"""Conversation store used by live call sessions.

Each operation opens its own database session so that concurrent
fire-and-forget writes from one call never share an ``AsyncSession``.
"""
import logging
from typing import Optional, Dict, Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.services.persistence.conversations import ConversationPersistenceService
from app.services.persistence.extractions import ExtractionPersistenceService

logger = logging.getLogger(__name__)

# Speaker name -> messages.role
SPEAKER_ROLES = {
    "caller": "user",
    "assistant": "assistant",
    "system": "system",
}


class ConversationStore:
    """Persistence collaborator for the session controller."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def resolve_conversation(
        self, call_sid: str, phone_number: Optional[str] = None
    ) -> str:
        """Return the conversation id for a call, creating the row if needed."""
        async with self.session_factory() as db:
            conversation = await ConversationPersistenceService(db).create_conversation(
                call_sid, phone_number
            )
            return conversation.id

    async def append_message(
        self,
        conversation_ref: str,
        speaker: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append one utterance to the conversation's message log."""
        role = SPEAKER_ROLES.get(str(speaker), "system")
        async with self.session_factory() as db:
            await ConversationPersistenceService(db).add_message(
                conversation_ref, role, text, metadata
            )
        logger.debug(f"[STORE] Message saved - Conversation: {conversation_ref}, Role: {role}")

    async def merge_clinical_fields(
        self, conversation_ref: str, fields: Dict[str, Any]
    ) -> None:
        """Merge extracted clinical fields and record one extraction row per field."""
        if not fields:
            return
        async with self.session_factory() as db:
            conversation = await ConversationPersistenceService(db).merge_clinical_data(
                conversation_ref, fields
            )
            if conversation is None:
                logger.warning(
                    f"[STORE] Clinical data for unknown conversation {conversation_ref} - skipped"
                )
                return
            await ExtractionPersistenceService(db).add_extractions(
                conversation_ref, fields, metadata={"source": "live_call"}
            )
        logger.info(
            f"[STORE] Clinical fields merged - Conversation: {conversation_ref}, "
            f"Fields: {sorted(fields)}"
        )

    async def mark_completed(
        self, conversation_ref: str, summary: Optional[str] = None
    ) -> None:
        """Mark the conversation as completed."""
        async with self.session_factory() as db:
            await ConversationPersistenceService(db).end_conversation(
                conversation_ref, status="completed", summary=summary
            )
        logger.info(f"[STORE] Conversation marked completed - Conversation: {conversation_ref}")
