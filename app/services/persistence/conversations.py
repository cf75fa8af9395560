"""Conversation persistence service."""
from datetime import datetime
from typing import Optional, Dict, Any, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.db.models import Conversation, Message


class ConversationPersistenceService:
    """Service for persisting conversation data."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_conversation(
        self, call_sid: str, phone_number: Optional[str] = None
    ) -> Conversation:
        """Create a new conversation record or return existing one."""
        # Check if conversation already exists for this call
        existing = await self.get_conversation_by_call_sid(call_sid)
        if existing:
            return existing

        conversation = Conversation(
            call_sid=call_sid,
            phone_number=phone_number,
            status="active",
            clinical_data={},
            meta={},
        )
        self.db.add(conversation)
        await self.db.commit()
        await self.db.refresh(conversation)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Get conversation by ID."""
        result = await self.db.execute(
            select(Conversation).where(Conversation.id == conversation_id)
        )
        return result.scalar_one_or_none()

    async def get_conversation_by_call_sid(self, call_sid: str) -> Optional[Conversation]:
        """Get conversation by Twilio call SID."""
        result = await self.db.execute(
            select(Conversation).where(Conversation.call_sid == call_sid)
        )
        return result.scalar_one_or_none()

    async def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        """Append a message to a conversation."""
        message = Message(
            conversation_id=conversation_id,
            role=role,
            content=content,
            meta=metadata or {},
        )
        self.db.add(message)
        await self.db.commit()
        await self.db.refresh(message)
        return message

    async def get_messages(self, conversation_id: str) -> List[Message]:
        """Get all messages for a conversation in chronological order."""
        result = await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.timestamp, Message.id)
        )
        return list(result.scalars().all())

    async def merge_clinical_data(
        self, conversation_id: str, fields: Dict[str, Any]
    ) -> Optional[Conversation]:
        """Merge extracted fields into the conversation's clinical data."""
        conversation = await self.get_conversation(conversation_id)
        if conversation:
            # Reassign so the JSON column is flagged dirty
            conversation.clinical_data = {**(conversation.clinical_data or {}), **fields}
            conversation.updated_at = datetime.utcnow()
            await self.db.commit()
            await self.db.refresh(conversation)
        return conversation

    async def end_conversation(
        self,
        conversation_id: str,
        status: str = "completed",
        summary: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[Conversation]:
        """Mark a conversation as ended."""
        conversation = await self.get_conversation(conversation_id)
        if conversation:
            conversation.status = status
            conversation.ended_at = ended_at or datetime.utcnow()
            if summary:
                conversation.summary = summary
            await self.db.commit()
            await self.db.refresh(conversation)
        return conversation
