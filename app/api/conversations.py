"""Conversation history API endpoints."""
import logging
from typing import Any, List
from fastapi import APIRouter, Depends, Request, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from sqlalchemy.orm import selectinload

from app.db.database import get_db
from app.db.models import Conversation
from pydantic import BaseModel


router = APIRouter()
logger = logging.getLogger(__name__)


class MessageResponse(BaseModel):
    """Message response model."""
    id: int
    role: str
    content: str
    timestamp: str
    metadata: dict = {}


class ExtractionResponse(BaseModel):
    """Clinical extraction response model."""
    id: int
    field_name: str
    field_value: str
    confidence_score: float | None = None
    extracted_at: str


class ConversationSummaryResponse(BaseModel):
    """Conversation list entry."""
    id: str
    call_sid: str
    phone_number: str | None = None
    status: str
    started_at: str
    ended_at: str | None = None
    summary: str | None = None
    clinical_data: dict[str, Any] = {}


class ConversationDetailResponse(ConversationSummaryResponse):
    """Conversation with its messages and extractions."""
    messages: List[MessageResponse] = []
    extractions: List[ExtractionResponse] = []


def _summary_response(conversation: Conversation) -> dict:
    return dict(
        id=conversation.id,
        call_sid=conversation.call_sid,
        phone_number=conversation.phone_number,
        status=conversation.status,
        started_at=conversation.started_at.isoformat() if conversation.started_at else "",
        ended_at=conversation.ended_at.isoformat() if conversation.ended_at else None,
        summary=conversation.summary,
        clinical_data=conversation.clinical_data or {},
    )


@router.get("/api/conversations", response_model=List[ConversationSummaryResponse])
async def list_conversations(
    request: Request,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
):
    """Get recent conversations, newest first."""
    logger.info(
        f"[CONVERSATIONS] List requested - limit: {limit}, "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )

    try:
        result = await db.execute(
            select(Conversation)
            .order_by(desc(Conversation.started_at))
            .limit(limit)
        )
        conversations = result.scalars().all()
        logger.info(f"[CONVERSATIONS] Found {len(conversations)} conversations in database")
        return [ConversationSummaryResponse(**_summary_response(c)) for c in conversations]

    except Exception as e:
        logger.error(
            f"[CONVERSATIONS] Error fetching conversations - "
            f"limit: {limit}, Error: {type(e).__name__}: {str(e)}",
            exc_info=True
        )
        raise HTTPException(status_code=500, detail=f"Error fetching conversations: {str(e)}")


@router.get("/api/conversations/{conversation_id}", response_model=ConversationDetailResponse)
async def get_conversation(
    conversation_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Get one conversation with its message log and clinical extractions."""
    try:
        result = await db.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .options(
                selectinload(Conversation.messages),
                selectinload(Conversation.extractions),
            )
        )
        conversation = result.scalar_one_or_none()
    except Exception as e:
        logger.error(
            f"[CONVERSATIONS] Error fetching conversation {conversation_id} - "
            f"Error: {type(e).__name__}: {str(e)}",
            exc_info=True
        )
        raise HTTPException(status_code=500, detail=f"Error fetching conversation: {str(e)}")

    if not conversation:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")

    messages = [
        MessageResponse(
            id=message.id,
            role=message.role,
            content=message.content,
            timestamp=message.timestamp.isoformat() if message.timestamp else "",
            metadata=message.meta or {},
        )
        for message in conversation.messages
    ]
    extractions = [
        ExtractionResponse(
            id=extraction.id,
            field_name=extraction.field_name,
            field_value=extraction.field_value,
            confidence_score=float(extraction.confidence_score) if extraction.confidence_score is not None else None,
            extracted_at=extraction.extracted_at.isoformat() if extraction.extracted_at else "",
        )
        for extraction in conversation.extractions
    ]
    return ConversationDetailResponse(
        **_summary_response(conversation),
        messages=messages,
        extractions=extractions,
    )
