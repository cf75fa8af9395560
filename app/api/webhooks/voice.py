"""Twilio voice webhook endpoints."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Request, Form, Depends
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import get_db
from app.core.config import settings
from app.services.persistence.conversations import ConversationPersistenceService
from app.services.telephony.twiml import build_stream_url, generate_connect_stream_twiml

router = APIRouter()
logger = logging.getLogger(__name__)

CONNECT_MESSAGE = "Please wait while we connect your call to the clinical assistant."

# Twilio CallStatus values that end a call
TERMINAL_CALL_STATUSES = ["completed", "failed", "busy", "no-answer", "canceled"]


def get_base_url(request: Request) -> str:
    """
    Get the base URL for constructing absolute URLs.

    Uses BASE_URL environment variable if set, otherwise constructs from
    the request's Host header.
    """
    if settings.base_url:
        return settings.base_url.rstrip('/')
    host = request.headers.get("host")
    if host:
        return f"https://{host}"
    return str(request.base_url).rstrip('/')


def final_status_for(call_status: str) -> str:
    """Conversation status for a call that ended before intake was completed."""
    if call_status == "completed":
        return "incomplete"
    return "failed"


@router.post("/voice/incoming")
async def handle_incoming_call(
    request: Request,
    CallSid: str = Form(...),
    From: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Handle incoming call from Twilio.

    Creates the conversation record and connects the call to the media stream.
    """
    logger.info(
        f"[INCOMING CALL] Received incoming call webhook - CallSid: {CallSid}, "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )

    conversation_id = None
    try:
        conversation = await ConversationPersistenceService(db).create_conversation(CallSid, From)
        conversation_id = conversation.id
        logger.info(f"[INCOMING CALL] Created conversation: {conversation_id} - CallSid: {CallSid}")
    except Exception as e:
        # The stream resolves the conversation from the CallSid later
        logger.error(
            f"[INCOMING CALL] Error creating conversation - CallSid: {CallSid}, "
            f"Error: {type(e).__name__}: {str(e)}",
            exc_info=True
        )

    stream_url = build_stream_url(get_base_url(request), "/media-stream", conversation_id)
    twiml = generate_connect_stream_twiml(
        stream_url,
        parameters={"conversation_id": conversation_id},
        intro_text=CONNECT_MESSAGE,
    )
    logger.info(
        f"[INCOMING CALL] Connecting stream - CallSid: {CallSid}, URL: {stream_url}"
    )
    return Response(content=twiml, media_type="application/xml")


@router.post("/voice/status")
async def handle_call_status(
    request: Request,
    CallSid: str = Form(...),
    CallStatus: str = Form(...),
    db: AsyncSession = Depends(get_db),
):
    """
    Handle call status updates from Twilio.

    Conversations still active when the call ends are closed as incomplete
    or failed; completed intakes keep their status.
    """
    logger.info(
        f"[CALL STATUS] Received status update - CallSid: {CallSid}, "
        f"CallStatus: {CallStatus}, "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )

    try:
        if CallStatus not in TERMINAL_CALL_STATUSES:
            logger.debug(
                f"[CALL STATUS] Status update received but no action needed - "
                f"CallSid: {CallSid}, CallStatus: {CallStatus}"
            )
            return Response(content="OK", media_type="text/plain")

        service = ConversationPersistenceService(db)
        conversation = await service.get_conversation_by_call_sid(CallSid)
        if not conversation:
            logger.warning(f"[CALL STATUS] No conversation for CallSid: {CallSid}")
        elif conversation.status == "active":
            status = final_status_for(CallStatus)
            await service.end_conversation(conversation.id, status=status, ended_at=datetime.utcnow())
            logger.info(
                f"[CALL STATUS] Conversation closed - CallSid: {CallSid}, Final status: {status}"
            )
        elif conversation.ended_at is None:
            conversation.ended_at = datetime.utcnow()
            await db.commit()

        return Response(content="OK", media_type="text/plain")

    except Exception as e:
        logger.error(
            f"[CALL STATUS] Error handling call status update - CallSid: {CallSid}, "
            f"CallStatus: {CallStatus}, Error: {type(e).__name__}: {str(e)}",
            exc_info=True
        )
        # Still return OK to Twilio to avoid retries
        return Response(content="OK", media_type="text/plain")
