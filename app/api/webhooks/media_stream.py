"""Twilio media stream WebSocket endpoint."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket

from app.core.dependencies import (
    get_conversation_store,
    get_extraction_service,
    get_intake_repository,
    get_realtime_client,
)
from app.services.extraction.extractor import ClinicalExtractionService
from app.services.intake.repository import IntakeRepository
from app.services.persistence.store import ConversationStore
from app.services.realtime.client import RealtimeClient
from app.services.session.controller import SessionController
from app.services.telephony.stream import TelephonyLeg

router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket("/media-stream")
async def handle_media_stream(
    websocket: WebSocket,
    conversation_id: Optional[str] = Query(None),
    intake_repository: IntakeRepository = Depends(get_intake_repository),
    store: ConversationStore = Depends(get_conversation_store),
    extractor: ClinicalExtractionService = Depends(get_extraction_service),
    model: RealtimeClient = Depends(get_realtime_client),
):
    """
    Bridge one call's media stream to the speech model.

    Twilio opens this socket after the incoming-call webhook returns
    <Connect><Stream>.
    """
    await websocket.accept()
    logger.info(
        f"[MEDIA STREAM] Client connected - Query conversation_id: {conversation_id}, "
        f"Client: {websocket.client.host if websocket.client else 'unknown'}"
    )

    protocol = await intake_repository.get_protocol()
    controller = SessionController(
        telephony=TelephonyLeg(websocket),
        model=model,
        protocol=protocol,
        intake_repository=intake_repository,
        store=store,
        extractor=extractor,
        conversation_ref=conversation_id,
    )
    try:
        await controller.run()
    except Exception as e:
        logger.error(
            f"[MEDIA STREAM] Session ended with error - Session: {controller.session.session_id}, "
            f"Error: {type(e).__name__}: {str(e)}",
            exc_info=True,
        )
        await controller.shutdown("unexpected error", error=True)
    logger.info(f"[MEDIA STREAM] Client disconnected - Session: {controller.session.session_id}")
