"""Fire-and-forget dispatch of extraction and summarization work."""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from app.services.extraction.extractor import ClinicalExtractionService
from app.services.persistence.store import ConversationStore
from app.services.session.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

FieldsCallback = Callable[[Dict[str, Any]], None]
CompletionCallback = Callable[[], Awaitable[None]]
SummaryCallback = Callable[[Optional[str]], Awaitable[None]]
RefLookup = Callable[[], Awaitable[Optional[str]]]


class ExtractionDispatcher:
    """Runs extraction and summarization off the audio relay path."""

    def __init__(
        self,
        extractor: ClinicalExtractionService,
        store: ConversationStore,
        tasks: BackgroundTasks,
        ref_lookup: Optional[RefLookup] = None,
    ):
        self.extractor = extractor
        self.store = store
        self.tasks = tasks
        # Waits for a conversation id that was still being resolved at dispatch time
        self.ref_lookup = ref_lookup

    def dispatch(
        self,
        conversation_ref: Optional[str],
        text: str,
        on_fields: FieldsCallback,
        context: Optional[str] = None,
        extra_fields: Iterable[str] = (),
        on_complete: Optional[CompletionCallback] = None,
    ) -> asyncio.Task:
        """Extract fields from a caller utterance in the background.

        ``on_complete`` runs once the fields have been applied, or once
        extraction has failed, before anything is persisted.
        """
        exchange = f"Assistant: {context}\nPatient: {text}" if context else f"Patient: {text}"
        return self.tasks.spawn(
            self._extract(conversation_ref, exchange, on_fields, tuple(extra_fields), on_complete),
            name="extract_fields",
        )

    async def _extract(
        self,
        conversation_ref: Optional[str],
        exchange: str,
        on_fields: FieldsCallback,
        extra_fields: tuple,
        on_complete: Optional[CompletionCallback] = None,
    ) -> None:
        fields: Dict[str, Any] = {}
        try:
            fields = await self.extractor.extract_fields(exchange, extra_fields)
        except Exception as e:
            logger.error(
                f"[EXTRACTION] Extraction failed - Conversation: {conversation_ref}, "
                f"Error: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )

        if fields:
            on_fields(fields)
        if on_complete is not None:
            await on_complete()
        if not fields:
            return

        if not conversation_ref and self.ref_lookup is not None:
            conversation_ref = await self.ref_lookup()
        if not conversation_ref:
            logger.warning("[EXTRACTION] No conversation id yet - clinical fields not persisted")
            return
        try:
            await self.store.merge_clinical_fields(conversation_ref, fields)
        except Exception as e:
            logger.error(
                f"[EXTRACTION] Failed to persist clinical fields - Conversation: {conversation_ref}, "
                f"Error: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )

    def request_summary(self, transcript: str, on_summary: SummaryCallback) -> asyncio.Task:
        """Summarize the transcript in the background and hand the result back."""
        return self.tasks.spawn(self._summarize(transcript, on_summary), name="summarize")

    async def _summarize(self, transcript: str, on_summary: SummaryCallback) -> None:
        summary: Optional[str] = None
        try:
            summary = await self.extractor.summarize(transcript)
        except Exception as e:
            logger.error(
                f"[EXTRACTION] Summarization failed - Error: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )
        await on_summary(summary)
