"""Per-call session controller.

Bridges the caller's media stream and the speech model, and runs the intake
dialogue rules (greeting, one question per turn, coverage-gated closing).
"""
import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from app.core.config import Settings, settings as default_settings
from app.services.extraction.dispatcher import ExtractionDispatcher
from app.services.extraction.extractor import ClinicalExtractionService
from app.services.intake.base import IntakeProtocol
from app.services.intake.repository import IntakeRepository
from app.services.persistence.store import ConversationStore
from app.services.realtime.client import (
    SCRIPTED_RESPONSE_SOURCE,
    ModelConnectionError,
    RealtimeClient,
    RealtimeSessionConfig,
)
from app.services.session.closing import ClosingAction, ClosingProtocol
from app.services.session.coverage import CoverageTracker
from app.services.session.phases import SessionPhase, VoiceProfile
from app.services.session.state import (
    Session,
    Speaker,
    normalize_text,
    resolve_conversation_ref,
)
from app.services.session.tasks import BackgroundTasks
from app.services.session.transitions import PRE_INTAKE_PHASES, is_terminal
from app.services.session.turn_enforcer import TurnEnforcer
from app.services.telephony.stream import TelephonyLeg

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


def extract_item_text(item: Dict[str, Any]) -> str:
    """Concatenate every text or transcript fragment of a conversation item."""
    parts = []
    for content in item.get("content") or []:
        if not isinstance(content, dict):
            continue
        fragment = content.get("text") or content.get("transcript")
        if fragment:
            parts.append(fragment)
    return normalize_text(" ".join(parts))


class SessionController:
    """Owns one call from media stream attach to hang-up."""

    def __init__(
        self,
        telephony: TelephonyLeg,
        model: RealtimeClient,
        protocol: IntakeProtocol,
        intake_repository: IntakeRepository,
        store: ConversationStore,
        extractor: ClinicalExtractionService,
        conversation_ref: Optional[str] = None,
        config: Optional[Settings] = None,
    ):
        self.telephony = telephony
        self.model = model
        self.protocol = protocol
        self.intake_repository = intake_repository
        self.store = store
        self.config = config or default_settings

        self.session = Session(
            coverage=CoverageTracker(protocol.coverage_categories),
            conversation_ref=conversation_ref,
        )
        self.tasks = BackgroundTasks(owner=self.session.session_id)
        self.dispatcher = ExtractionDispatcher(
            extractor, store, self.tasks, ref_lookup=self._await_conversation_ref
        )
        self.turn_enforcer = TurnEnforcer()
        self.closing = ClosingProtocol(protocol)

        # Serializes dialogue handlers from the two legs; audio relay bypasses it
        self._lock = asyncio.Lock()
        self._greeting_fallback: Optional[asyncio.Task] = None
        self._hangup: Optional[asyncio.Task] = None
        self._ref_lookup: Optional[asyncio.Task] = None
        self._shutdown_started = False

        self._telephony_handlers: Dict[str, Handler] = {
            "connected": self._on_telephony_connected,
            "start": self._on_stream_start,
            "mark": self._on_telephony_mark,
        }
        self._model_handlers: Dict[str, Handler] = {
            "session.created": self._on_model_session_created,
            "session.updated": self._on_model_session_updated,
            "response.created": self._on_response_created,
            "response.output_item.added": self._on_output_item_added,
            "response.done": self._on_response_done,
            "conversation.item.created": self._on_assistant_item,
            "response.output_item.done": self._on_assistant_item,
            "conversation.item.input_audio_transcription.completed": self._on_caller_transcript,
            "input_audio_buffer.speech_started": self._on_caller_speech_started,
            "error": self._on_model_error,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Relay both legs until either disconnects."""
        logger.info(f"[SESSION] Call session started - Session: {self.session.session_id}")
        telephony_task = asyncio.create_task(self._relay_telephony(), name="telephony_relay")

        try:
            await self.model.connect()
        except ModelConnectionError as e:
            logger.error(
                f"[SESSION] Could not connect to the speech model - Session: {self.session.session_id}, "
                f"Error: {e}"
            )
            await self.shutdown("model connection failed", error=True)
            telephony_task.cancel()
            await asyncio.gather(telephony_task, return_exceptions=True)
            return

        await self._configure_model()
        model_task = asyncio.create_task(self._relay_model(), name="model_relay")

        done, pending = await asyncio.wait(
            {telephony_task, model_task}, return_when=asyncio.FIRST_COMPLETED
        )
        failed = [task for task in done if not task.cancelled() and task.exception() is not None]
        for task in failed:
            exc = task.exception()
            logger.error(
                f"[SESSION] Relay failed - Session: {self.session.session_id}, Task: {task.get_name()}, "
                f"Error: {type(exc).__name__}: {exc}",
                exc_info=exc,
            )

        if failed:
            await self.shutdown("relay failed", error=True)
        elif model_task in done and self.model.close_error is not None:
            await self.shutdown("speech model connection lost", error=True)
        elif model_task in done:
            await self.shutdown("speech model disconnected")
        else:
            await self.shutdown("caller disconnected")

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        # Let persistence and extraction writes finish
        await self.tasks.drain(timeout=self.config.closing_grace_seconds + 5.0)
        logger.info(
            f"[SESSION] Call session finished - Session: {self.session.session_id}, "
            f"Phase: {self.session.phase.value}, Coverage: {self.session.coverage.flags}"
        )

    async def shutdown(self, reason: str, error: bool = False) -> None:
        """Close both legs once. Safe to call repeatedly."""
        if self._shutdown_started:
            return
        self._shutdown_started = True

        session = self.session
        terminal = SessionPhase.ERROR if error else SessionPhase.CLOSED
        if not is_terminal(session.phase):
            session.transition_to(terminal)

        self.tasks.cancel(self._greeting_fallback)
        logger.info(f"[SESSION] Shutting down - Session: {session.session_id}, Reason: {reason}")
        await self.model.close()
        await self.telephony.close()

    async def _relay_telephony(self) -> None:
        async for frame in self.telephony.frames():
            if not await self.handle_telephony_frame(frame):
                break

    async def _relay_model(self) -> None:
        async for event in self.model.events():
            await self.handle_model_event(event)

    async def _dispatch(self, handler: Handler, payload: Dict[str, Any], name: str) -> None:
        async with self._lock:
            try:
                await handler(payload)
            except Exception as e:
                logger.error(
                    f"[SESSION] Error handling '{name}' - Session: {self.session.session_id}, "
                    f"Error: {type(e).__name__}: {str(e)}",
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Telephony leg
    # ------------------------------------------------------------------

    async def handle_telephony_frame(self, frame: Dict[str, Any]) -> bool:
        """Handle one caller-side frame. Returns False when the stream has stopped."""
        event = frame.get("event")
        if event == "media":
            await self._on_telephony_media(frame)
            return True
        if event == "stop":
            logger.info(f"[SESSION] Media stream stopped by telephony - Session: {self.session.session_id}")
            return False

        handler = self._telephony_handlers.get(event)
        if handler is None:
            logger.info(f"[SESSION] Received non-media event: {event}")
            return True
        await self._dispatch(handler, frame, f"telephony:{event}")
        return True

    async def _on_telephony_media(self, frame: Dict[str, Any]) -> None:
        media = frame.get("media")
        payload = media.get("payload") if isinstance(media, dict) else None
        if not payload or not self.model.is_open:
            return
        await self.model.append_audio(payload)

    async def _on_telephony_connected(self, frame: Dict[str, Any]) -> None:
        logger.info(f"[SESSION] Telephony stream connected - Protocol: {frame.get('protocol')}")

    async def _on_telephony_mark(self, frame: Dict[str, Any]) -> None:
        logger.debug(f"[SESSION] Playback mark: {frame.get('mark')}")

    async def _on_stream_start(self, frame: Dict[str, Any]) -> None:
        session = self.session
        start = frame.get("start") or {}
        custom = start.get("customParameters") or {}

        session.stream_sid = start.get("streamSid")
        session.call_sid = start.get("callSid")
        session.conversation_ref = resolve_conversation_ref(
            custom.get("conversation_id"), session.conversation_ref
        )
        if session.conversation_ref is None and session.call_sid and self._ref_lookup is None:
            # Resolved off the lock; writes issued meanwhile wait for it
            self._ref_lookup = self.tasks.spawn(
                self._resolve_conversation(session.call_sid), name="resolve_conversation"
            )

        logger.info(
            f"[SESSION] Incoming stream has started - StreamSid: {session.stream_sid}, "
            f"Conversation: {session.conversation_ref or 'unknown'}"
        )
        session.stream_started = True
        session.transition_to(SessionPhase.STREAM_STARTING)

        if self._greeting_fallback is None:
            self._greeting_fallback = self.tasks.call_later(
                self.config.greeting_fallback_seconds,
                self._on_greeting_fallback,
                name="greeting_fallback",
            )
        await self._maybe_greet()

    async def _resolve_conversation(self, call_sid: str) -> Optional[str]:
        session = self.session
        try:
            ref = await self.store.resolve_conversation(call_sid)
        except Exception as e:
            logger.error(
                f"[SESSION] Could not resolve conversation for CallSid {call_sid} - "
                f"Error: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )
            return None
        if session.conversation_ref is None:
            session.conversation_ref = ref
            logger.info(f"[SESSION] Conversation resolved from CallSid - Conversation: {ref}")
        return session.conversation_ref

    async def _await_conversation_ref(self) -> Optional[str]:
        """Conversation id, waiting for an in-flight CallSid lookup if needed."""
        lookup = self._ref_lookup
        if self.session.conversation_ref is None and lookup is not None:
            await asyncio.wait({lookup})
        return self.session.conversation_ref

    # ------------------------------------------------------------------
    # Model leg
    # ------------------------------------------------------------------

    async def handle_model_event(self, event: Dict[str, Any]) -> None:
        """Handle one model-side event."""
        event_type = event.get("type")
        if event_type == "response.audio.delta":
            await self._on_audio_delta(event)
            return

        handler = self._model_handlers.get(event_type)
        if handler is None:
            logger.debug(f"[SESSION] Ignored model event: {event_type}")
            return
        await self._dispatch(handler, event, f"model:{event_type}")

    async def _on_audio_delta(self, event: Dict[str, Any]) -> None:
        delta = event.get("delta")
        stream_sid = self.session.stream_sid
        if delta and stream_sid:
            await self.telephony.send_media(stream_sid, delta)

    async def _on_model_session_created(self, event: Dict[str, Any]) -> None:
        logger.info("[SESSION] Speech model session created")

    async def _on_model_session_updated(self, event: Dict[str, Any]) -> None:
        logger.info("[SESSION] Speech model session updated")
        self.session.model_configured = True
        await self._maybe_greet()

    async def _on_response_created(self, event: Dict[str, Any]) -> None:
        response = event.get("response") or {}
        metadata = response.get("metadata") or {}
        if response.get("id") and metadata.get("source") == SCRIPTED_RESPONSE_SOURCE:
            self.session.scripted_response_ids.add(response["id"])

    async def _on_output_item_added(self, event: Dict[str, Any]) -> None:
        item_id = (event.get("item") or {}).get("id")
        if item_id and event.get("response_id") in self.session.scripted_response_ids:
            self.session.scripted_item_ids.add(item_id)

    async def _on_response_done(self, event: Dict[str, Any]) -> None:
        if self.session.phase == SessionPhase.GREETED:
            self.session.transition_to(SessionPhase.AWAITING_CONSENT)

    async def _on_caller_speech_started(self, event: Dict[str, Any]) -> None:
        # Barge-in: stop playback of whatever the assistant is saying
        if self.session.stream_sid:
            await self.telephony.send_clear(self.session.stream_sid)

    async def _on_model_error(self, event: Dict[str, Any]) -> None:
        error = event.get("error") or {}
        logger.error(
            f"[SESSION] Speech model error - Type: {error.get('type')}, "
            f"Code: {error.get('code')}, Message: {error.get('message')}"
        )

    async def _on_assistant_item(self, event: Dict[str, Any]) -> None:
        session = self.session
        item = event.get("item") or {}
        if item.get("role") != "assistant":
            return
        item_id = item.get("id")
        if item_id and item_id in session.logged_item_ids:
            return
        text = extract_item_text(item)
        if not text:
            return
        if item_id:
            session.logged_item_ids.add(item_id)

        if item_id in session.scripted_item_ids or event.get("response_id") in session.scripted_response_ids:
            # Already logged when it was sent, whatever the model's wording
            session.settle_echo(text)
            logger.debug(f"[SESSION] Scripted response rendered by model - Item: {item_id}")
            return
        if session.consume_echo(text):
            logger.debug(f"[SESSION] Scripted line echoed by model - Item: {item_id}")
            return

        decision = self.turn_enforcer.enforce(text)
        if not decision.corrected:
            self._record_utterance(Speaker.ASSISTANT, decision.text, {"source": "model", "item_id": item_id})
            return

        # Cancel first so two responses are never in flight
        await self.model.cancel_response()
        await self.model.speak(decision.text)
        session.expect_echo(decision.text)
        self._record_utterance(
            Speaker.ASSISTANT,
            decision.text,
            {"source": "turn_enforcer", "item_id": item_id, "original_text": decision.original_text},
        )

    async def _on_caller_transcript(self, event: Dict[str, Any]) -> None:
        session = self.session
        text = normalize_text(event.get("transcript"))
        if not text or is_terminal(session.phase):
            return

        logger.info(f"[SESSION] Caller said: '{text}' - Session: {session.session_id}")
        previous_question = session.last_assistant_text()
        self._record_utterance(Speaker.CALLER, text, {"item_id": event.get("item_id")})

        await self._enter_intake()
        await self._activate_specialties(text)

        on_complete = None
        defer_closing = self.closing.waits_for_extraction(session, text)
        if defer_closing:
            on_complete = functools.partial(
                self._dispatch, self._on_deferred_closing, {"transcript": text}, "closing:deferred"
            )
        self.dispatcher.dispatch(
            session.conversation_ref,
            text,
            on_fields=self._apply_clinical_fields,
            context=previous_question,
            extra_fields=self._specialty_fields(),
            on_complete=on_complete,
        )
        if not defer_closing:
            await self._run_closing_protocol(text)

    async def _on_deferred_closing(self, payload: Dict[str, Any]) -> None:
        session = self.session
        if session.phase != SessionPhase.INTAKE_ACTIVE or session.pending_close:
            return
        await self._run_closing_protocol(payload["transcript"])

    # ------------------------------------------------------------------
    # Dialogue rules
    # ------------------------------------------------------------------

    async def _maybe_greet(self, fallback: bool = False) -> None:
        """Send the opening line once both legs are ready."""
        session = self.session
        if session.phase != SessionPhase.STREAM_STARTING or not self.model.is_open:
            return
        if not fallback and not (session.model_configured and session.stream_started):
            return
        if not session.transition_to(SessionPhase.GREETED):
            return
        if not fallback:
            self.tasks.cancel(self._greeting_fallback)
        logger.info(
            f"[SESSION] Sending greeting{' (fallback)' if fallback else ''} - Session: {session.session_id}"
        )
        await self._speak(self.protocol.greeting, source="greeting")

    async def _on_greeting_fallback(self) -> None:
        async with self._lock:
            if self.session.phase == SessionPhase.STREAM_STARTING:
                logger.warning(f"[SESSION] Greeting stalled, retrying - Session: {self.session.session_id}")
                await self._maybe_greet(fallback=True)

    async def _enter_intake(self) -> None:
        session = self.session
        if session.phase not in PRE_INTAKE_PHASES:
            return
        session.transition_to(SessionPhase.INTAKE_ACTIVE)
        self.tasks.cancel(self._greeting_fallback)
        session.voice_profile = VoiceProfile.QUESTION
        if self.config.voice_question != self.config.voice_intro:
            await self.model.update_voice(self.config.voice_question)

    async def _run_closing_protocol(self, text: str) -> None:
        session = self.session
        decision = self.closing.evaluate(session, text)

        if decision.action == ClosingAction.FOLLOW_UP:
            await self.model.cancel_response()
            await self._speak(decision.text, source="coverage_follow_up", extra={"missing": decision.missing})

        elif decision.action == ClosingAction.REQUEST_SUMMARY:
            session.request_close()
            session.transition_to(SessionPhase.CLOSE_REQUESTED)
            await self.model.cancel_response()
            self.dispatcher.request_summary(session.get_transcript_text(), self._deliver_summary)

        elif decision.action == ClosingAction.CONFIRM_CLOSE:
            await self._confirm_close()

        elif decision.action == ClosingAction.KEEP_OPEN:
            logger.info(f"[CLOSING] Caller added information, closing still pending - Session: {session.session_id}")

    async def _deliver_summary(self, summary: Optional[str]) -> None:
        async with self._lock:
            session = self.session
            if session.phase != SessionPhase.CLOSE_REQUESTED:
                return
            session.summary = summary or None
            await self._speak(self.closing.summary_text(summary), source="closing_summary")

    async def _confirm_close(self) -> None:
        session = self.session
        if not session.transition_to(SessionPhase.CLOSED):
            return
        self.tasks.spawn(self._mark_completed(session.summary), name="mark_completed")

        await self.model.cancel_response()
        await self._speak(self.closing.farewell_text(), source="farewell")
        # Trailing audio plays out before the legs close
        self._hangup = self.tasks.call_later(
            self.config.closing_grace_seconds,
            self._hang_up,
            name="hangup",
        )

    async def _mark_completed(self, summary: Optional[str]) -> None:
        ref = await self._await_conversation_ref()
        if not ref:
            logger.warning("[CLOSING] No conversation id - completion not persisted")
            return
        await self.store.mark_completed(ref, summary)

    async def _hang_up(self) -> None:
        await self.shutdown("intake completed")

    async def _configure_model(self) -> None:
        # Reconfiguring mid-call must keep the voice the caller is hearing
        if self.session.voice_profile == VoiceProfile.QUESTION:
            voice = self.config.voice_question
        else:
            voice = self.config.voice_intro
        instructions = await self.intake_repository.get_instructions_text(
            self.config.clinic_name, self.session.active_specialties
        )
        await self.model.configure_session(
            RealtimeSessionConfig(
                instructions=instructions,
                voice=voice,
                temperature=self.config.temperature,
                vad_threshold=self.config.vad_threshold,
                vad_prefix_padding_ms=self.config.vad_prefix_padding_ms,
                vad_silence_duration_ms=self.config.vad_silence_duration_ms,
            )
        )

    async def _activate_specialties(self, text: str) -> None:
        session = self.session
        matches = await self.intake_repository.match_specialties(text)
        new = [s.name for s in matches if s.name not in session.active_specialties]
        if not new:
            return
        session.active_specialties.extend(new)
        logger.info(f"[SESSION] Specialty guidance activated: {new} - Session: {session.session_id}")
        await self._configure_model()

    def _specialty_fields(self) -> list:
        fields = []
        for specialty in self.protocol.specialties:
            if specialty.name in self.session.active_specialties:
                fields.extend(specialty.fields)
        return fields

    def _apply_clinical_fields(self, fields: Dict[str, Any]) -> None:
        session = self.session
        session.merge_clinical_data(fields)
        newly_covered = session.coverage.record(fields)
        if newly_covered:
            logger.info(
                f"[SESSION] Coverage updated: {newly_covered} - Missing: {session.coverage.missing_labels()}"
            )

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    async def _speak(self, text: str, source: str, extra: Optional[Dict[str, Any]] = None) -> None:
        """Speak scripted text and log it once."""
        await self.model.speak(text)
        self.session.expect_echo(text)
        self._record_utterance(Speaker.ASSISTANT, text, {"source": source, **(extra or {})})

    def _record_utterance(self, speaker: Speaker, text: str, metadata: Dict[str, Any]) -> None:
        session = self.session
        session.add_utterance(speaker, text)
        if not session.conversation_ref and self._ref_lookup is None:
            logger.warning(f"[SESSION] No conversation id - {speaker.value} message not persisted")
            return
        self.tasks.spawn(
            self._append_message(speaker, text, {"phase": session.phase.value, **metadata}),
            name=f"append_{speaker.value}_message",
        )

    async def _append_message(self, speaker: Speaker, text: str, metadata: Dict[str, Any]) -> None:
        ref = await self._await_conversation_ref()
        if not ref:
            logger.warning(f"[SESSION] No conversation id - {speaker.value} message not persisted")
            return
        await self.store.append_message(ref, speaker.value, text, metadata)
