"""Client for the speech model's realtime WebSocket."""
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import websockets
from pydantic import BaseModel
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

logger = logging.getLogger(__name__)

# Response metadata marking a turn the model was told to say verbatim
SCRIPTED_RESPONSE_SOURCE = "scripted"


class ModelConnectionError(Exception):
    """The outbound model connection could not be established."""


class RealtimeSessionConfig(BaseModel):
    """Session configuration sent to the model."""

    instructions: str
    voice: str = "alloy"
    temperature: float = 0.8
    audio_format: str = "g711_ulaw"
    transcription_model: str = "whisper-1"
    vad_threshold: float = 0.5
    vad_prefix_padding_ms: int = 300
    vad_silence_duration_ms: int = 500

    def to_event(self) -> Dict[str, Any]:
        return {
            "type": "session.update",
            "session": {
                "turn_detection": {
                    "type": "server_vad",
                    "threshold": self.vad_threshold,
                    "prefix_padding_ms": self.vad_prefix_padding_ms,
                    "silence_duration_ms": self.vad_silence_duration_ms,
                },
                "input_audio_format": self.audio_format,
                "output_audio_format": self.audio_format,
                "input_audio_transcription": {"model": self.transcription_model},
                "voice": self.voice,
                "instructions": self.instructions,
                "modalities": ["text", "audio"],
                "temperature": self.temperature,
            },
        }


class RealtimeClient:
    """One outbound model connection for one call."""

    def __init__(
        self,
        api_key: str,
        url: str,
        model: str,
        connect_timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.url = f"{url}?model={model}"
        self.connect_timeout = connect_timeout
        self._ws = None
        self._open = False
        self.close_error: Optional[BaseException] = None

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self) -> None:
        """Open the connection; raises ModelConnectionError on failure."""
        try:
            self._ws = await websockets.connect(
                self.url,
                additional_headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "OpenAI-Beta": "realtime=v1",
                },
                open_timeout=self.connect_timeout,
            )
        except Exception as e:
            raise ModelConnectionError(f"{type(e).__name__}: {e}") from e
        self._open = True
        logger.info("[REALTIME] Connected to the speech model")

    async def send(self, event: Dict[str, Any]) -> bool:
        """Send one event. Returns False if the connection is not open."""
        if not self._open or self._ws is None:
            logger.debug(f"[REALTIME] Dropped '{event.get('type')}' - connection not open")
            return False
        try:
            await self._ws.send(json.dumps(event))
        except ConnectionClosed as e:
            self._open = False
            logger.warning(f"[REALTIME] Send failed, connection closed: {e}")
            return False
        return True

    async def configure_session(self, config: RealtimeSessionConfig) -> bool:
        logger.info(f"[REALTIME] Sending session update - Voice: {config.voice}")
        return await self.send(config.to_event())

    async def update_voice(self, voice: str) -> bool:
        return await self.send({"type": "session.update", "session": {"voice": voice}})

    async def append_audio(self, payload: str) -> bool:
        """Forward one base64 audio frame from the caller."""
        return await self.send({"type": "input_audio_buffer.append", "audio": payload})

    async def create_response(
        self,
        instructions: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> bool:
        event: Dict[str, Any] = {"type": "response.create"}
        response: Dict[str, Any] = {}
        if instructions:
            response["instructions"] = instructions
        if metadata:
            response["metadata"] = metadata
        if response:
            event["response"] = response
        return await self.send(event)

    async def cancel_response(self) -> bool:
        return await self.send({"type": "response.cancel"})

    async def speak(self, text: str) -> bool:
        """Have the model say ``text`` verbatim as its next turn."""
        directive = f'Say exactly the following to the caller, word for word, and nothing else: "{text}"'
        created = await self.send({
            "type": "conversation.item.create",
            "item": {
                "type": "message",
                "role": "system",
                "content": [{"type": "input_text", "text": directive}],
            },
        })
        if not created:
            return False
        return await self.create_response(
            instructions=directive, metadata={"source": SCRIPTED_RESPONSE_SOURCE}
        )

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield parsed events until the connection closes."""
        if self._ws is None:
            return
        try:
            async for raw in self._ws:
                try:
                    event = json.loads(raw)
                except (json.JSONDecodeError, TypeError) as e:
                    logger.warning(f"[REALTIME] Dropped malformed event: {e}")
                    continue
                if not isinstance(event, dict):
                    logger.warning("[REALTIME] Dropped non-object event")
                    continue
                yield event
        except ConnectionClosedOK:
            logger.info("[REALTIME] Connection closed")
        except ConnectionClosed as e:
            self.close_error = e
            logger.error(f"[REALTIME] Connection lost: {e}")
        finally:
            self._open = False

    async def close(self) -> None:
        if self._ws is None:
            return
        self._open = False
        try:
            await self._ws.close()
        except Exception as e:
            logger.warning(f"[REALTIME] Error while closing connection: {type(e).__name__}: {e}")
