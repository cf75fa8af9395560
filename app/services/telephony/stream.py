"""Telephony media stream leg."""
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


def parse_frame(message: Any) -> Optional[Dict[str, Any]]:
    """Parse one text frame; malformed frames are logged and dropped."""
    try:
        frame = json.loads(message)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"[TELEPHONY] Dropped malformed frame: {e}")
        return None
    if not isinstance(frame, dict):
        logger.warning(f"[TELEPHONY] Dropped non-object frame: {type(frame).__name__}")
        return None
    return frame


class TelephonyLeg:
    """Wraps the caller's media stream WebSocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    async def frames(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield parsed frames until the caller disconnects."""
        try:
            async for message in self.websocket.iter_text():
                frame = parse_frame(message)
                if frame is not None:
                    yield frame
        except WebSocketDisconnect:
            logger.info("[TELEPHONY] Caller disconnected")
        finally:
            self._open = False

    async def send_json(self, frame: Dict[str, Any]) -> bool:
        if not self._open:
            return False
        try:
            await self.websocket.send_json(frame)
        except (WebSocketDisconnect, RuntimeError) as e:
            self._open = False
            logger.warning(f"[TELEPHONY] Send failed, stream closed: {type(e).__name__}: {e}")
            return False
        return True

    async def send_media(self, stream_sid: str, payload: str) -> bool:
        """Send one base64 audio frame to the caller."""
        return await self.send_json({
            "event": "media",
            "streamSid": stream_sid,
            "media": {"payload": payload},
        })

    async def send_clear(self, stream_sid: str) -> bool:
        """Drop audio queued for playback on the caller's side."""
        return await self.send_json({"event": "clear", "streamSid": stream_sid})

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        try:
            await self.websocket.close()
        except RuntimeError as e:
            logger.debug(f"[TELEPHONY] Stream already closed: {e}")
