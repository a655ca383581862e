"""
Caller side of the relay: the Twilio Media Streams WebSocket.

The handler wraps an accepted FastAPI WebSocket and exposes it as an ordered,
single-pass stream of typed events plus one outbound audio operation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Union

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from src.relay.errors import ParseError, RouteUnavailable
from src.relay.twilio_protocol import (
    TwilioEventType,
    create_media_message,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StreamStarted:
    stream_sid: str
    call_sid: str = ""


@dataclass(frozen=True)
class MediaFrame:
    payload: str


@dataclass(frozen=True)
class StreamStopped:
    pass


@dataclass(frozen=True)
class MalformedMessage:
    error: str


CallerEvent = Union[StreamStarted, MediaFrame, StreamStopped, MalformedMessage]


class CallerChannelHandler:
    """
    Inbound Twilio media connection for one call.

    Ready as soon as the socket is accepted. `close()` is idempotent and safe
    after the remote end hung up.
    """

    def __init__(self, websocket: WebSocket, *, call_id: str = ""):
        self._websocket = websocket
        self._call_id = call_id
        self._closed = False
        self.frames_received = 0
        self.frames_sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def events(self) -> AsyncIterator[CallerEvent]:
        """Yield caller events in receipt order until the socket closes."""
        while not self._closed:
            try:
                message = await self._websocket.receive()
            except WebSocketDisconnect as e:
                logger.info("Caller socket disconnected", call_id=self._call_id, code=e.code)
                break
            except RuntimeError as e:
                # Starlette raises RuntimeError once the socket is no longer connected.
                logger.debug("Caller socket no longer readable", call_id=self._call_id, error=str(e))
                break

            if message.get("type") == "websocket.disconnect":
                logger.info("Caller socket disconnected", call_id=self._call_id, code=message.get("code"))
                break

            # Binary frames are parsed like text; msgspec decodes UTF-8 bytes directly.
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                yield MalformedMessage(error="Frame without text or bytes payload")
                continue

            try:
                event_type, event = parse_twilio_message(raw)
            except ParseError as e:
                yield MalformedMessage(error=str(e))
                continue

            if event_type == TwilioEventType.START:
                yield StreamStarted(stream_sid=event.stream_sid, call_sid=event.call_sid)
            elif event_type == TwilioEventType.MEDIA:
                self.frames_received += 1
                yield MediaFrame(payload=event.payload)
            elif event_type == TwilioEventType.STOP:
                yield StreamStopped()
            # connected / mark / dtmf carry nothing the relay needs.

        self._closed = True

    async def send_audio(self, stream_sid: str, payload: str) -> bool:
        """
        Send one outbound media event addressed to `stream_sid`.

        Raises:
            RouteUnavailable: If `stream_sid` is empty
        """
        if not stream_sid:
            raise RouteUnavailable("Cannot address caller audio without a streamSid")
        if self._closed:
            return False

        try:
            await self._websocket.send_text(create_media_message(stream_sid, payload))
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.warning("Failed to send audio to caller", call_id=self._call_id, error=str(e))
            return False

        self.frames_sent += 1
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if (
            self._websocket.application_state == WebSocketState.DISCONNECTED
            or self._websocket.client_state == WebSocketState.DISCONNECTED
        ):
            return

        try:
            await self._websocket.close()
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug("Caller socket close failed", call_id=self._call_id, error=str(e))
        logger.info("Caller channel closed", call_id=self._call_id)
