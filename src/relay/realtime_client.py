"""
OpenAI Realtime (speech-to-speech) channel for one call.

Connects, configures the session for Twilio's g711_ulaw 8kHz audio, and turns
the service's event vocabulary into the few events the relay cares about:

- AudioDelta: assistant audio for the caller
- TranscriptDelta: a fragment of the conversation transcript
- ExtractedFields: structured fields pulled out of the conversation
- OtherEvent: anything else (ignored by the relay)
- ChannelClosed: terminal, emitted once when the socket ends

The audio delta event has been spelled differently across API revisions
(`response.audio.delta` vs `response.output_audio.delta`, payload under
`delta` or `audio`). Both shapes normalize to AudioDelta.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Optional, Union

import msgspec
import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from src.relay.config import Config, get_config
from src.relay.errors import ChannelNotReady, ConnectError, ParseError
from src.relay.sessions import Speaker

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

AUDIO_FORMAT = "g711_ulaw"

# Tried in order; the first present, non-empty string wins.
AUDIO_DELTA_TYPES = ("response.output_audio.delta", "response.audio.delta")
AUDIO_PAYLOAD_KEYS = ("delta", "audio")

AGENT_TRANSCRIPT_TYPES = ("response.output_audio_transcript.delta", "response.audio_transcript.delta")
CALLER_TRANSCRIPT_TYPES = ("conversation.item.input_audio_transcription.completed",)

CALLER_SPEAKER_NAMES = frozenset({"caller", "user", "customer"})


@dataclass(frozen=True)
class AudioDelta:
    payload: str


@dataclass(frozen=True)
class TranscriptDelta:
    speaker: Speaker
    text: str


@dataclass(frozen=True)
class ExtractedFields:
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OtherEvent:
    type: str


@dataclass(frozen=True)
class ChannelClosed:
    code: Optional[int] = None
    reason: str = ""


RealtimeEvent = Union[AudioDelta, TranscriptDelta, ExtractedFields, OtherEvent, ChannelClosed]


def _speaker_from(value: Any) -> Speaker:
    if isinstance(value, str) and value.strip().lower() in CALLER_SPEAKER_NAMES:
        return Speaker.CALLER
    return Speaker.AGENT


def _decode_audio(event: Dict[str, Any]) -> AudioDelta:
    for key in AUDIO_PAYLOAD_KEYS:
        payload = event.get(key)
        if isinstance(payload, str) and payload:
            return AudioDelta(payload=payload)
    raise ParseError(f"{event.get('type')} without audio payload")


def decode_realtime_event(raw: Union[str, bytes]) -> RealtimeEvent:
    """
    Decode one inbound Realtime message.

    Raises:
        ParseError: If the message is not JSON or a known event is malformed
    """
    try:
        event = decoder.decode(raw.encode("utf-8") if isinstance(raw, str) else raw)
    except msgspec.DecodeError as e:
        raise ParseError(f"Invalid JSON: {e}") from e

    if not isinstance(event, dict):
        raise ParseError("Event is not a JSON object")

    event_type = event.get("type")
    if not isinstance(event_type, str):
        raise ParseError("Event without type")

    if event_type in AUDIO_DELTA_TYPES:
        return _decode_audio(event)

    if event_type == "transcript.delta":
        text = event.get("text")
        if not isinstance(text, str) or not text:
            raise ParseError("transcript.delta without text")
        return TranscriptDelta(speaker=_speaker_from(event.get("from")), text=text)

    if event_type in AGENT_TRANSCRIPT_TYPES:
        text = event.get("delta")
        if not isinstance(text, str) or not text:
            return OtherEvent(type=event_type)
        return TranscriptDelta(speaker=Speaker.AGENT, text=text)

    if event_type in CALLER_TRANSCRIPT_TYPES:
        transcript = event.get("transcript")
        text = transcript.strip() if isinstance(transcript, str) else ""
        if not text:
            return OtherEvent(type=event_type)
        return TranscriptDelta(speaker=Speaker.CALLER, text=text)

    if event_type == "extracted.fields":
        fields = event.get("fields")
        if not isinstance(fields, dict):
            raise ParseError("extracted.fields without a fields object")
        return ExtractedFields(fields=fields)

    if event_type == "error":
        logger.error("OpenAI Realtime error", details=event.get("error") or event)

    return OtherEvent(type=event_type)


class AIChannelClient:
    """
    One outbound OpenAI Realtime connection.

    Lifecycle: created -> connected (after `session.update` was sent) -> closed.
    No reconnection; a dropped socket ends the call.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        connector: Callable[..., Any] = websockets.connect,
        call_id: str = "",
    ):
        self.config = config or get_config()
        self._connector = connector
        self._call_id = call_id
        self._ws: Optional[Any] = None
        self._ready: bool = False
        self._closed: bool = False

    @property
    def ready(self) -> bool:
        return self._ready and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def _session_config(self, instructions: str) -> Dict[str, Any]:
        session: Dict[str, Any] = {
            "modalities": ["audio", "text"],
            "instructions": instructions,
            "voice": self.config.openai_realtime_voice,
            "input_audio_format": AUDIO_FORMAT,
            "output_audio_format": AUDIO_FORMAT,
        }
        transcription_model = self.config.openai_realtime_transcription_model
        if transcription_model:
            session["input_audio_transcription"] = {"model": transcription_model}
        return session

    async def connect(self, instructions: str) -> "AIChannelClient":
        """
        Open the socket and send the one `session.update`.

        Raises:
            ConnectError: If the handshake fails, is rejected, times out, or the
                configuration cannot be sent
        """
        if self._closed:
            raise ConnectError("AI channel already closed")
        if self._ws is not None:
            return self

        url = self.config.realtime_endpoint
        headers = {
            "Authorization": f"Bearer {self.config.openai_api_key}",
            "OpenAI-Beta": "realtime=v1",
        }

        try:
            ws = await self._connector(
                url,
                additional_headers=headers,
                open_timeout=self.config.ai_connect_timeout_seconds,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise ConnectError(f"OpenAI Realtime connect failed: {e}") from e

        self._ws = ws
        if self._closed:
            # close() was called while the handshake was in flight.
            self._closed = False
            await self.close()
            raise ConnectError("AI channel closed during handshake")

        try:
            await self._send({"type": "session.update", "session": self._session_config(instructions)})
        except (OSError, WebSocketException, ChannelNotReady) as e:
            await self.close()
            raise ConnectError(f"OpenAI Realtime session.update failed: {e}") from e

        self._ready = True
        logger.info(
            "OpenAI Realtime connected",
            call_id=self._call_id,
            model=self.config.openai_realtime_model,
            voice=self.config.openai_realtime_voice,
            transcription_model=self.config.openai_realtime_transcription_model or None,
        )
        return self

    async def _send(self, message: Dict[str, Any]) -> None:
        if self._ws is None or self._closed:
            raise ChannelNotReady(f"Cannot send {message.get('type')}: AI channel not connected")
        await self._ws.send(encoder.encode(message).decode("utf-8"))

    async def send_audio(self, payload: str) -> bool:
        """
        Forward one caller audio frame. Never raises.

        Returns:
            False if the channel is not ready or the send failed
        """
        if not payload or not self.ready:
            return False
        try:
            await self._send({"type": "input_audio_buffer.append", "audio": payload})
        except (ChannelNotReady, ConnectionClosed) as e:
            logger.debug("Dropping caller audio", call_id=self._call_id, error=str(e))
            return False
        except (OSError, WebSocketException) as e:
            logger.warning("OpenAI audio send failed", call_id=self._call_id, error=str(e))
            return False
        return True

    async def request_response(self, instructions: Optional[str] = None) -> None:
        response: Dict[str, Any] = {"modalities": ["audio", "text"]}
        if instructions:
            response["instructions"] = instructions
        await self._send({"type": "response.create", "response": response})

    async def commit_input(self) -> None:
        await self._send({"type": "input_audio_buffer.commit"})

    async def events(self) -> AsyncIterator[RealtimeEvent]:
        """Yield decoded events in receipt order, then one ChannelClosed."""
        ws = self._ws
        if ws is None:
            yield ChannelClosed(reason="not connected")
            return

        code: Optional[int] = None
        reason = ""
        try:
            async for raw in ws:
                try:
                    yield decode_realtime_event(raw)
                except ParseError as e:
                    logger.warning("Skipping malformed OpenAI event", call_id=self._call_id, error=str(e))
        except ConnectionClosed as e:
            rcvd = e.rcvd
            code = rcvd.code if rcvd else None
            reason = rcvd.reason if rcvd else ""
            logger.warning("OpenAI Realtime connection dropped", call_id=self._call_id, code=code, reason=reason)

        self._ready = False
        self._closed = True
        logger.info("OpenAI Realtime channel closed", call_id=self._call_id, code=code)
        yield ChannelClosed(code=code, reason=reason)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._ready = False
        if self._ws is not None:
            try:
                await self._ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug("OpenAI socket close failed", call_id=self._call_id, error=str(e))
