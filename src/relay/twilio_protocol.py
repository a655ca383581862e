"""
Wire codec for the Twilio Media Streams WebSocket.

Inbound events (JSON objects keyed by "event"):
- connected: Socket handshake finished, no stream yet
- start: Stream metadata, carries the streamSid used to address outbound audio
- media: One inbound audio chunk (base64 mu-law 8kHz)
- mark / dtmf: Playback markers and keypad tones
- stop: Twilio is ending the stream

Outbound:
- media: Audio for the caller, addressed by streamSid

Payloads stay as the base64 text Twilio sends; nothing here touches audio bytes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Tuple

import msgspec
import structlog

from src.relay.errors import ParseError

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


def _section(message: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = message.get(key) or {}
    if not isinstance(value, dict):
        raise ParseError(f"'{key}' is not an object")
    return value


@dataclass
class TwilioStartEvent:
    stream_sid: str
    call_sid: str = ""
    account_sid: str = ""
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        start = _section(message, "start")
        # Twilio sends streamSid both inside `start` and at the top level.
        stream_sid = start.get("streamSid") or message.get("streamSid")
        if not isinstance(stream_sid, str) or not stream_sid:
            raise ParseError("Start event without streamSid")
        return cls(
            stream_sid=stream_sid,
            call_sid=start.get("callSid") or "",
            account_sid=start.get("accountSid") or "",
            custom_parameters=start.get("customParameters") or {},
        )


@dataclass
class TwilioMediaEvent:
    stream_sid: str
    payload: str
    track: str = "inbound"

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        media = _section(message, "media")
        payload = media.get("payload")
        if not isinstance(payload, str) or not payload:
            raise ParseError("Media event without payload")
        return cls(
            stream_sid=message.get("streamSid") or "",
            payload=payload,
            track=media.get("track") or "inbound",
        )


@dataclass
class TwilioStopEvent:
    stream_sid: str
    call_sid: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStopEvent":
        stop = message.get("stop")
        call_sid = stop.get("callSid", "") if isinstance(stop, dict) else ""
        return cls(stream_sid=message.get("streamSid") or "", call_sid=call_sid)


_PARSERS: Dict[TwilioEventType, Callable[[Dict[str, Any]], Any]] = {
    TwilioEventType.START: TwilioStartEvent.from_message,
    TwilioEventType.MEDIA: TwilioMediaEvent.from_message,
    TwilioEventType.STOP: TwilioStopEvent.from_message,
}


def parse_twilio_message(raw_message: str | bytes) -> Tuple[TwilioEventType, Any]:
    """
    Decode one Twilio WebSocket frame.

    Returns:
        (event_type, event). start/media/stop are parsed into their dataclass;
        the remaining event types come back as the decoded dict.

    Raises:
        ParseError: Invalid JSON, a non-object, an unknown event, or a
            start/media event missing its required field
    """
    if isinstance(raw_message, str):
        raw_message = raw_message.encode("utf-8")
    try:
        message = decoder.decode(raw_message)
    except msgspec.DecodeError as e:
        raise ParseError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise ParseError("Message is not a JSON object")

    name = message.get("event", "")
    try:
        event_type = TwilioEventType(name)
    except ValueError:
        raise ParseError(f"Unknown event type: {name}") from None

    parser = _PARSERS.get(event_type)
    return event_type, (parser(message) if parser else message)


def create_media_message(stream_sid: str, payload: str) -> str:
    """Outbound media frame for `stream_sid`; `payload` is base64 mu-law sent as-is."""
    message = {"event": "media", "streamSid": stream_sid, "media": {"payload": payload}}
    return encoder.encode(message).decode("utf-8")
