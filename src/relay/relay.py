"""
Per-call duplex relay between Twilio Media Streams and OpenAI Realtime.

    Twilio (g711_ulaw 8kHz) <-> CallRelay <-> OpenAI Realtime

One CallRelay owns both channels for the life of a call:

    CONNECTING -> ACTIVE -> CLOSING -> TERMINATED
         \\__________________________/  (AI connect failed)

- The caller stream is consumed from the start, before the AI channel is
  ready, so an early `start` event (and its streamSid) is never missed.
- Caller audio is forwarded only while ACTIVE; earlier frames are dropped.
- AI audio is forwarded only once the streamSid is known; earlier frames are
  dropped, never buffered.
- Teardown steps are attempted independently; one failing does not skip the rest.
- The session is finalized exactly once, after the caller channel has closed.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from src.relay.caller_channel import (
    CallerChannelHandler,
    MalformedMessage,
    MediaFrame,
    StreamStarted,
    StreamStopped,
)
from src.relay.config import Config, get_config
from src.relay.errors import ConnectError
from src.relay.notifier import SummaryNotifier
from src.relay.prompt_utils import system_instructions
from src.relay.realtime_client import (
    AIChannelClient,
    AudioDelta,
    ChannelClosed,
    ExtractedFields,
    TranscriptDelta,
)
from src.relay.sessions import SessionStore

logger = structlog.get_logger(__name__)


class RelayState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    TERMINATED = "terminated"


async def best_effort(action: str, op: Callable[[], Awaitable[Any]], **context: Any) -> bool:
    """Attempt `op`, log on failure, continue. Never raises."""
    try:
        await op()
    except Exception as e:
        logger.warning("Best-effort step failed", action=action, error=str(e), **context)
        return False
    return True


class CallRelay:
    """
    Relays one call between the caller channel and the AI channel.

    Interface used by `server/app.py`:
    - `run()`: returns once both channels are closed and the session is finalized
    """

    def __init__(
        self,
        call_id: str,
        caller: CallerChannelHandler,
        ai: AIChannelClient,
        *,
        store: SessionStore,
        notifier: SummaryNotifier,
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self.call_id = call_id
        self._caller = caller
        self._ai = ai
        self._store = store
        self._notifier = notifier

        self.session = store.get_or_create(call_id)
        self.session.claimed = True
        self.state: RelayState = RelayState.CONNECTING
        self.stream_sid: Optional[str] = None

        self.connect_failed: bool = False
        self._was_active: bool = False
        self._finalized: bool = False

        self.caller_frames_forwarded = 0
        self.caller_frames_dropped = 0
        self.ai_frames_forwarded = 0
        self.ai_frames_dropped = 0

    async def run(self) -> None:
        logger.info("Relay started", call_id=self.call_id)

        caller_task = asyncio.create_task(self._pump_caller())
        ai_task: Optional[asyncio.Task] = None
        completed = False
        try:
            if await self._connect_ai():
                ai_task = asyncio.create_task(self._pump_ai())
            await caller_task
            if ai_task is not None:
                await ai_task
            completed = True
        except Exception:
            logger.exception("Relay failed", call_id=self.call_id)
            await best_effort("close_ai", self._ai.close, call_id=self.call_id)
            await best_effort("close_caller", self._caller.close, call_id=self.call_id)
            raise
        finally:
            for task in (caller_task, ai_task):
                if task is not None and not task.done():
                    task.cancel()

            # A failed or cancelled relay still releases its session, without a summary.
            await self._finalize(notify=completed)
            self.state = RelayState.TERMINATED
            logger.info(
                "Relay terminated",
                call_id=self.call_id,
                completed=completed,
                stream_sid=self.stream_sid,
                caller_frames_forwarded=self.caller_frames_forwarded,
                caller_frames_dropped=self.caller_frames_dropped,
                ai_frames_forwarded=self.ai_frames_forwarded,
                ai_frames_dropped=self.ai_frames_dropped,
            )

    async def _connect_ai(self) -> bool:
        try:
            await self._ai.connect(system_instructions(self.config))
        except ConnectError as e:
            if self.state != RelayState.CONNECTING:
                logger.info("Caller left before the AI channel was ready", call_id=self.call_id)
                return False
            logger.error("AI channel connect failed; ending call", call_id=self.call_id, error=str(e))
            self.connect_failed = True
            self.state = RelayState.TERMINATED
            await best_effort("close_caller", self._caller.close, call_id=self.call_id)
            return False

        if self.state != RelayState.CONNECTING:
            await best_effort("close_ai", self._ai.close, call_id=self.call_id)
            return False

        self.state = RelayState.ACTIVE
        self._was_active = True
        logger.info("Relay active", call_id=self.call_id, stream_sid=self.stream_sid)

        await best_effort(
            "greeting",
            lambda: self._ai.request_response(self.config.greeting_instructions),
            call_id=self.call_id,
        )
        return True

    async def _pump_caller(self) -> None:
        async for event in self._caller.events():
            if isinstance(event, MediaFrame):
                await self._on_caller_media(event)
            elif isinstance(event, StreamStarted):
                self._on_stream_started(event)
            elif isinstance(event, StreamStopped):
                logger.info("Caller stream stopped", call_id=self.call_id, stream_sid=self.stream_sid)
                await self._shutdown("caller_stopped")
            elif isinstance(event, MalformedMessage):
                logger.warning("Skipping malformed caller message", call_id=self.call_id, error=event.error)

        await self._shutdown("caller_closed")

    def _on_stream_started(self, event: StreamStarted) -> None:
        if self.stream_sid and self.stream_sid != event.stream_sid:
            logger.warning(
                "Stream route replaced",
                call_id=self.call_id,
                old_stream_sid=self.stream_sid,
                stream_sid=event.stream_sid,
            )
        self.stream_sid = event.stream_sid
        logger.info(
            "Caller stream started",
            call_id=self.call_id,
            stream_sid=event.stream_sid,
            twilio_call_sid=event.call_sid or None,
            state=self.state.value,
        )

    async def _on_caller_media(self, event: MediaFrame) -> None:
        if self.state == RelayState.ACTIVE and await self._ai.send_audio(event.payload):
            self.caller_frames_forwarded += 1
            return
        self.caller_frames_dropped += 1
        if self.caller_frames_dropped == 1:
            logger.debug("Dropping caller audio, AI channel not active", call_id=self.call_id, state=self.state.value)

    async def _pump_ai(self) -> None:
        async for event in self._ai.events():
            if isinstance(event, AudioDelta):
                await self._on_ai_audio(event)
            elif isinstance(event, TranscriptDelta):
                self.session.append_transcript(event.speaker, event.text)
            elif isinstance(event, ExtractedFields):
                self.session.merge_fields(event.fields)
                logger.info("Fields extracted", call_id=self.call_id, keys=sorted(event.fields))
            elif isinstance(event, ChannelClosed):
                break

        if not self._caller.closed:
            logger.info("AI channel ended the call", call_id=self.call_id)
        if self.state == RelayState.ACTIVE:
            self.state = RelayState.CLOSING
        await best_effort("close_caller", self._caller.close, call_id=self.call_id)

    async def _on_ai_audio(self, event: AudioDelta) -> None:
        if not self.stream_sid:
            self.ai_frames_dropped += 1
            if self.ai_frames_dropped == 1:
                logger.warning("AI audio before stream start; dropping", call_id=self.call_id)
            return
        if await self._caller.send_audio(self.stream_sid, event.payload):
            self.ai_frames_forwarded += 1

    async def _shutdown(self, reason: str) -> None:
        if self.state in (RelayState.CLOSING, RelayState.TERMINATED):
            return
        self.state = RelayState.CLOSING
        logger.info("Call closing", call_id=self.call_id, reason=reason)

        if self._ai.ready:
            await best_effort("commit_input", self._ai.commit_input, call_id=self.call_id)
            await best_effort(
                "closing_response",
                lambda: self._ai.request_response(self.config.closing_instructions),
                call_id=self.call_id,
            )
        await best_effort("close_ai", self._ai.close, call_id=self.call_id)
        await best_effort("close_caller", self._caller.close, call_id=self.call_id)

    async def _finalize(self, *, notify: bool = True) -> None:
        if self._finalized:
            return
        self._finalized = True

        try:
            if not (notify and self._was_active):
                logger.info("Session released without summary", call_id=self.call_id)
                return

            self.session.finish()
            logger.info(
                "Call finished",
                call_id=self.call_id,
                duration_seconds=round(self.session.ended_at - self.session.started_at, 2),
                transcript_entries=len(self.session.transcript),
                fields=sorted(self.session.fields),
            )
            await best_effort("notify", lambda: self._notifier.notify(self.session), call_id=self.call_id)
        finally:
            if self._store.get(self.call_id) is self.session:
                self._store.remove(self.call_id)
