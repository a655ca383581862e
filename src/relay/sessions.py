"""
Per-call session records.

A Session accumulates the transcript and extracted fields for one call and is
handed to the summary notifier once the call ends. The store is a plain
process-wide mapping; each call only touches its own key.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional

import structlog

logger = structlog.get_logger(__name__)


class Speaker(str, Enum):
    """Who said a transcript fragment."""
    CALLER = "caller"
    AGENT = "agent"


@dataclass(frozen=True)
class TranscriptEntry:
    speaker: Speaker
    text: str
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "speaker": self.speaker.value,
            "text": self.text,
            "timestamp": _to_millis(self.timestamp),
        }


def _to_millis(ts: Optional[float]) -> Optional[int]:
    if ts is None:
        return None
    return int(ts * 1000)


@dataclass
class Session:
    """Transcript, extracted fields and timing for one call."""
    call_id: str
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    transcript: List[TranscriptEntry] = field(default_factory=list)
    fields: Dict[str, Any] = field(default_factory=dict)
    # Set once a relay owns the session; unclaimed sessions may be evicted.
    claimed: bool = False

    @property
    def is_finished(self) -> bool:
        return self.ended_at is not None

    def append_transcript(self, speaker: Speaker, text: str) -> TranscriptEntry:
        """Append a fragment in receipt order."""
        entry = TranscriptEntry(speaker=speaker, text=text, timestamp=time.time())
        self.transcript.append(entry)
        return entry

    def merge_fields(self, values: Mapping[str, Any]) -> None:
        """Merge extracted fields; the latest value for a key wins."""
        self.fields.update(values)

    def finish(self) -> bool:
        """
        Stamp the end time.

        Returns:
            True the first time, False if the session was already finished
        """
        if self.ended_at is not None:
            return False
        self.ended_at = time.time()
        return True

    def to_summary(self) -> Dict[str, Any]:
        """Summary document posted to the webhook (timestamps in epoch ms)."""
        return {
            "callId": self.call_id,
            "startedAt": _to_millis(self.started_at),
            "endedAt": _to_millis(self.ended_at),
            "transcript": [entry.to_dict() for entry in self.transcript],
            "fields": dict(self.fields),
        }


class SessionStore:
    """
    In-memory store of call sessions keyed by call id.

    Note: This is a single-process store. Sessions do not survive a restart.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def get_or_create(self, call_id: str) -> Session:
        session = self._sessions.get(call_id)
        if session is None:
            session = Session(call_id=call_id)
            self._sessions[call_id] = session
            logger.debug("Session created", call_id=call_id)
        return session

    def get(self, call_id: str) -> Optional[Session]:
        return self._sessions.get(call_id)

    def remove(self, call_id: str) -> Optional[Session]:
        session = self._sessions.pop(call_id, None)
        if session is not None:
            logger.debug("Session released", call_id=call_id)
        return session

    def evict_unclaimed(self, max_age_seconds: float, *, now: Optional[float] = None) -> List[str]:
        """
        Drop sessions no relay has claimed that are older than `max_age_seconds`.

        Covers calls whose media stream never connected (e.g. hung up while ringing).

        Returns:
            The evicted call ids
        """
        now = time.time() if now is None else now
        stale = [
            call_id
            for call_id, session in self._sessions.items()
            if not session.claimed and now - session.started_at > max_age_seconds
        ]
        for call_id in stale:
            del self._sessions[call_id]
        if stale:
            logger.info("Evicted unclaimed sessions", call_ids=stale)
        return stale

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))
