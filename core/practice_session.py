from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import UUID, uuid4

from core.accuracy import DEFAULT_TOLERANCE_S, AccuracyEngine
from core.midi_input import MidiInputSession
from core.score_models import AccuracyRecord, AccuracyStats, Hand, MusicData, Note, PerformanceEvent
from core.timeline import HandLike, LoopRegion, active_notes_at_time, current_measure_at_time, notes_by_hand
from core.transport import TransportClock

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_uuid(item_id: Union[str, UUID]) -> UUID:
    if isinstance(item_id, UUID):
        return item_id
    try:
        return UUID(str(item_id))
    except ValueError as e:
        raise KeyError(f"Invalid UUID format: {item_id}") from e


class PracticeSession:
    """
    One player practising one score.

    Owns the transport clock and the accuracy engine. The expected-note list
    is the hand-filtered view of the (immutable) score and is rebuilt only
    when the hand changes.
    """

    def __init__(
        self,
        music: MusicData,
        *,
        hand: HandLike = Hand.both,
        tolerance_s: float = DEFAULT_TOLERANCE_S,
        clock: Optional[TransportClock] = None,
        loop: Optional[LoopRegion] = None,
    ) -> None:
        self.music = music
        self.clock = clock or TransportClock()
        self.engine = AccuracyEngine(tolerance_s=tolerance_s)
        self.loop_region = loop
        self._hand = Hand(hand)
        self._expected: List[Note] = notes_by_hand(music, self._hand)

    # ----------------------------
    # Practice settings
    # ----------------------------
    @property
    def hand(self) -> Hand:
        return self._hand

    @property
    def expected_notes(self) -> List[Note]:
        return list(self._expected)

    def set_hand(self, hand: HandLike) -> None:
        self._hand = Hand(hand)
        self._expected = notes_by_hand(self.music, self._hand)

    def set_loop(self, region: LoopRegion) -> None:
        self.loop_region = region

    def clear_loop(self) -> None:
        self.loop_region = None

    # ----------------------------
    # Inputs
    # ----------------------------
    def update_transport(self, seconds: float, *, playing: bool = True) -> Optional[float]:
        """
        Record a transport sample. Returns a seek target when an active loop
        region has been passed, else None.
        """
        self.clock.update(seconds, playing=playing)
        if self.loop_region is not None and seconds >= self.loop_region.end:
            return self.loop_region.wrap(seconds)
        return None

    def handle_event(self, event: PerformanceEvent) -> Optional[AccuracyRecord]:
        return self.engine.handle_event(event, self.clock.current(), self._expected)

    def attach_input(self, source: MidiInputSession) -> Callable[[], None]:
        """
        Consume events from a MIDI input session. Their monotonic stamps are
        projected onto transport time. Returns the unsubscribe callable.
        """
        def _on_event(ev: PerformanceEvent) -> None:
            rebased = ev.model_copy(update={"timestamp": self.clock.project(ev.timestamp)})
            self.handle_event(rebased)

        return source.subscribe(_on_event)

    def reset_stats(self) -> None:
        self.engine.reset_stats()

    # ----------------------------
    # Snapshots
    # ----------------------------
    def stats(self) -> AccuracyStats:
        return self.engine.stats()

    def current_measure(self) -> int:
        return current_measure_at_time(self.music, self.clock.current())

    def snapshot(self) -> Dict[str, Any]:
        t = self.clock.current()
        loop = self.loop_region
        return {
            "hand": self._hand.value,
            "transport_time": t,
            "playing": self.clock.playing,
            "current_measure": current_measure_at_time(self.music, t),
            "active_notes": [n.id for n in active_notes_at_time(self.music, t) if n in self._expected],
            "held_pitches": self.engine.held_pitches,
            "loop": None if loop is None else {"start": loop.start, "end": loop.end},
            "stats": self.stats().model_dump(mode="json"),
        }


@dataclass
class _SessionRecord:
    session_id: UUID
    score_id: UUID
    session: PracticeSession
    created_at: datetime
    updated_at: datetime


class PracticeSessionManager:
    """
    In-memory practice session store.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._sessions: Dict[UUID, _SessionRecord] = {}

    def _get_record_locked(self, sid: UUID) -> _SessionRecord:
        if sid not in self._sessions:
            raise KeyError(f"Session not found: {sid}")
        return self._sessions[sid]

    def create(
        self,
        score_id: Union[str, UUID],
        music: MusicData,
        *,
        hand: HandLike = Hand.both,
        tolerance_s: float = DEFAULT_TOLERANCE_S,
    ) -> UUID:
        now = _utcnow()
        sid = uuid4()
        rec = _SessionRecord(
            session_id=sid,
            score_id=_ensure_uuid(score_id),
            session=PracticeSession(music, hand=hand, tolerance_s=tolerance_s),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._sessions[sid] = rec
        logger.info("Practice session %s created for score %s (hand=%s)", sid, rec.score_id, Hand(hand).value)
        return sid

    def exists(self, session_id: Union[str, UUID]) -> bool:
        try:
            sid = _ensure_uuid(session_id)
        except KeyError:
            return False
        with self._lock:
            return sid in self._sessions

    def get(self, session_id: Union[str, UUID]) -> PracticeSession:
        sid = _ensure_uuid(session_id)
        with self._lock:
            rec = self._get_record_locked(sid)
            rec.updated_at = _utcnow()
            return rec.session

    def score_id(self, session_id: Union[str, UUID]) -> UUID:
        sid = _ensure_uuid(session_id)
        with self._lock:
            return self._get_record_locked(sid).score_id

    def delete(self, session_id: Union[str, UUID]) -> bool:
        try:
            sid = _ensure_uuid(session_id)
        except KeyError:
            return False
        with self._lock:
            return self._sessions.pop(sid, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def prune(self, *, max_age_seconds: int = 3600) -> int:
        """
        Maintenance: drop sessions idle longer than max_age_seconds.
        """
        now = _utcnow()
        with self._lock:
            to_del = [
                sid for sid, rec in self._sessions.items()
                if (now - rec.updated_at).total_seconds() > max_age_seconds
            ]
            for sid in to_del:
                del self._sessions[sid]
        return len(to_del)


@dataclass
class _ScoreRecord:
    score_id: UUID
    music: MusicData
    source: Optional[str]
    created_at: datetime = field(default_factory=_utcnow)


class ScoreStore:
    """
    In-memory store of parsed scores. Entries are immutable MusicData.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._scores: Dict[UUID, _ScoreRecord] = {}

    def put(self, music: MusicData, *, source: Optional[str] = None) -> UUID:
        sid = uuid4()
        with self._lock:
            self._scores[sid] = _ScoreRecord(score_id=sid, music=music, source=source)
        return sid

    def get(self, score_id: Union[str, UUID]) -> MusicData:
        sid = _ensure_uuid(score_id)
        with self._lock:
            if sid not in self._scores:
                raise KeyError(f"Score not found: {sid}")
            return self._scores[sid].music

    def source(self, score_id: Union[str, UUID]) -> Optional[str]:
        sid = _ensure_uuid(score_id)
        with self._lock:
            if sid not in self._scores:
                raise KeyError(f"Score not found: {sid}")
            return self._scores[sid].source

    def delete(self, score_id: Union[str, UUID]) -> bool:
        try:
            sid = _ensure_uuid(score_id)
        except KeyError:
            return False
        with self._lock:
            return self._scores.pop(sid, None) is not None

    def ids(self) -> List[UUID]:
        with self._lock:
            return list(self._scores)

    def clear(self) -> None:
        with self._lock:
            self._scores.clear()


# Singleton Instances
score_store = ScoreStore()
session_manager = PracticeSessionManager()
