"""
Live note matching and accuracy bookkeeping.

A press is matched against the expected notes in their given order: the first
note whose start lies within the tolerance window of the current transport
time and whose pitch equals the pressed pitch wins. This is first-in-order,
not closest-in-time; with two same-pitch candidates inside the window the
earlier one is taken.

The average timing offset is the mean of |offset| over every log entry.
Wrong-note entries carry an offset of 0 and are included.
"""
from __future__ import annotations

import logging
import math
import uuid
from typing import Dict, Iterable, List, Optional, Sequence

from core.score_models import (
    AccuracyRecord,
    AccuracyStats,
    Grade,
    HeldNote,
    Note,
    PerformanceEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_S = 1.0
UNMATCHED_PITCH = -1

# Tips only make sense once a handful of notes were played
TIPS_MIN_NOTES = 10


def round_half_up(x: float) -> int:
    """Half-up rounding (2.5 -> 3, -2.5 -> -2); Python's round() is banker's rounding."""
    return int(math.floor(x + 0.5))


def _wrong_note_id() -> str:
    return f"wrong-{uuid.uuid4().hex[:12]}"


def find_expected_note(
    expected: Iterable[Note],
    pitch: int,
    transport_time: float,
    tolerance_s: float = DEFAULT_TOLERANCE_S,
) -> Optional[Note]:
    for n in expected:
        if abs(n.start - transport_time) < tolerance_s and n.pitch == pitch:
            return n
    return None


class AccuracyEngine:
    """
    Owns the held-pitch map and the append-only accuracy log for one session.
    """

    def __init__(self, *, tolerance_s: float = DEFAULT_TOLERANCE_S) -> None:
        if tolerance_s <= 0:
            raise ValueError("tolerance_s must be > 0")
        self.tolerance_s = float(tolerance_s)
        self._held: Dict[int, HeldNote] = {}
        self._log: List[AccuracyRecord] = []

    # ----------------------------
    # Event handling
    # ----------------------------
    def handle_event(
        self,
        event: PerformanceEvent,
        transport_time: Optional[float] = None,
        expected: Optional[Sequence[Note]] = None,
    ) -> Optional[AccuracyRecord]:
        """
        Press: update held state and, when expected notes and a transport time
        are known, append one record (returned).
        Release: update held state only; returns None.
        """
        if not event.is_press:
            self._held.pop(event.pitch, None)
            return None

        self._held[event.pitch] = HeldNote(
            pitch=event.pitch,
            velocity=event.velocity,
            timestamp=event.timestamp,
        )

        if expected is None or transport_time is None:
            return None

        match = find_expected_note(expected, event.pitch, transport_time, self.tolerance_s)
        if match is not None:
            rec = AccuracyRecord(
                note_id=match.id,
                expected_pitch=match.pitch,
                actual_pitch=event.pitch,
                timing_offset_ms=round_half_up((event.timestamp - match.start) * 1000.0),
                is_correct=True,
            )
        else:
            rec = AccuracyRecord(
                note_id=_wrong_note_id(),
                expected_pitch=UNMATCHED_PITCH,
                actual_pitch=event.pitch,
                timing_offset_ms=0,
                is_correct=False,
            )
            logger.debug("Unmatched press pitch=%s at t=%.3f", event.pitch, transport_time)

        self._log.append(rec)
        return rec

    def reset_stats(self) -> None:
        """Clear the log. Held pitches are kept."""
        self._log = []

    # ----------------------------
    # Read-only snapshots
    # ----------------------------
    @property
    def log(self) -> List[AccuracyRecord]:
        return list(self._log)

    @property
    def held_notes(self) -> List[HeldNote]:
        return sorted(self._held.values(), key=lambda h: h.pitch)

    @property
    def held_pitches(self) -> List[int]:
        return sorted(self._held)

    @property
    def notes_played(self) -> int:
        return len(self._log)

    @property
    def notes_correct(self) -> int:
        return sum(1 for r in self._log if r.is_correct)

    @property
    def accuracy_percentage(self) -> int:
        if not self._log:
            return 0
        return round_half_up(100.0 * self.notes_correct / len(self._log))

    @property
    def average_timing_offset_ms(self) -> int:
        if not self._log:
            return 0
        return round_half_up(sum(abs(r.timing_offset_ms) for r in self._log) / len(self._log))

    def signed_timing_offset_ms(self) -> int:
        """Mean signed offset of matched presses (positive = late)."""
        matched = [r.timing_offset_ms for r in self._log if r.is_correct]
        if not matched:
            return 0
        return round_half_up(sum(matched) / len(matched))

    def stats(self) -> AccuracyStats:
        accuracy = self.accuracy_percentage
        timing = self.average_timing_offset_ms
        return AccuracyStats(
            accuracy_percentage=accuracy,
            average_timing_offset_ms=timing,
            notes_played=self.notes_played,
            notes_correct=self.notes_correct,
            accuracy_grade=accuracy_grade(accuracy),
            timing_grade=timing_grade(timing),
            tips=practice_tips(
                accuracy=accuracy,
                timing_ms=timing,
                signed_timing_ms=self.signed_timing_offset_ms(),
                notes_played=self.notes_played,
            ),
        )


def accuracy_grade(percentage: int) -> Grade:
    if percentage >= 90:
        return Grade.good
    if percentage >= 70:
        return Grade.fair
    return Grade.poor


def timing_grade(offset_ms: int) -> Grade:
    off = abs(offset_ms)
    if off <= 50:
        return Grade.good
    if off <= 100:
        return Grade.fair
    return Grade.poor


def practice_tips(
    *,
    accuracy: int,
    timing_ms: int,
    signed_timing_ms: int,
    notes_played: int,
) -> List[str]:
    if notes_played <= TIPS_MIN_NOTES:
        return []

    tips: List[str] = []
    if accuracy < 80:
        tips.append("slow_down")
    if signed_timing_ms > 50:
        tips.append("play_earlier")
    elif signed_timing_ms < -50:
        tips.append("relax_timing")
    if accuracy > 90 and timing_ms <= 50:
        tips.append("increase_tempo")
    return tips
