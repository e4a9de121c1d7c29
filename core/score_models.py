from __future__ import annotations

import math
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Tolerance for duration == end - start
DURATION_EPS = 1e-9

# Notes strictly below middle C default to the left hand
MIDDLE_C = 60


class Hand(str, Enum):
    left = "left"
    right = "right"
    both = "both"


def hand_for_pitch(pitch: int) -> Hand:
    return Hand.left if pitch < MIDDLE_C else Hand.right


class _FrozenModel(BaseModel):
    """
    Timeline snapshots are immutable once built.
    Derived views (hand filters, transposition) create new values.
    """
    model_config = ConfigDict(frozen=True, extra="forbid", allow_inf_nan=False)


class Note(_FrozenModel):
    """
    One expected note on the score timeline.
    Times are in seconds relative to score start.
    """
    id: str = Field(..., min_length=1)
    pitch: int = Field(..., ge=0, le=127, description="MIDI pitch 0-127")
    start: float = Field(..., ge=0.0, description="Start time in seconds")
    end: float = Field(..., ge=0.0, description="End time in seconds")
    duration: float = Field(..., ge=0.0, description="Duration in seconds")
    measure: int = Field(..., ge=1)
    hand: Hand
    finger: Optional[int] = Field(None, ge=1, le=5, description="Fingering 1-5")

    @model_validator(mode="after")
    def _validate_timing(self) -> "Note":
        if self.start > self.end:
            raise ValueError("note start must not exceed end")
        if not math.isclose(self.duration, self.end - self.start, abs_tol=DURATION_EPS):
            raise ValueError("note duration must equal end - start")
        return self


class Measure(_FrozenModel):
    number: int = Field(..., ge=1)
    start: float = Field(..., ge=0.0)
    end: float = Field(..., ge=0.0)

    @model_validator(mode="after")
    def _validate_bounds(self) -> "Measure":
        if self.start > self.end:
            raise ValueError("measure start must not exceed end")
        return self


class MusicData(_FrozenModel):
    """
    Parsed score: notes ordered by start, measures in document order.
    """
    notes: Tuple[Note, ...] = ()
    measures: Tuple[Measure, ...] = ()
    title: str = "Untitled"
    composer: str = "Unknown"
    tempo: float = Field(74.0, gt=0.0, description="Tempo in BPM")


class ParseResult(_FrozenModel):
    """
    Outcome of a parse/load attempt. Exactly one of data/error is set.
    """
    ok: bool
    data: Optional[MusicData] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _validate_outcome(self) -> "ParseResult":
        if self.ok and (self.data is None or self.error is not None):
            raise ValueError("ok=True requires data and no error")
        if not self.ok and (self.data is not None or not self.error):
            raise ValueError("ok=False requires an error message and no data")
        return self

    @classmethod
    def success(cls, data: MusicData) -> "ParseResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, message: str) -> "ParseResult":
        return cls(ok=False, error=message or "Unknown error parsing score")


# =========================
# Performance side
# =========================
class EventKind(str, Enum):
    note_on = "note_on"
    note_off = "note_off"


class PerformanceEvent(_FrozenModel):
    """
    A key press or release. timestamp is in transport seconds.
    """
    pitch: int = Field(..., ge=0, le=127)
    velocity: int = Field(..., ge=0, le=127)
    timestamp: float
    kind: EventKind = EventKind.note_on

    @property
    def is_press(self) -> bool:
        return self.kind == EventKind.note_on and self.velocity > 0


class HeldNote(_FrozenModel):
    pitch: int = Field(..., ge=0, le=127)
    velocity: int = Field(..., ge=0, le=127)
    timestamp: float


class AccuracyRecord(_FrozenModel):
    note_id: str = Field(..., min_length=1)
    expected_pitch: int = Field(..., ge=-1, le=127, description="-1 when unmatched")
    actual_pitch: int = Field(..., ge=0, le=127)
    timing_offset_ms: int
    is_correct: bool


class Grade(str, Enum):
    good = "good"
    fair = "fair"
    poor = "poor"


class AccuracyStats(_FrozenModel):
    accuracy_percentage: int = Field(..., ge=0, le=100)
    average_timing_offset_ms: int = Field(..., ge=0)
    notes_played: int = Field(..., ge=0)
    notes_correct: int = Field(..., ge=0)
    accuracy_grade: Grade
    timing_grade: Grade
    tips: List[str] = Field(default_factory=list)
