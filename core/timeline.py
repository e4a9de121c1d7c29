from __future__ import annotations

from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from core.score_models import Hand, Measure, MusicData, Note

HandLike = Union[Hand, str]


def active_notes_at_time(data: Optional[MusicData], t: float) -> List[Note]:
    """Notes sounding at t. Closed interval: a note is still active at its own end."""
    if data is None:
        return []
    return [n for n in data.notes if n.start <= t <= n.end]


def current_measure_at_time(data: Optional[MusicData], t: float) -> int:
    """Number of the first measure containing t; 1 when nothing matches."""
    if data is None:
        return 1
    for m in data.measures:
        if m.start <= t <= m.end:
            return m.number
    return 1


def notes_by_hand(data: Optional[MusicData], hand: HandLike) -> List[Note]:
    if data is None:
        return []
    h = Hand(hand)
    if h == Hand.both:
        return list(data.notes)
    return [n for n in data.notes if n.hand == h]


def notes_in_range(data: Optional[MusicData], start: float, end: float) -> List[Note]:
    """Notes overlapping [start, end)."""
    if data is None or end <= start:
        return []
    return [n for n in data.notes if n.start < end and n.end > start]


def total_duration(data: Optional[MusicData]) -> float:
    if data is None or not data.measures:
        return 0.0
    return data.measures[-1].end


def measure_bounds(data: Optional[MusicData], number: int) -> Optional[Measure]:
    if data is None:
        return None
    for m in data.measures:
        if m.number == number:
            return m
    return None


def transpose(data: MusicData, semitones: int) -> MusicData:
    """
    Shifted copy. Ids, timing and hand assignment are kept.
    Raises ValueError when a pitch would leave 0..127.
    """
    semitones = int(semitones)
    if semitones == 0:
        return data

    shifted: List[Note] = []
    for n in data.notes:
        p = n.pitch + semitones
        if not 0 <= p <= 127:
            raise ValueError(f"Transposing {n.id} by {semitones} leaves MIDI range ({p})")
        shifted.append(n.model_copy(update={"pitch": p}))

    return data.model_copy(update={"notes": tuple(shifted)})


class LoopRegion(BaseModel):
    """A-B repeat window in transport seconds."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    start: float = Field(..., ge=0.0)
    end: float = Field(..., gt=0.0)

    @model_validator(mode="after")
    def _validate_order(self) -> "LoopRegion":
        if self.end <= self.start:
            raise ValueError("loop end must be after loop start")
        return self

    def contains(self, t: float) -> bool:
        return self.start <= t < self.end

    def wrap(self, t: float) -> float:
        return self.start if t >= self.end else t

    @classmethod
    def for_measures(cls, data: MusicData, first: int, last: int) -> "LoopRegion":
        a = measure_bounds(data, first)
        b = measure_bounds(data, last)
        if a is None or b is None:
            raise ValueError(f"Unknown measure range {first}-{last}")
        return cls(start=a.start, end=b.end)
