from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_serializer, model_validator
from pydantic.config import ConfigDict

from core.score_models import AccuracyRecord, EventKind, Hand, Note


def _to_utc_z(dt: datetime) -> str:
    """
    Serialize datetime to UTC ISO8601 with trailing 'Z' (seconds precision).
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    s = dt.astimezone(timezone.utc).isoformat(timespec="seconds")
    return s.replace("+00:00", "Z")


class _ContractBaseModel(BaseModel):
    """
    API contract: unknown fields are rejected.
    """
    model_config = ConfigDict(extra="forbid", allow_inf_nan=False)


# =========================
# Scores
# =========================
class ScoreLoadRequest(_ContractBaseModel):
    source: Optional[str] = Field(default=None, description="http(s) URL or local path")
    markup: Optional[str] = Field(default=None, description="Inline MusicXML text")
    fallback_tempo: Optional[float] = Field(default=None, gt=0.0)
    hand_from_staff: Optional[bool] = None

    @model_validator(mode="after")
    def _exactly_one_input(self) -> "ScoreLoadRequest":
        if (self.source is None) == (self.markup is None):
            raise ValueError("Provide exactly one of 'source' or 'markup'")
        return self


class ScoreSummary(_ContractBaseModel):
    score_id: UUID
    title: str
    composer: str
    tempo: float
    note_count: int = Field(..., ge=0)
    measure_count: int = Field(..., ge=0)
    duration: float = Field(..., ge=0.0)
    created_at: datetime

    @field_serializer("created_at")
    def _ser_created_at(self, dt: datetime) -> str:
        return _to_utc_z(dt)


class MeasureAtTime(_ContractBaseModel):
    time: float
    measure: int = Field(..., ge=1)


class ActiveNotes(_ContractBaseModel):
    time: float
    notes: List[Note]


# =========================
# Practice
# =========================
class SessionCreateRequest(_ContractBaseModel):
    score_id: UUID
    hand: Hand = Hand.both
    tolerance_s: Optional[float] = Field(default=None, gt=0.0, le=5.0)


class LoopInfo(_ContractBaseModel):
    start: float = Field(..., ge=0.0)
    end: float = Field(..., gt=0.0)

    @model_validator(mode="after")
    def _validate_order(self) -> "LoopInfo":
        if self.end <= self.start:
            raise ValueError("loop end must be after loop start")
        return self


class LoopUpdate(_ContractBaseModel):
    start: Optional[float] = Field(default=None, ge=0.0)
    end: Optional[float] = Field(default=None, gt=0.0)
    first_measure: Optional[int] = Field(default=None, ge=1)
    last_measure: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _times_or_measures(self) -> "LoopUpdate":
        by_time = self.start is not None and self.end is not None
        by_measure = self.first_measure is not None and self.last_measure is not None
        if by_time == by_measure:
            raise ValueError("Provide either start/end or first_measure/last_measure")
        return self


class SessionInfo(_ContractBaseModel):
    session_id: UUID
    score_id: UUID
    hand: Hand
    expected_note_count: int = Field(..., ge=0)
    transport_time: float
    current_measure: int = Field(..., ge=1)
    loop: Optional[LoopInfo] = None


class HandUpdate(_ContractBaseModel):
    hand: Hand


class TransportUpdate(_ContractBaseModel):
    time: float = Field(..., ge=0.0)
    playing: bool = True


class TransportResponse(_ContractBaseModel):
    time: float
    current_measure: int = Field(..., ge=1)
    seek_to: Optional[float] = None


class EventIn(_ContractBaseModel):
    """
    Performance event over HTTP. Missing timestamp -> latest transport time.
    """
    pitch: int = Field(..., ge=0, le=127)
    velocity: int = Field(..., ge=0, le=127)
    kind: EventKind = EventKind.note_on
    timestamp: Optional[float] = None


class EventResult(_ContractBaseModel):
    record: Optional[AccuracyRecord] = None
    held_pitches: List[int]
