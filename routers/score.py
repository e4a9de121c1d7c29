from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, File, HTTPException, Query, UploadFile, status

from core.config import get_settings  # module-level so tests can monkeypatch
from core.models import ActiveNotes, MeasureAtTime, ScoreLoadRequest, ScoreSummary
from core.practice_session import score_store
from core.score_loader import ScoreLoadError, ScoreTooLargeError, decode_source_bytes, load_score
from core.score_models import Hand, MusicData, Note, ParseResult
from core.score_parser import parse_score
from core.timeline import (
    active_notes_at_time,
    current_measure_at_time,
    notes_by_hand,
    notes_in_range,
    total_duration,
    transpose,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Score"])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _summary(score_id: UUID, music: MusicData) -> ScoreSummary:
    return ScoreSummary(
        score_id=score_id,
        title=music.title,
        composer=music.composer,
        tempo=music.tempo,
        note_count=len(music.notes),
        measure_count=len(music.measures),
        duration=total_duration(music),
        created_at=_utcnow(),
    )


def _get_music(score_id: str) -> MusicData:
    try:
        return score_store.get(score_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Score not found")


def _resolve_local_source(source: str) -> Path:
    """
    Local sources must live under SCORE_DIR (relative paths are resolved there).
    """
    score_dir = Path(get_settings().score_dir).resolve()
    p = Path(source).expanduser()
    p = (p if p.is_absolute() else score_dir / p).resolve()
    if p != score_dir and score_dir not in p.parents:
        raise HTTPException(status_code=400, detail="Local score path must be inside SCORE_DIR")
    return p


def _store_result(result: ParseResult, source: Optional[str]) -> ScoreSummary:
    if not result.ok or result.data is None:
        raise HTTPException(status_code=422, detail=result.error or "Failed to parse score")
    sid = score_store.put(result.data, source=source)
    logger.info("Score %s stored (%s)", sid, source or "inline")
    return _summary(sid, result.data)


@router.post(
    "/scores",
    response_model=ScoreSummary,
    status_code=status.HTTP_201_CREATED,
    summary="Load and parse a score",
)
async def create_score(req: ScoreLoadRequest) -> ScoreSummary:
    s = get_settings()
    fallback = req.fallback_tempo or s.default_tempo_bpm
    by_staff = s.hand_from_staff if req.hand_from_staff is None else req.hand_from_staff

    if req.markup is not None:
        if len(req.markup.encode("utf-8")) > s.max_score_bytes:
            raise HTTPException(status_code=413, detail=f"Score too large (> {s.max_score_size_mb}MB)")
        return _store_result(parse_score(req.markup, fallback, hand_from_staff=by_staff), None)

    source = str(req.source).strip()
    target = source if source.lower().startswith(("http://", "https://")) else str(_resolve_local_source(source))
    result = await load_score(
        target,
        fallback_tempo=fallback,
        hand_from_staff=by_staff,
        timeout_s=s.score_fetch_timeout_s,
        max_bytes=s.max_score_bytes,
    )
    return _store_result(result, source)


@router.post(
    "/scores/upload",
    response_model=ScoreSummary,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a MusicXML / .mxl file",
)
async def upload_score(
    file: UploadFile = File(...),
    fallback_tempo: Optional[float] = Query(None, gt=0.0, allow_inf_nan=False),
) -> ScoreSummary:
    s = get_settings()
    limit = s.max_score_bytes
    chunk_size = 256 * 1024

    buf = bytearray()
    try:
        while True:
            chunk = await file.read(chunk_size)
            if not chunk:
                break
            buf.extend(chunk)
            if len(buf) > limit:
                raise HTTPException(
                    status_code=413,
                    detail=f"File too large: {len(buf)/1024/1024:.2f}MB > {s.max_score_size_mb}MB",
                )
    finally:
        await file.close()

    if not buf:
        raise HTTPException(status_code=400, detail="File is empty")

    try:
        markup = decode_source_bytes(bytes(buf), limit)
    except ScoreTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e))
    except ScoreLoadError as e:
        raise HTTPException(status_code=422, detail=str(e))

    result = parse_score(
        markup,
        fallback_tempo or s.default_tempo_bpm,
        hand_from_staff=s.hand_from_staff,
    )
    return _store_result(result, file.filename)


@router.get("/scores", response_model=List[UUID])
def list_scores() -> List[UUID]:
    return score_store.ids()


@router.get("/scores/{score_id}", response_model=MusicData)
def get_score(score_id: str) -> MusicData:
    return _get_music(score_id)


@router.delete("/scores/{score_id}")
def delete_score(score_id: str):
    if not score_store.delete(score_id):
        raise HTTPException(status_code=404, detail="Score not found")
    return {"ok": True, "score_id": score_id}


@router.get("/scores/{score_id}/active", response_model=ActiveNotes)
def get_active_notes(
    score_id: str,
    t: float = Query(..., allow_inf_nan=False, description="Transport time in seconds"),
) -> ActiveNotes:
    music = _get_music(score_id)
    return ActiveNotes(time=t, notes=active_notes_at_time(music, t))


@router.get("/scores/{score_id}/measure", response_model=MeasureAtTime)
def get_measure(
    score_id: str,
    t: float = Query(..., allow_inf_nan=False, description="Transport time in seconds"),
) -> MeasureAtTime:
    music = _get_music(score_id)
    return MeasureAtTime(time=t, measure=current_measure_at_time(music, t))


@router.get("/scores/{score_id}/notes", response_model=List[Note])
def get_notes(
    score_id: str,
    hand: Hand = Query(Hand.both),
    transpose_by: int = Query(0, alias="transpose", ge=-12, le=12),
) -> List[Note]:
    music = _get_music(score_id)
    if transpose_by:
        try:
            music = transpose(music, transpose_by)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return notes_by_hand(music, hand)


@router.get("/scores/{score_id}/range", response_model=List[Note])
def get_notes_in_range(
    score_id: str,
    start: float = Query(..., ge=0.0, allow_inf_nan=False),
    end: float = Query(..., gt=0.0, allow_inf_nan=False),
) -> List[Note]:
    if end <= start:
        raise HTTPException(status_code=400, detail="end must be after start")
    return notes_in_range(_get_music(score_id), start, end)
