from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, HTTPException, status

from core.config import get_settings
from core.models import (
    EventIn,
    EventResult,
    HandUpdate,
    LoopInfo,
    LoopUpdate,
    SessionCreateRequest,
    SessionInfo,
    TransportResponse,
    TransportUpdate,
)
from core.practice_session import PracticeSession, score_store, session_manager
from core.score_models import AccuracyRecord, AccuracyStats, HeldNote, PerformanceEvent
from core.timeline import LoopRegion

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/practice", tags=["Practice"])


def _get_session(session_id: str) -> PracticeSession:
    try:
        return session_manager.get(session_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Session not found")


def _info(session_id: str, sess: PracticeSession) -> SessionInfo:
    loop = sess.loop_region
    return SessionInfo(
        session_id=session_id,
        score_id=session_manager.score_id(session_id),
        hand=sess.hand,
        expected_note_count=len(sess.expected_notes),
        transport_time=sess.clock.current(),
        current_measure=sess.current_measure(),
        loop=LoopInfo(start=loop.start, end=loop.end) if loop is not None else None,
    )


@router.post("", response_model=SessionInfo, status_code=status.HTTP_201_CREATED)
def create_session(req: SessionCreateRequest) -> SessionInfo:
    try:
        music = score_store.get(req.score_id)
    except KeyError:
        raise HTTPException(status_code=409, detail="Score not loaded")

    tolerance = req.tolerance_s or get_settings().match_tolerance_s
    sid = session_manager.create(req.score_id, music, hand=req.hand, tolerance_s=tolerance)
    return _info(str(sid), session_manager.get(sid))


@router.get("/{session_id}", response_model=SessionInfo)
def get_session(session_id: str) -> SessionInfo:
    return _info(session_id, _get_session(session_id))


@router.delete("/{session_id}")
def delete_session(session_id: str):
    if not session_manager.delete(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"ok": True, "session_id": session_id}


@router.put("/{session_id}/transport", response_model=TransportResponse)
def update_transport(session_id: str, body: TransportUpdate) -> TransportResponse:
    sess = _get_session(session_id)
    seek_to = sess.update_transport(body.time, playing=body.playing)
    return TransportResponse(time=sess.clock.current(), current_measure=sess.current_measure(), seek_to=seek_to)


@router.post("/{session_id}/events", response_model=EventResult)
def post_event(session_id: str, body: EventIn) -> EventResult:
    """
    Press/release. Presses are matched against the latest transport time.
    """
    sess = _get_session(session_id)
    ts = sess.clock.current() if body.timestamp is None else body.timestamp
    ev = PerformanceEvent(pitch=body.pitch, velocity=body.velocity, timestamp=ts, kind=body.kind)
    rec = sess.handle_event(ev)
    return EventResult(record=rec, held_pitches=sess.engine.held_pitches)


@router.get("/{session_id}/stats", response_model=AccuracyStats)
def get_stats(session_id: str) -> AccuracyStats:
    return _get_session(session_id).stats()


@router.get("/{session_id}/log", response_model=List[AccuracyRecord])
def get_log(session_id: str) -> List[AccuracyRecord]:
    return _get_session(session_id).engine.log


@router.get("/{session_id}/held", response_model=List[HeldNote])
def get_held(session_id: str) -> List[HeldNote]:
    return _get_session(session_id).engine.held_notes


@router.post("/{session_id}/reset", response_model=AccuracyStats)
def reset_stats(session_id: str) -> AccuracyStats:
    sess = _get_session(session_id)
    sess.reset_stats()
    return sess.stats()


@router.put("/{session_id}/hand", response_model=SessionInfo)
def set_hand(session_id: str, body: HandUpdate) -> SessionInfo:
    sess = _get_session(session_id)
    sess.set_hand(body.hand)
    return _info(session_id, sess)


@router.put("/{session_id}/loop", response_model=SessionInfo)
def set_loop(session_id: str, body: LoopUpdate) -> SessionInfo:
    sess = _get_session(session_id)
    try:
        if body.first_measure is not None and body.last_measure is not None:
            region = LoopRegion.for_measures(sess.music, body.first_measure, body.last_measure)
        else:
            region = LoopRegion(start=body.start, end=body.end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    sess.set_loop(region)
    return _info(session_id, sess)


@router.delete("/{session_id}/loop", response_model=SessionInfo)
def clear_loop(session_id: str) -> SessionInfo:
    sess = _get_session(session_id)
    sess.clear_loop()
    return _info(session_id, sess)
