"""
Health check route.
Liveness for monitoring plus a few environment diagnostics.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import mido
from fastapi import APIRouter

from core.config import get_settings
from core.practice_session import score_store, session_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Health"])


def _midi_ports() -> tuple[bool, List[str], List[str], Optional[str]]:
    try:
        inputs = list(mido.get_input_names())
        outputs = list(mido.get_output_names())
    except Exception as e:
        logger.debug("MIDI backend unavailable: %s", e)
        return False, [], [], str(e)
    return True, inputs, outputs, None


@router.get("/health")
def health() -> Dict[str, Any]:
    """
    - always returns ok=True if API is alive
    - extra diagnostics: score dir, MIDI backend/ports, store sizes
    """
    s = get_settings()
    score_dir = Path(s.score_dir)
    backend_ok, inputs, outputs, backend_error = _midi_ports()

    return {
        "ok": True,
        "env": s.app_env,
        "paths": {
            "score_dir": str(score_dir),
        },
        "settings": {
            "default_tempo_bpm": s.default_tempo_bpm,
            "match_tolerance_s": s.match_tolerance_s,
            "beats_per_measure": s.beats_per_measure,
        },
        "checks": {
            "score_dir_exists": score_dir.exists(),
            "midi_backend": backend_ok,
            "midi_inputs": inputs,
            "midi_outputs": outputs,
            "midi_error": backend_error,
        },
        "stores": {
            "scores": len(score_store.ids()),
            "sessions": len(session_manager),
        },
    }
