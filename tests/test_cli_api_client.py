from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from playalong.api_client import ContractError, HTTPError, NetworkError, PlayalongClient

SCORE_ID = "550e8400-e29b-41d4-a716-446655440000"
SESSION_ID = "6fa459ea-ee8a-3ca4-894e-db77e160355e"

SUMMARY = {
    "score_id": SCORE_ID,
    "title": "Etude",
    "composer": "Czerny",
    "tempo": 72.0,
    "note_count": 5,
    "measure_count": 2,
    "duration": 5.8333,
    "created_at": "2026-01-15T10:00:00Z",
}

STATS = {
    "accuracy_percentage": 100,
    "average_timing_offset_ms": 12,
    "notes_played": 3,
    "notes_correct": 3,
    "accuracy_grade": "good",
    "timing_grade": "good",
    "tips": [],
}


def _client(handler) -> tuple[httpx.Client, PlayalongClient]:
    http = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://test")
    return http, PlayalongClient(base_url="http://test/", http=http)


def test_load_score_markup():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/scores"
        assert json.loads(request.content) == {"markup": "<score/>", "fallback_tempo": 90.0}
        return httpx.Response(201, json=SUMMARY)

    http, c = _client(handler)
    with http:
        summary = c.load_score(markup="<score/>", fallback_tempo=90.0)
    assert str(summary.score_id) == SCORE_ID
    assert summary.note_count == 5


def test_load_score_requires_one_input():
    http, c = _client(lambda r: httpx.Response(500))
    with http:
        with pytest.raises(ValueError):
            c.load_score()
        with pytest.raises(ValueError):
            c.load_score(source="a.xml", markup="<a/>")


def test_upload_score_multipart(tmp_path: Path):
    p = tmp_path / "etude.mxl"
    p.write_bytes(b"PK\x03\x04fake")

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/scores/upload"
        assert request.headers.get("content-type", "").startswith("multipart/form-data")
        body = request.read()
        assert b'name="file"' in body
        assert b"etude.mxl" in body
        return httpx.Response(201, json=SUMMARY)

    http, c = _client(handler)
    with http:
        assert c.upload_score(p).title == "Etude"


def test_upload_missing_file(tmp_path: Path):
    http, c = _client(lambda r: httpx.Response(500))
    with http:
        with pytest.raises(ValueError):
            c.upload_score(tmp_path / "missing.xml")


def test_create_session_and_event_flow():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, json.loads(request.content or b"null")))
        if request.url.path == "/practice":
            return httpx.Response(
                201,
                json={
                    "session_id": SESSION_ID,
                    "score_id": SCORE_ID,
                    "hand": "right",
                    "expected_note_count": 2,
                    "transport_time": 0.0,
                    "current_measure": 1,
                    "loop": None,
                },
            )
        if request.url.path.endswith("/transport"):
            return httpx.Response(200, json={"time": 1.5, "current_measure": 1, "seek_to": None})
        if request.url.path.endswith("/events"):
            return httpx.Response(
                200,
                json={
                    "record": {
                        "note_id": "note-1-1",
                        "expected_pitch": 64,
                        "actual_pitch": 64,
                        "timing_offset_ms": 20,
                        "is_correct": True,
                    },
                    "held_pitches": [64],
                },
            )
        return httpx.Response(404)

    http, c = _client(handler)
    with http:
        info = c.create_session(SCORE_ID, hand="right")
        assert str(info.session_id) == SESSION_ID
        assert c.update_transport(SESSION_ID, 1.5).time == 1.5
        result = c.send_event(SESSION_ID, pitch=64, velocity=80)
        assert result.record.is_correct is True

    assert seen[0] == ("POST", "/practice", {"score_id": SCORE_ID, "hand": "right"})
    assert seen[1][2] == {"time": 1.5, "playing": True}
    # no timestamp: the server uses its latest transport time
    assert seen[2][2] == {"pitch": 64, "velocity": 80, "kind": "note_on"}


def test_stats_and_reset():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            assert request.url.path == f"/practice/{SESSION_ID}/stats"
            return httpx.Response(200, json=STATS)
        assert request.url.path == f"/practice/{SESSION_ID}/reset"
        return httpx.Response(200, json={**STATS, "notes_played": 0, "notes_correct": 0, "accuracy_percentage": 0})

    http, c = _client(handler)
    with http:
        assert c.get_stats(SESSION_ID).notes_played == 3
        assert c.reset_stats(SESSION_ID).notes_played == 0


def test_stats_contract_validation_error():
    http, c = _client(lambda r: httpx.Response(200, json={**STATS, "accuracy_percentage": 150}))
    with http:
        with pytest.raises(ContractError):
            c.get_stats(SESSION_ID)


def test_invalid_json_is_contract_error():
    http, c = _client(lambda r: httpx.Response(200, content=b"<html>"))
    with http:
        with pytest.raises(ContractError):
            c.get_score(SCORE_ID)


def test_http_error_carries_status():
    http, c = _client(lambda r: httpx.Response(404, json={"detail": "Session not found"}))
    with http:
        with pytest.raises(HTTPError) as ei:
            c.get_stats(SESSION_ID)
    assert ei.value.status_code == 404
    assert "Session not found" in ei.value.body


def test_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    http, c = _client(handler)
    with http:
        with pytest.raises(NetworkError):
            c.delete_session(SESSION_ID)
