from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Any, Optional, Type, TypeVar, Union
from uuid import UUID

import httpx
from pydantic import BaseModel, ValidationError

from core.models import EventResult, ScoreSummary, SessionInfo, TransportResponse
from core.score_models import AccuracyStats, EventKind, Hand, MusicData

M = TypeVar("M", bound=BaseModel)
Id = Union[str, UUID]


# -----------------------------
# Exceptions (Business-level)
# -----------------------------
class PlayalongClientError(Exception):
    """Base exception for SDK client."""


class NetworkError(PlayalongClientError):
    """Connection/timeout/DNS issues."""


class HTTPError(PlayalongClientError):
    """Non-2xx response from server."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class ContractError(PlayalongClientError):
    """Response JSON doesn't match the API contract."""


def _normalize_base_url(base_url: str) -> str:
    base = (base_url or "").strip()
    if not base:
        base = "http://127.0.0.1:8000"
    return base.rstrip("/")


def _guess_mime(path: Path) -> str:
    if path.suffix.lower() == ".mxl":
        return "application/vnd.recordare.musicxml"
    mime, _ = mimetypes.guess_type(str(path))
    return mime or "application/octet-stream"


class PlayalongClient:
    """
    API client:
    - POST /scores, POST /scores/upload, GET /scores/{id}
    - POST /practice
    - PUT  /practice/{id}/transport
    - POST /practice/{id}/events
    - GET  /practice/{id}/stats, POST /practice/{id}/reset
    - DELETE /practice/{id}
    """

    def __init__(
        self,
        *,
        base_url: str = "http://127.0.0.1:8000",
        timeout_s: float = 10.0,
        http: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = _normalize_base_url(base_url)
        self._owns_http = http is None
        self.http = http or httpx.Client(timeout=httpx.Timeout(timeout_s))

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    def __enter__(self) -> "PlayalongClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # --------- plumbing ---------
    def _send(self, method: str, path: str, *, expected: int = 200, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            r = self.http.request(method, url, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError, httpx.ConnectError) as e:
            raise NetworkError(str(e)) from e

        if r.status_code != expected:
            raise HTTPError(r.status_code, r.text)
        return r

    @staticmethod
    def _parse(r: httpx.Response, model: Type[M], what: str) -> M:
        try:
            data = r.json()
        except ValueError as e:
            raise ContractError(f"Invalid JSON in {what} response: {e}") from e

        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ContractError(f"{what} response violates contract: {e}") from e

    # --------- scores ---------
    def load_score(
        self,
        *,
        source: Optional[str] = None,
        markup: Optional[str] = None,
        fallback_tempo: Optional[float] = None,
    ) -> ScoreSummary:
        if (source is None) == (markup is None):
            raise ValueError("Provide exactly one of source or markup")

        body: dict[str, Any] = {"source": source} if source is not None else {"markup": markup}
        if fallback_tempo is not None:
            body["fallback_tempo"] = fallback_tempo

        r = self._send("POST", "/scores", expected=201, json=body)
        return self._parse(r, ScoreSummary, "POST /scores")

    def upload_score(self, path: Path) -> ScoreSummary:
        path = Path(path)
        if not path.exists() or not path.is_file():
            raise ValueError(f"score file not found: {path}")

        with path.open("rb") as f:
            files = {"file": (path.name, f, _guess_mime(path))}
            r = self._send("POST", "/scores/upload", expected=201, files=files)
        return self._parse(r, ScoreSummary, "POST /scores/upload")

    def get_score(self, score_id: Id) -> MusicData:
        r = self._send("GET", f"/scores/{score_id}")
        return self._parse(r, MusicData, "GET /scores")

    # --------- practice ---------
    def create_session(self, score_id: Id, *, hand: Union[Hand, str] = Hand.both) -> SessionInfo:
        body = {"score_id": str(score_id), "hand": Hand(hand).value}
        r = self._send("POST", "/practice", expected=201, json=body)
        return self._parse(r, SessionInfo, "POST /practice")

    def update_transport(self, session_id: Id, time_s: float, *, playing: bool = True) -> TransportResponse:
        r = self._send(
            "PUT",
            f"/practice/{session_id}/transport",
            json={"time": float(time_s), "playing": bool(playing)},
        )
        return self._parse(r, TransportResponse, "PUT /transport")

    def send_event(
        self,
        session_id: Id,
        *,
        pitch: int,
        velocity: int,
        kind: Union[EventKind, str] = EventKind.note_on,
        timestamp: Optional[float] = None,
    ) -> EventResult:
        body: dict[str, Any] = {"pitch": int(pitch), "velocity": int(velocity), "kind": EventKind(kind).value}
        if timestamp is not None:
            body["timestamp"] = float(timestamp)
        r = self._send("POST", f"/practice/{session_id}/events", json=body)
        return self._parse(r, EventResult, "POST /events")

    def get_stats(self, session_id: Id) -> AccuracyStats:
        r = self._send("GET", f"/practice/{session_id}/stats")
        return self._parse(r, AccuracyStats, "GET /stats")

    def reset_stats(self, session_id: Id) -> AccuracyStats:
        r = self._send("POST", f"/practice/{session_id}/reset")
        return self._parse(r, AccuracyStats, "POST /reset")

    def delete_session(self, session_id: Id) -> None:
        self._send("DELETE", f"/practice/{session_id}")
