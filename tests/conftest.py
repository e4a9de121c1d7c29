from __future__ import annotations

import io
import zipfile
from typing import Any, Callable, List, Optional

import pytest

from core.config import get_settings
from core.practice_session import score_store, session_manager
from core.score_models import Hand, MusicData, Measure, Note

# Two measures @ 72 BPM (quarter = 0.8333s).
# m1: C5(60) E5(64, finger 3) <rest> G3(43)
# m2 (no <divisions>, falls back to 4): F#4(54) half, Bb4(58) half
ETUDE_XML = """<?xml version="1.0" encoding="UTF-8"?>
<score-partwise version="3.1">
  <work><work-title>Etude</work-title></work>
  <identification><creator type="composer">Czerny</creator></identification>
  <part-list><score-part id="P1"><part-name>Piano</part-name></score-part></part-list>
  <part id="P1">
    <measure number="1">
      <attributes><divisions>4</divisions></attributes>
      <direction placement="above"><sound tempo="72"/></direction>
      <note><pitch><step>C</step><octave>5</octave></pitch><duration>4</duration></note>
      <note>
        <pitch><step>E</step><octave>5</octave></pitch><duration>4</duration>
        <notations><technical><fingering>3</fingering></technical></notations>
      </note>
      <note><rest/><duration>4</duration></note>
      <note><pitch><step>G</step><octave>3</octave></pitch><duration>4</duration></note>
    </measure>
    <measure number="2">
      <note><pitch><step>F</step><alter>1</alter><octave>4</octave></pitch><duration>8</duration></note>
      <note><pitch><step>B</step><alter>-1</alter><octave>4</octave></pitch><duration>8</duration></note>
    </measure>
  </part>
</score-partwise>
"""

QUARTER_72 = 60.0 / 72.0


def score_xml(notes: str, *, measure_attrs: str = 'number="1"', head: str = "") -> str:
    """One-measure document around raw <note> markup."""
    return (
        '<?xml version="1.0"?>\n<score-partwise><part id="P1">'
        f"{head}<measure {measure_attrs}>{notes}</measure></part></score-partwise>"
    )


def note_xml(step: str, octave: int, duration: int = 4, extra: str = "") -> str:
    return (
        f"<note><pitch><step>{step}</step><octave>{octave}</octave></pitch>"
        f"<duration>{duration}</duration>{extra}</note>"
    )


def make_mxl(members: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return buf.getvalue()


def make_note(
    nid: str,
    pitch: int,
    start: float,
    end: float,
    *,
    measure: int = 1,
    hand: Optional[Hand] = None,
    finger: Optional[int] = None,
) -> Note:
    return Note(
        id=nid,
        pitch=pitch,
        start=start,
        end=end,
        duration=end - start,
        measure=measure,
        hand=hand or (Hand.left if pitch < 60 else Hand.right),
        finger=finger,
    )


@pytest.fixture
def etude_xml() -> str:
    return ETUDE_XML


@pytest.fixture
def music() -> MusicData:
    """Hand-built timeline: 2 measures of 2s, 4 notes."""
    notes = (
        make_note("note-1-0", 60, 0.0, 1.0, measure=1),
        make_note("note-1-1", 48, 0.0, 2.0, measure=1),
        make_note("note-1-2", 64, 1.0, 2.0, measure=1),
        make_note("note-2-0", 67, 2.0, 4.0, measure=2),
    )
    measures = (
        Measure(number=1, start=0.0, end=2.0),
        Measure(number=2, start=2.0, end=4.0),
    )
    return MusicData(notes=notes, measures=measures, title="Drill", composer="Anon", tempo=60.0)


@pytest.fixture
def mxl_factory() -> Callable[[dict[str, bytes]], bytes]:
    return make_mxl


@pytest.fixture
def isolated_settings(tmp_path, monkeypatch):
    """Point SCORE_DIR at tmp and reset cached settings + in-memory stores."""
    monkeypatch.setenv("SCORE_DIR", str(tmp_path / "scores"))
    monkeypatch.setenv("APP_ENV", "test")
    get_settings.cache_clear()
    score_store.clear()
    session_manager.clear()
    yield tmp_path / "scores"
    get_settings.cache_clear()
    score_store.clear()
    session_manager.clear()


class FakeHandle:
    def __init__(self, when: float, callback: Callable[..., Any], args: tuple) -> None:
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeLoop:
    """Deterministic stand-in for the event loop timer API."""

    def __init__(self) -> None:
        self.now = 0.0
        self.pending: List[FakeHandle] = []

    def time(self) -> float:
        return self.now

    def call_at(self, when: float, callback: Callable[..., Any], *args: Any) -> FakeHandle:
        h = FakeHandle(when, callback, args)
        self.pending.append(h)
        return h

    def live(self) -> List[FakeHandle]:
        return [h for h in self.pending if not h.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [h for h in self.live() if h.when <= target + 1e-9]
            if not due:
                break
            h = min(due, key=lambda x: x.when)
            self.pending.remove(h)
            self.now = h.when
            h.callback(*h.args)
        self.now = target
        self.pending = self.live()


@pytest.fixture
def fake_loop() -> FakeLoop:
    return FakeLoop()
