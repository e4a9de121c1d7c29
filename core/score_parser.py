"""
MusicXML -> MusicData (seconds-based timeline).

A single running clock walks every <measure> in document order. Each note
entry advances the clock by its own duration, so the resulting notes are
already ordered by start time and the measures tile the timeline without
gaps.
"""
from __future__ import annotations

import logging
import math
from typing import List, Optional, Union
from xml.etree import ElementTree as ET

from core.score_models import Hand, Measure, MusicData, Note, ParseResult, hand_for_pitch

logger = logging.getLogger(__name__)

DEFAULT_TEMPO_BPM = 74.0
DEFAULT_DIVISIONS = 4

STEP_OFFSETS = {"C": 0, "D": 2, "E": 4, "F": 5, "G": 7, "A": 9, "B": 11}


class ScoreParseError(ValueError):
    """Score markup could not be turned into a timeline."""


class _SkipEntry(Exception):
    """Note entry is incomplete or malformed; dropped without failing the parse."""


def _strip_namespaces(root: ET.Element) -> None:
    for el in root.iter():
        if isinstance(el.tag, str) and "}" in el.tag:
            el.tag = el.tag.split("}", 1)[1]


def _text(el: Optional[ET.Element]) -> Optional[str]:
    if el is None or el.text is None:
        return None
    t = el.text.strip()
    return t or None


def _parse_number(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        v = float(raw)
    except ValueError:
        return None
    if math.isnan(v) or math.isinf(v):
        return None
    return v


def _parse_int(raw: Optional[str]) -> Optional[int]:
    v = _parse_number(raw)
    if v is None:
        return None
    return int(v)


def read_tempo(root: ET.Element, fallback: float = DEFAULT_TEMPO_BPM) -> float:
    """
    Score-level tempo from the first <sound tempo="...">.
    Absent / malformed / non-positive -> fallback.
    """
    for sound in root.iter("sound"):
        raw = sound.get("tempo")
        if raw is None:
            continue
        bpm = _parse_number(raw.strip())
        if bpm is None or bpm <= 0:
            logger.debug("Ignoring malformed tempo %r, using %.2f BPM", raw, fallback)
            return fallback
        return bpm
    return fallback


def _read_divisions(measure: ET.Element) -> int:
    div = _parse_int(_text(measure.find(".//divisions")))
    if div is None or div <= 0:
        return DEFAULT_DIVISIONS
    return div


def _read_metadata(root: ET.Element) -> tuple[str, str]:
    title = _text(root.find(".//work-title")) or _text(root.find(".//movement-title")) or "Untitled"

    composer = "Unknown"
    for creator in root.iter("creator"):
        if creator.get("type") == "composer":
            composer = _text(creator) or "Unknown"
            break
    return title, composer


def pitch_from_parts(step: str, octave: int, alter: int = 0) -> int:
    """diatonic(step) + alter + octave*12"""
    try:
        base = STEP_OFFSETS[step.upper()]
    except KeyError:
        raise _SkipEntry(f"unknown step {step!r}")
    return base + int(alter) + int(octave) * 12


def _read_pitch(note_el: ET.Element) -> int:
    step = _text(note_el.find(".//step"))
    octave = _parse_int(_text(note_el.find(".//octave")))
    if step is None or octave is None:
        raise _SkipEntry("missing step/octave")

    alter_raw = _text(note_el.find(".//alter"))
    alter = 0
    if alter_raw is not None:
        parsed = _parse_int(alter_raw)
        if parsed is None:
            raise _SkipEntry(f"malformed alter {alter_raw!r}")
        alter = parsed

    pitch = pitch_from_parts(step, octave, alter)
    if not 0 <= pitch <= 127:
        raise _SkipEntry(f"pitch {pitch} out of MIDI range")
    return pitch


def _read_finger(note_el: ET.Element) -> Optional[int]:
    finger = _parse_int(_text(note_el.find(".//technical/fingering")))
    if finger is None or not 1 <= finger <= 5:
        return None
    return finger


def _read_hand(note_el: ET.Element, pitch: int, hand_from_staff: bool) -> Hand:
    if hand_from_staff:
        staff = _parse_int(_text(note_el.find("staff")))
        if staff is not None and staff >= 1:
            return Hand.right if staff == 1 else Hand.left
    return hand_for_pitch(pitch)


def build_timeline(
    root: ET.Element,
    tempo: float,
    *,
    hand_from_staff: bool = False,
) -> tuple[List[Note], List[Measure]]:
    seconds_per_quarter = 60.0 / tempo

    notes: List[Note] = []
    measures: List[Measure] = []
    clock = 0.0
    ordinal = 0

    # measure numbers restart per part, so later parts qualify their ids
    parts = root.findall("part") or [root]
    for part_idx, part_el in enumerate(parts):
        id_prefix = "" if part_idx == 0 else f"p{part_idx + 1}-"
        for measure_el in part_el.iter("measure"):
            ordinal += 1
            clock = _append_measure(
                measure_el, ordinal, clock, seconds_per_quarter, id_prefix, hand_from_staff, notes, measures
            )

    return notes, measures


def _append_measure(
    measure_el: ET.Element,
    ordinal: int,
    clock: float,
    seconds_per_quarter: float,
    id_prefix: str,
    hand_from_staff: bool,
    notes: List[Note],
    measures: List[Measure],
) -> float:
    """Lay out one measure starting at clock; returns the clock after it."""
    number = _parse_int(measure_el.get("number"))
    if number is None or number < 1:
        number = ordinal

    measure_start = clock
    divisions = _read_divisions(measure_el)

    for idx, note_el in enumerate(measure_el.iter("note")):
        if note_el.find("rest") is not None:
            continue
        try:
            pitch = _read_pitch(note_el)
            note_divs = _parse_number(_text(note_el.find("duration")))
            if note_divs is None or note_divs < 0:
                raise _SkipEntry("missing or malformed duration")
        except _SkipEntry as e:
            logger.debug("measure %s entry %s dropped: %s", number, idx, e)
            continue

        duration = (note_divs / divisions) * seconds_per_quarter
        start = clock
        end = start + duration
        notes.append(
            Note(
                id=f"{id_prefix}note-{number}-{idx}",
                pitch=pitch,
                start=start,
                end=end,
                duration=end - start,
                measure=number,
                hand=_read_hand(note_el, pitch, hand_from_staff),
                finger=_read_finger(note_el),
            )
        )
        clock = end

    measures.append(Measure(number=number, start=measure_start, end=clock))
    return clock


def parse_score_document(
    markup: Union[str, bytes],
    fallback_tempo: float = DEFAULT_TEMPO_BPM,
    *,
    hand_from_staff: bool = False,
) -> MusicData:
    """
    Strict variant: raises ScoreParseError on unusable markup.
    """
    if markup is None or (isinstance(markup, (str, bytes)) and not markup.strip()):
        raise ScoreParseError("Score markup is empty")
    if fallback_tempo is None or fallback_tempo <= 0:
        fallback_tempo = DEFAULT_TEMPO_BPM

    try:
        root = ET.fromstring(markup)
    except ET.ParseError as e:
        raise ScoreParseError(f"Malformed score markup: {e}") from e

    _strip_namespaces(root)

    tempo = read_tempo(root, fallback=float(fallback_tempo))
    title, composer = _read_metadata(root)
    notes, measures = build_timeline(root, tempo, hand_from_staff=hand_from_staff)

    logger.info(
        "Parsed score %r: %d notes, %d measures @ %.2f BPM",
        title, len(notes), len(measures), tempo,
    )
    return MusicData(
        notes=tuple(notes),
        measures=tuple(measures),
        title=title,
        composer=composer,
        tempo=tempo,
    )


def parse_score(
    markup: Union[str, bytes],
    fallback_tempo: float = DEFAULT_TEMPO_BPM,
    *,
    hand_from_staff: bool = False,
) -> ParseResult:
    """
    Boundary variant: never raises; failure is reported in the result.
    """
    try:
        data = parse_score_document(markup, fallback_tempo, hand_from_staff=hand_from_staff)
    except ScoreParseError as e:
        logger.warning("Score parse failed: %s", e)
        return ParseResult.failure(str(e))
    except Exception as e:
        logger.exception("Unexpected error parsing score: %s", e)
        return ParseResult.failure(f"Unknown error parsing score: {e}")
    return ParseResult.success(data)
