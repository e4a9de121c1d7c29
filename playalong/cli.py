from __future__ import annotations

import argparse
import asyncio
import json
import queue
import sys
from pathlib import Path
from typing import Optional

from core.config import get_settings
from core.metronome import ClickPlayer, MetronomeScheduler, MidiClickPlayer, NullClickPlayer
from core.midi_input import MidiInputSession
from core.models import EventResult
from core.score_loader import load_score
from core.score_models import Hand, MusicData, PerformanceEvent
from core.timeline import active_notes_at_time, current_measure_at_time, notes_by_hand, transpose

from playalong.api_client import ContractError, HTTPError, NetworkError, PlayalongClient


# exit codes (keep stable)
EXIT_OK = 0
EXIT_PARSE_FAILED = 2
EXIT_INPUT_UNAVAILABLE = 3
EXIT_NETWORK_OR_HTTP = 4
EXIT_BAD_ARGS = 5


def _print_err(msg: str) -> None:
    print(msg, file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="playalong", description="Playalong CLI (score tools, metronome, live practice)")
    sub = p.add_subparsers(dest="cmd", required=True)

    # ------------------------------------------------------------
    # parse: MusicXML -> MusicData JSON (no server)
    # ------------------------------------------------------------
    ps = sub.add_parser("parse", help="Parse a MusicXML/.mxl file into a timeline")
    ps.add_argument("file", type=str, help="Path to .musicxml/.xml/.mxl")
    ps.add_argument("--tempo", type=float, default=None, help="Fallback tempo (BPM) when the score has none")
    ps.add_argument("--hand-from-staff", dest="hand_from_staff", action="store_true", help="Assign hands by staff")
    ps.add_argument("--hand", default="both", choices=[h.value for h in Hand], help="Only keep this hand's notes")
    ps.add_argument("--transpose", type=int, default=0, help="Semitones to shift every note")
    ps.add_argument("--out", type=str, default="", help="Write JSON here instead of stdout")

    # ------------------------------------------------------------
    # query: what sounds at a given time
    # ------------------------------------------------------------
    q = sub.add_parser("query", help="Current measure and active notes at a time")
    q.add_argument("file", type=str, help="Path to .musicxml/.xml/.mxl")
    q.add_argument("--time", type=float, required=True, help="Transport time in seconds")
    q.add_argument("--tempo", type=float, default=None, help="Fallback tempo (BPM)")
    q.add_argument("--hand", default="both", choices=[h.value for h in Hand], help="Hand filter")

    # ------------------------------------------------------------
    # metronome: local click on an asyncio loop
    # ------------------------------------------------------------
    m = sub.add_parser("metronome", help="Run the metronome and print beat numbers")
    m.add_argument("--bpm", type=float, default=None, help="Tempo (default: DEFAULT_TEMPO_BPM)")
    m.add_argument("--beats", type=int, default=None, help="Beats per measure (default: BEATS_PER_MEASURE)")
    m.add_argument("--count", type=int, default=0, help="Stop after this many ticks (0 = until Ctrl-C)")
    m.add_argument("--port", type=str, default=None, help="MIDI output port for the click")
    m.add_argument("--silent", action="store_true", help="Do not open a MIDI output")

    # ------------------------------------------------------------
    # practice: forward local MIDI input to a server session
    # ------------------------------------------------------------
    pr = sub.add_parser("practice", help="Forward MIDI input to a practice session and print accuracy")
    pr.add_argument("score_id", type=str, help="Score UUID (from POST /scores)")
    pr.add_argument("--base-url", dest="base_url", default="http://127.0.0.1:8000", help="Server base url")
    pr.add_argument("--hand", default="both", choices=[h.value for h in Hand], help="Hand to practise")
    pr.add_argument("--port", type=str, default=None, help="MIDI input port (default: first available)")
    pr.add_argument("--max-notes", dest="max_notes", type=int, default=0, help="Stop after N presses (0 = until Ctrl-C)")
    pr.add_argument("--list-ports", dest="list_ports", action="store_true", help="List MIDI inputs and exit")

    return p


# -------------------------------
# Helpers
# -------------------------------
def _load_local(path: str, tempo: Optional[float], hand_from_staff: bool = False) -> MusicData:
    p = Path(path)
    if not p.exists() or not p.is_file():
        raise FileNotFoundError(f"score file not found: {p}")

    s = get_settings()
    result = asyncio.run(
        load_score(
            p,
            fallback_tempo=tempo or s.default_tempo_bpm,
            hand_from_staff=hand_from_staff or s.hand_from_staff,
            max_bytes=s.max_score_bytes,
        )
    )
    if not result.ok or result.data is None:
        raise ValueError(result.error or "Failed to parse score")
    return result.data


# -------------------------------
# Commands
# -------------------------------
def cmd_parse(args: argparse.Namespace) -> int:
    try:
        music = _load_local(args.file, args.tempo, args.hand_from_staff)
    except FileNotFoundError as e:
        _print_err(str(e))
        return EXIT_BAD_ARGS
    except ValueError as e:
        _print_err(f"Parse failed: {e}")
        return EXIT_PARSE_FAILED

    try:
        if args.transpose:
            music = transpose(music, args.transpose)
    except ValueError as e:
        _print_err(str(e))
        return EXIT_BAD_ARGS

    if args.hand != Hand.both.value:
        music = music.model_copy(update={"notes": tuple(notes_by_hand(music, args.hand))})

    text = music.model_dump_json(indent=2)
    if args.out:
        out_path = Path(args.out).resolve()
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(text, encoding="utf-8")
        print(str(out_path))
    else:
        print(text)
    return EXIT_OK


def cmd_query(args: argparse.Namespace) -> int:
    try:
        music = _load_local(args.file, args.tempo)
    except FileNotFoundError as e:
        _print_err(str(e))
        return EXIT_BAD_ARGS
    except ValueError as e:
        _print_err(f"Parse failed: {e}")
        return EXIT_PARSE_FAILED

    t = float(args.time)
    wanted = {n.id for n in notes_by_hand(music, args.hand)}
    active = [n for n in active_notes_at_time(music, t) if n.id in wanted]
    payload = {
        "time": t,
        "measure": current_measure_at_time(music, t),
        "active": [n.model_dump(mode="json") for n in active],
    }
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return EXIT_OK


async def _run_metronome(met: MetronomeScheduler, count: int) -> int:
    done: asyncio.Future = asyncio.get_running_loop().create_future()
    ticks = 0

    def _on_tick(beat: int) -> None:
        nonlocal ticks
        ticks += 1
        print(beat, flush=True)
        if count and ticks >= count:
            met.stop()
            if not done.done():
                done.set_result(None)

    met.subscribe(_on_tick)
    met.start()
    try:
        await done
    finally:
        met.close()
    return ticks


def cmd_metronome(args: argparse.Namespace) -> int:
    s = get_settings()
    bpm = s.default_tempo_bpm if args.bpm is None else args.bpm
    beats = s.beats_per_measure if args.beats is None else args.beats
    if args.count < 0:
        _print_err("--count must be >= 0")
        return EXIT_BAD_ARGS

    player: ClickPlayer
    if args.silent:
        player = NullClickPlayer()
    else:
        player = MidiClickPlayer(
            args.port or s.midi_output_port,
            channel=s.click_channel,
            note=s.click_note,
            accent_note=s.click_accent_note,
            velocity=s.click_velocity,
        )

    try:
        met = MetronomeScheduler(bpm, beats_per_measure=beats, click_player=player)
    except ValueError as e:
        _print_err(str(e))
        return EXIT_BAD_ARGS

    try:
        asyncio.run(_run_metronome(met, int(args.count)))
    except KeyboardInterrupt:
        pass
    return EXIT_OK


def _print_press(ev: PerformanceEvent, result: EventResult) -> None:
    rec = result.record
    if rec is None:
        return
    mark = "ok" if rec.is_correct else "wrong"
    print(f"pitch={ev.pitch} {mark} offset={rec.timing_offset_ms}ms note={rec.note_id}")


def cmd_practice(args: argparse.Namespace) -> int:
    s = get_settings()
    midi = MidiInputSession(args.port or s.midi_input_port)

    if args.list_ports:
        for name in midi.available_inputs():
            print(name)
        return EXIT_OK

    client = PlayalongClient(base_url=args.base_url)
    try:
        info = client.create_session(args.score_id, hand=args.hand)
        session_id = str(info.session_id)
        print(f"session_id={session_id}")

        if not midi.open():
            _print_err(midi.error_message or "MIDI input unavailable")
            return EXIT_INPUT_UNAVAILABLE
        print(f"listening on {midi.port_name}")

        # backend callback thread -> main thread
        inbox: "queue.Queue[PerformanceEvent]" = queue.Queue()
        unsubscribe = midi.subscribe(inbox.put)
        presses = 0
        try:
            while not args.max_notes or presses < args.max_notes:
                try:
                    ev = inbox.get(timeout=0.5)
                except queue.Empty:
                    continue
                # server stamps with its latest transport time
                result = client.send_event(session_id, pitch=ev.pitch, velocity=ev.velocity, kind=ev.kind)
                if ev.is_press:
                    presses += 1
                    _print_press(ev, result)
                    stats = client.get_stats(session_id)
                    print(
                        f"accuracy={stats.accuracy_percentage}% "
                        f"timing={stats.average_timing_offset_ms}ms "
                        f"played={stats.notes_played}"
                    )
        except KeyboardInterrupt:
            pass
        finally:
            unsubscribe()
            midi.close()

        stats = client.get_stats(session_id)
        print(stats.model_dump_json(indent=2))
        return EXIT_OK

    except (NetworkError, HTTPError) as e:
        _print_err(str(e))
        return EXIT_NETWORK_OR_HTTP
    except ContractError as e:
        _print_err(f"Contract error: {e}")
        return EXIT_NETWORK_OR_HTTP
    except ValueError as e:
        _print_err(str(e))
        return EXIT_BAD_ARGS
    finally:
        client.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "parse":
        return cmd_parse(args)
    if args.cmd == "query":
        return cmd_query(args)
    if args.cmd == "metronome":
        return cmd_metronome(args)
    if args.cmd == "practice":
        return cmd_practice(args)

    _print_err("Unknown command.")
    return EXIT_BAD_ARGS


if __name__ == "__main__":
    raise SystemExit(main())
