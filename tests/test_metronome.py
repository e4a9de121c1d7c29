from __future__ import annotations

from typing import List

import mido
import pytest

from core.metronome import MetronomeScheduler, MidiClickPlayer, NullClickPlayer


class RecordingPlayer:
    def __init__(self, fail: bool = False) -> None:
        self.accents: List[bool] = []
        self.closed = 0
        self.fail = fail

    def click(self, accent: bool) -> None:
        self.accents.append(accent)
        if self.fail:
            raise RuntimeError("audio device gone")

    def close(self) -> None:
        self.closed += 1


class FakePort:
    def __init__(self, name: str = "Fake Out") -> None:
        self.name = name
        self.sent: List[mido.Message] = []
        self.closed = 0

    def send(self, msg: mido.Message) -> None:
        self.sent.append(msg)

    def close(self) -> None:
        self.closed += 1


def _collect(met: MetronomeScheduler, loop) -> List[tuple]:
    seen: List[tuple] = []
    met.subscribe(lambda beat: seen.append((round(loop.time(), 6), beat)))
    return seen


# ---- scheduling ----
def test_interval_and_beats(fake_loop):
    met = MetronomeScheduler(120, loop=fake_loop)
    assert met.interval_ms == 500.0
    seen = _collect(met, fake_loop)

    met.start()
    assert met.is_running
    assert met.current_beat == 0
    fake_loop.advance(2.0)
    assert seen == [(0.5, 1), (1.0, 2), (1.5, 3), (2.0, 4)]


def test_beat_wraps_per_measure(fake_loop):
    met = MetronomeScheduler(60, beats_per_measure=3, loop=fake_loop)
    seen = _collect(met, fake_loop)
    met.start()
    fake_loop.advance(5.0)
    assert [b for _, b in seen] == [1, 2, 3, 1, 2]


def test_start_is_idempotent(fake_loop):
    met = MetronomeScheduler(120, loop=fake_loop)
    seen = _collect(met, fake_loop)
    met.start()
    met.start()
    assert len(fake_loop.live()) == 1
    fake_loop.advance(1.0)
    assert len(seen) == 2


def test_stop_cancels_and_keeps_beat(fake_loop):
    met = MetronomeScheduler(120, loop=fake_loop)
    seen = _collect(met, fake_loop)
    met.start()
    fake_loop.advance(1.0)
    met.stop()
    met.stop()
    assert not met.is_running
    assert fake_loop.live() == []

    fake_loop.advance(3.0)
    assert len(seen) == 2
    assert met.current_beat == 2


def test_restart_resets_beat(fake_loop):
    met = MetronomeScheduler(120, loop=fake_loop)
    seen = _collect(met, fake_loop)
    met.start()
    fake_loop.advance(1.5)
    met.stop()
    met.start()
    assert met.current_beat == 0
    fake_loop.advance(0.5)
    assert seen[-1] == (2.0, 1)


def test_repeated_cycles_leave_one_timer(fake_loop):
    met = MetronomeScheduler(100, loop=fake_loop)
    for _ in range(20):
        met.start()
        fake_loop.advance(0.3)
        met.stop()
    assert fake_loop.live() == []


def test_tempo_change_reschedules_without_double_fire(fake_loop):
    met = MetronomeScheduler(120, loop=fake_loop)
    seen = _collect(met, fake_loop)
    met.start()
    fake_loop.advance(1.2)

    met.set_tempo(80)
    assert met.interval_ms == 750.0
    assert len(fake_loop.live()) == 1

    fake_loop.advance(1.6)
    # old 1.5 tick never fires; new ticks land 750ms apart from the change
    assert [t for t, _ in seen] == [0.5, 1.0, 1.95, 2.7]
    assert [b for _, b in seen] == [1, 2, 3, 4]


def test_tempo_change_while_stopped(fake_loop):
    met = MetronomeScheduler(120, loop=fake_loop)
    met.set_tempo(60)
    assert met.tempo == 60
    assert fake_loop.live() == []


@pytest.mark.parametrize("bpm", [0, -5, float("nan"), float("inf")])
def test_invalid_tempo(bpm, fake_loop):
    with pytest.raises(ValueError):
        MetronomeScheduler(bpm, loop=fake_loop)
    met = MetronomeScheduler(120, loop=fake_loop)
    with pytest.raises(ValueError):
        met.set_tempo(bpm)
    assert met.tempo == 120


def test_invalid_beats_per_measure(fake_loop):
    with pytest.raises(ValueError):
        MetronomeScheduler(120, beats_per_measure=0, loop=fake_loop)


def test_stall_skips_missed_slots(fake_loop):
    met = MetronomeScheduler(60, loop=fake_loop)
    met.start()
    handle = fake_loop.live()[0]
    assert handle.when == 1.0

    # loop was blocked: the 1.0 tick only runs at 5.5
    fake_loop.pending.remove(handle)
    fake_loop.now = 5.5
    handle.callback(*handle.args)

    assert met.current_beat == 1
    assert [h.when for h in fake_loop.live()] == [6.0]


def test_subscriber_may_stop_the_metronome(fake_loop):
    met = MetronomeScheduler(120, loop=fake_loop)
    seen: List[int] = []

    def on_tick(beat: int) -> None:
        seen.append(beat)
        if beat == 2:
            met.stop()

    met.subscribe(on_tick)
    met.start()
    fake_loop.advance(3.0)
    assert seen == [1, 2]
    assert fake_loop.live() == []


def test_subscriber_order_and_unsubscribe(fake_loop):
    met = MetronomeScheduler(120, loop=fake_loop)
    calls: List[str] = []
    met.subscribe(lambda b: calls.append("a"))
    unsub = met.subscribe(lambda b: calls.append("b"))
    met.subscribe(lambda b: calls.append("c"))

    met.start()
    fake_loop.advance(0.5)
    unsub()
    unsub()
    fake_loop.advance(0.5)
    assert calls == ["a", "b", "c", "a", "c"]


# ---- click output ----
def test_accent_on_first_beat(fake_loop):
    player = RecordingPlayer()
    met = MetronomeScheduler(120, beats_per_measure=4, click_player=player, loop=fake_loop)
    met.start()
    fake_loop.advance(2.5)
    assert player.accents == [True, False, False, False, True]


def test_click_errors_do_not_stop_ticks(fake_loop):
    player = RecordingPlayer(fail=True)
    met = MetronomeScheduler(120, click_player=player, loop=fake_loop)
    seen = _collect(met, fake_loop)
    met.start()
    fake_loop.advance(1.5)
    assert len(seen) == 3


def test_close_is_idempotent(fake_loop):
    player = RecordingPlayer()
    met = MetronomeScheduler(120, click_player=player, loop=fake_loop)
    met.start()
    met.close()
    met.close()
    assert player.closed == 1
    assert not met.is_running
    assert fake_loop.live() == []
    with pytest.raises(RuntimeError):
        met.start()


def test_null_player_counts():
    p = NullClickPlayer()
    p.click(True)
    p.click(False)
    p.close()
    assert p.clicks == 2


def test_midi_click_player_sends_note_pairs():
    port = FakePort()
    opened: List[object] = []

    def opener(name):
        opened.append(name)
        return port

    player = MidiClickPlayer("Click", channel=9, note=76, accent_note=77, velocity=90, opener=opener)
    player.click(True)
    player.click(False)

    assert opened == ["Click"]
    assert [(m.type, m.note, m.channel) for m in port.sent] == [
        ("note_on", 77, 9),
        ("note_off", 77, 9),
        ("note_on", 76, 9),
        ("note_off", 76, 9),
    ]
    assert port.sent[0].velocity == 90

    player.close()
    player.close()
    assert port.closed == 1


def test_midi_click_player_degrades_when_port_missing():
    calls: List[object] = []

    def opener(name):
        calls.append(name)
        raise OSError("no such port")

    player = MidiClickPlayer(None, opener=opener)
    player.click(True)
    player.click(False)
    assert calls == [None]
    assert player.available is False
    player.close()


def test_change_beats_per_measure_mid_run(fake_loop):
    met = MetronomeScheduler(60, beats_per_measure=4, loop=fake_loop)
    seen = _collect(met, fake_loop)
    met.start()
    fake_loop.advance(2.0)

    met.set_beats_per_measure(3)
    assert met.beats_per_measure == 3
    fake_loop.advance(3.0)
    assert [b for _, b in seen] == [1, 2, 3, 1, 2]

    with pytest.raises(ValueError):
        met.set_beats_per_measure(0)
    assert met.beats_per_measure == 3
