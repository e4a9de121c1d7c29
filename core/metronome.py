from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Callable, Optional, Protocol

import mido

from core.events import SubscriberList

logger = logging.getLogger(__name__)

DEFAULT_BPM = 74.0
DEFAULT_BEATS_PER_MEASURE = 4

TickCallback = Callable[[int], None]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class EventLoopLike(Protocol):
    """The part of asyncio.AbstractEventLoop the scheduler needs."""

    def time(self) -> float: ...

    def call_at(self, when: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


# ---------------------------
# Click output
# ---------------------------
class ClickPlayer(Protocol):
    def click(self, accent: bool) -> None: ...

    def close(self) -> None: ...


class NullClickPlayer:
    """Silent player (headless runs, tests)."""

    def __init__(self) -> None:
        self.clicks = 0

    def click(self, accent: bool) -> None:
        self.clicks += 1

    def close(self) -> None:
        pass


class MidiClickPlayer:
    """
    Click through a MIDI output port (GM percussion channel by default).

    The port is opened on first use. If it cannot be opened the player logs
    once and stays silent; ticks keep running.
    """

    def __init__(
        self,
        port_name: Optional[str] = None,
        *,
        channel: int = 9,
        note: int = 76,
        accent_note: int = 77,
        velocity: int = 100,
        opener: Optional[Callable[[Optional[str]], Any]] = None,
    ) -> None:
        self.port_name = port_name
        self.channel = channel
        self.note = note
        self.accent_note = accent_note
        self.velocity = velocity
        self._opener = opener or mido.open_output
        self._port: Any = None
        self._failed = False

    @property
    def available(self) -> bool:
        return not self._failed

    def _ensure_port(self) -> Any:
        if self._port is None and not self._failed:
            try:
                self._port = self._opener(self.port_name)
                logger.info("Metronome click output: %s", getattr(self._port, "name", self.port_name))
            except Exception as e:
                self._failed = True
                logger.warning("Metronome click output unavailable (%s): %s", self.port_name or "default", e)
        return self._port

    def click(self, accent: bool) -> None:
        port = self._ensure_port()
        if port is None:
            return
        note = self.accent_note if accent else self.note
        try:
            port.send(mido.Message("note_on", channel=self.channel, note=note, velocity=self.velocity))
            port.send(mido.Message("note_off", channel=self.channel, note=note, velocity=0))
        except Exception as e:
            logger.warning("Metronome click failed: %s", e)

    def close(self) -> None:
        port, self._port = self._port, None
        if port is None:
            return
        try:
            port.close()
        except Exception as e:
            logger.warning("Closing click output failed: %s", e)


# ---------------------------
# Scheduler
# ---------------------------
class MetronomeScheduler:
    """
    Fixed-rate beat generator.

    Stopped <-> Running. Ticks are scheduled on an event loop at
    anchor + n * interval; a tempo change re-anchors at the moment of the
    change, so the next tick comes one new interval later and the pending
    old-tempo tick is cancelled.

    Best-effort timing: this is an event-loop timer, not an audio clock.
    """

    def __init__(
        self,
        tempo: float = DEFAULT_BPM,
        *,
        beats_per_measure: int = DEFAULT_BEATS_PER_MEASURE,
        click_player: Optional[ClickPlayer] = None,
        loop: Optional[EventLoopLike] = None,
    ) -> None:
        self._tempo = self._check_tempo(tempo)
        if beats_per_measure < 1:
            raise ValueError("beats_per_measure must be >= 1")
        self._beats_per_measure = int(beats_per_measure)
        self._click = click_player or NullClickPlayer()
        self._loop = loop

        self._running = False
        self._closed = False
        self._beat = 0
        self._anchor = 0.0
        self._n = 0
        self._handle: Optional[TimerHandle] = None

        self.ticks: SubscriberList[TickCallback] = SubscriberList("metronome.ticks")

    @staticmethod
    def _check_tempo(bpm: float) -> float:
        bpm = float(bpm)
        if not math.isfinite(bpm) or bpm <= 0:
            raise ValueError(f"tempo must be > 0 BPM, got {bpm}")
        return bpm

    # ----------------------------
    # Read
    # ----------------------------
    @property
    def tempo(self) -> float:
        return self._tempo

    @property
    def beats_per_measure(self) -> int:
        return self._beats_per_measure

    @property
    def interval_ms(self) -> float:
        return 60000.0 / self._tempo

    @property
    def current_beat(self) -> int:
        return self._beat

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(self, fn: TickCallback) -> Callable[[], None]:
        return self.ticks.subscribe(fn)

    # ----------------------------
    # Lifecycle
    # ----------------------------
    def _get_loop(self) -> EventLoopLike:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def start(self) -> None:
        if self._running:
            return
        if self._closed:
            raise RuntimeError("Cannot start(): metronome is closed")

        loop = self._get_loop()
        self._running = True
        self._beat = 0
        self._anchor = loop.time()
        self._n = 0
        self._schedule_next()
        logger.info("Metronome started @ %.2f BPM (%.1f ms)", self._tempo, self.interval_ms)

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._cancel_pending()
        logger.info("Metronome stopped at beat %s", self._beat)

    def set_tempo(self, bpm: float) -> None:
        self._tempo = self._check_tempo(bpm)
        if not self._running:
            return
        self._cancel_pending()
        self._anchor = self._get_loop().time()
        self._n = 0
        self._schedule_next()
        logger.info("Metronome tempo -> %.2f BPM (%.1f ms)", self._tempo, self.interval_ms)

    def set_beats_per_measure(self, beats: int) -> None:
        if beats < 1:
            raise ValueError("beats_per_measure must be >= 1")
        self._beats_per_measure = int(beats)

    def close(self) -> None:
        if self._closed:
            return
        self.stop()
        self._closed = True
        self.ticks.clear()
        self._click.close()

    # ----------------------------
    # Internals
    # ----------------------------
    def _cancel_pending(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()

    def _schedule_next(self) -> None:
        loop = self._get_loop()
        interval_s = 60.0 / self._tempo
        self._n += 1
        when = self._anchor + self._n * interval_s

        # after a stall, skip the missed slots instead of firing a burst
        now = loop.time()
        if when < now:
            self._n = int((now - self._anchor) / interval_s) + 1
            when = self._anchor + self._n * interval_s

        self._handle = loop.call_at(when, self._tick)

    def _tick(self) -> None:
        self._handle = None
        if not self._running:
            return

        self._beat = (self._beat % self._beats_per_measure) + 1
        try:
            self._click.click(self._beat == 1)
        except Exception as e:
            logger.warning("Metronome click error: %s", e)

        self.ticks.emit(self._beat)

        # a subscriber may have stopped or re-tempoed us
        if self._running and self._handle is None:
            self._schedule_next()
