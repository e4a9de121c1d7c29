"""
Live performance input from a MIDI device.

The session is an explicitly owned object: open() acquires the port,
close() releases it. When the backend is missing or no device is present,
the session reports supported=False with a message instead of raising, and
the rest of the app keeps working without live matching.

Events are stamped with the session clock (time.monotonic by default); a
PracticeSession re-bases them onto transport time when it consumes them.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, List, Optional, Sequence, Union

import mido

from core.events import SubscriberList
from core.score_models import EventKind, PerformanceEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[PerformanceEvent], None]


class InputUnavailable(RuntimeError):
    """MIDI input not supported on this machine, or access was denied."""


def decode_message(msg: "mido.Message", timestamp: float) -> Optional[PerformanceEvent]:
    """
    note_on vel>0 -> press; note_off / note_on vel 0 -> release; else None.
    """
    if msg.type == "note_on":
        kind = EventKind.note_on if msg.velocity > 0 else EventKind.note_off
    elif msg.type == "note_off":
        kind = EventKind.note_off
    else:
        return None
    velocity = int(msg.velocity) if kind == EventKind.note_on else 0
    return PerformanceEvent(pitch=int(msg.note), velocity=velocity, timestamp=float(timestamp), kind=kind)


def decode_midi_bytes(data: Union[bytes, Sequence[int]], timestamp: float) -> Optional[PerformanceEvent]:
    """Decode one raw MIDI message (status 0x80-0x9F carry notes)."""
    try:
        msg = mido.Message.from_bytes(list(data))
    except (ValueError, TypeError) as e:
        logger.debug("Ignoring undecodable MIDI bytes %r: %s", data, e)
        return None
    return decode_message(msg, timestamp)


class MidiInputSession:
    """
    Owns one MIDI input port.

    backend: anything with get_input_names() and open_input(name, callback=...)
    (the mido module by default).
    """

    def __init__(
        self,
        port_name: Optional[str] = None,
        *,
        backend: Any = None,
        clock: Callable[[], float] = time.monotonic,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.requested_port = port_name
        self.port_name: Optional[str] = None
        self._backend = backend if backend is not None else mido
        self._clock = clock
        self._loop = loop
        self._port: Any = None

        self.supported = False
        self.error_message: Optional[str] = None
        self.events: SubscriberList[EventCallback] = SubscriberList("midi_input.events")

    # ----------------------------
    # Lifecycle
    # ----------------------------
    @property
    def is_open(self) -> bool:
        return self._port is not None

    def available_inputs(self) -> List[str]:
        try:
            return list(self._backend.get_input_names())
        except Exception as e:
            logger.warning("MIDI input enumeration failed: %s", e)
            return []

    def open(self) -> bool:
        """
        Returns the capability flag. Never raises for missing backend/devices.
        """
        if self._port is not None:
            return True

        try:
            names = list(self._backend.get_input_names())
        except Exception as e:
            return self._unavailable(f"MIDI input is not supported: {e}")

        if self.requested_port is not None:
            if self.requested_port not in names:
                return self._unavailable(f"MIDI input port not found: {self.requested_port}")
            name = self.requested_port
        elif names:
            name = names[0]
        else:
            return self._unavailable("No MIDI input devices available")

        try:
            self._port = self._backend.open_input(name, callback=self._on_message)
        except Exception as e:
            return self._unavailable(f"Failed to open MIDI input {name!r}: {e}")

        self.port_name = name
        self.supported = True
        self.error_message = None
        logger.info("MIDI input opened: %s", name)
        return True

    def require(self) -> None:
        """open() variant for callers that cannot continue without input."""
        if not self.open():
            raise InputUnavailable(self.error_message or "MIDI input unavailable")

    def close(self) -> None:
        port, self._port = self._port, None
        if port is None:
            return
        try:
            port.close()
        except Exception as e:
            logger.warning("Closing MIDI input %s failed: %s", self.port_name, e)
        logger.info("MIDI input closed: %s", self.port_name)

    def __enter__(self) -> "MidiInputSession":
        self.open()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _unavailable(self, message: str) -> bool:
        self.supported = False
        self.error_message = message
        logger.warning(message)
        return False

    # ----------------------------
    # Dispatch
    # ----------------------------
    def subscribe(self, fn: EventCallback) -> Callable[[], None]:
        return self.events.subscribe(fn)

    def _on_message(self, msg: "mido.Message") -> None:
        # backend callback thread: stamp now, hand over to the loop if we have one
        stamp = self._clock()
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.feed, msg, stamp)
        else:
            self.feed(msg, stamp)

    def feed(self, msg: "mido.Message", timestamp: Optional[float] = None) -> Optional[PerformanceEvent]:
        ev = decode_message(msg, self._clock() if timestamp is None else timestamp)
        if ev is not None:
            self.events.emit(ev)
        return ev
