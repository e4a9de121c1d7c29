from __future__ import annotations

import itertools
import logging
from typing import Callable, Generic, List, Tuple, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., object])


class SubscriberList(Generic[F]):
    """
    Ordered callbacks.

    - emit() dispatches in subscription order over a snapshot, so callbacks may
      (un)subscribe while being called
    - a failing subscriber is logged and does not stop the others
    - subscribe() returns an unsubscribe callable bound to that one registration;
      calling it again is a no-op
    """

    def __init__(self, name: str = "subscribers") -> None:
        self._name = name
        self._seq = itertools.count()
        self._items: List[Tuple[int, F]] = []

    def __len__(self) -> int:
        return len(self._items)

    def subscribe(self, fn: F) -> Callable[[], None]:
        token = next(self._seq)
        self._items.append((token, fn))

        def _unsubscribe() -> None:
            self._items = [(t, f) for (t, f) in self._items if t != token]

        return _unsubscribe

    def clear(self) -> None:
        self._items = []

    def emit(self, *args: object) -> None:
        for _token, fn in list(self._items):
            try:
                fn(*args)
            except Exception as e:
                logger.warning("%s: subscriber %r failed: %s", self._name, fn, e, exc_info=True)
