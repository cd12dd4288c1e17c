"""Listener lists whose members fail independently."""

from __future__ import annotations

import logging
from typing import Any, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

ListenerT = TypeVar("ListenerT", bound=Callable[..., Any])


class ListenerSet(Generic[ListenerT]):
    """Ordered set of callbacks; one raising listener never stops the others."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: list[ListenerT] = []

    def add(self, listener: ListenerT) -> Callable[[], None]:
        if listener not in self._listeners:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            self.remove(listener)

        return unsubscribe

    def remove(self, listener: ListenerT) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)

    def notify(self, *args: Any) -> int:
        """Call every listener; returns how many raised."""
        failures = 0
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception:
                failures += 1
                logger.exception("Error in %s listener %r", self._name, listener)
        return failures
