"""
In-process listener registry.

Callbacks are registered per kind and invoked synchronously with the
refreshed collection snapshot after every local mutation of that kind.
"""

import logging
from typing import Callable

from .types import Kind, Record

logger = logging.getLogger(__name__)

Listener = Callable[[list[Record]], None]
Unsubscribe = Callable[[], None]


class ListenerRegistry:
    """Per-kind sets of snapshot callbacks, owned by one Notebook."""

    def __init__(self):
        self._listeners: dict[Kind, list[Listener]] = {}

    def add(self, kind: Kind, callback: Listener) -> Unsubscribe:
        """
        Register a callback for a kind.

        Returns:
            A function that removes the callback. Calling it more than
            once is harmless.
        """
        kind = Kind.parse(kind)
        listeners = self._listeners.setdefault(kind, [])
        if callback not in listeners:
            listeners.append(callback)

        def unsubscribe() -> None:
            try:
                self._listeners.get(kind, []).remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def count(self, kind: Kind) -> int:
        return len(self._listeners.get(Kind.parse(kind), []))

    def notify(self, kind: Kind, snapshot: list[Record]) -> None:
        """Deliver a snapshot to every callback registered for kind.

        A failing callback is logged and does not stop delivery to the rest.
        """
        kind = Kind.parse(kind)
        for callback in list(self._listeners.get(kind, [])):
            try:
                callback(list(snapshot))
            except Exception as e:
                logger.warning("Listener for %s failed: %s", kind.value, e, exc_info=True)

    def notify_one(self, callback: Listener, snapshot: list[Record]) -> None:
        """Deliver a snapshot to a single callback (initial delivery)."""
        try:
            callback(list(snapshot))
        except Exception as e:
            logger.warning("Listener failed on initial snapshot: %s", e, exc_info=True)

    def clear(self) -> None:
        self._listeners.clear()
