"""Coalesced structural-version counter.

A dirty flag drained on the next event-loop iteration: any number of
``mark()`` calls inside one turn of the loop become a single visible
increment once control returns to the scheduler.
"""

import asyncio
from collections.abc import Callable

from loomtree.core.logging import get_logger

logger = get_logger(__name__)

VersionListener = Callable[[int], None]


class StructureSignal:
    """Monotonic version counter with one increment per loop turn."""

    def __init__(self) -> None:
        self._version = 0
        self._scheduled = False
        self._listeners: list[VersionListener] = []

    @property
    def version(self) -> int:
        return self._version

    @property
    def pending(self) -> bool:
        return self._scheduled

    def mark(self) -> None:
        """Record a structural change.

        Without a running loop there is no turn to coalesce across, so the
        increment is applied immediately.
        """
        if self._scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._drain()
            return
        self._scheduled = True
        loop.call_soon(self._drain)

    def subscribe(self, listener: VersionListener) -> Callable[[], None]:
        """Call ``listener(version)`` after every visible increment. Returns an unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _drain(self) -> None:
        self._scheduled = False
        self._version += 1
        for listener in list(self._listeners):
            try:
                listener(self._version)
            except Exception:
                logger.exception(f"Structure listener failed at version {self._version}")
