"""
Change notifier: fans collection-change events out to registered observers.
"""
import logging
from typing import Callable, List, Sequence

from ..models.record import Record

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, List[Record]], None]


class ChangeNotifier:
    def __init__(self):
        self._callbacks: List[ChangeCallback] = []

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def publish(self, collection: str, records: Sequence[Record]) -> None:
        """Deliver ``records`` to every observer, in registration order."""
        logger.debug("Notifying %d observers of %s (%d records)", len(self._callbacks), collection, len(records))
        for callback in list(self._callbacks):
            try:
                callback(collection, list(records))
            except Exception:
                logger.exception("Change observer %r failed for %s", callback, collection)

    def __len__(self) -> int:
        return len(self._callbacks)
