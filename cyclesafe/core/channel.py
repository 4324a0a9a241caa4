from __future__ import annotations

import logging
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], None]
Unsubscribe = Callable[[], None]


class PublishChannel(Generic[T]):
    """
    In-process publish/subscribe for one kind of event.

    Each component owns its channels (no global event namespace). A listener
    that raises is logged and skipped; it never prevents delivery to the
    others or breaks the publisher.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: List[Listener] = []

    def subscribe(self, fn: Listener) -> Unsubscribe:
        self._listeners.append(fn)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(fn)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, value: T) -> None:
        # Copy: listeners may unsubscribe while being notified.
        for fn in list(self._listeners):
            try:
                fn(value)
            except Exception:
                logger.exception("[channel:%s] listener failed", self.name)

    def __len__(self) -> int:
        return len(self._listeners)
