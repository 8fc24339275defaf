"""Explicit change notification for layer mutations.

Services publish a LayerEvent whenever local data changes; observers such
as the feature cache subscribe with a plain callable.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class EventKind(enum.Enum):
    FEATURE_INSERTED = "feature_inserted"
    FEATURE_UPDATED = "feature_updated"
    FEATURE_DELETED = "feature_deleted"
    FEATURE_ID_CHANGED = "feature_id_changed"
    LAYER_RELOADED = "layer_reloaded"
    LAYER_CLEARED = "layer_cleared"


@dataclasses.dataclass(frozen=True)
class LayerEvent:
    kind: EventKind
    layer_id: str
    feature_id: int | None = None
    old_feature_id: int | None = None


class EventBus:
    """Fan out LayerEvent objects to subscribed callables.

    A failing listener is logged and does not prevent the remaining
    listeners from being notified.
    """

    def __init__(self) -> None:
        self._listeners: list[Callable[[LayerEvent], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[[LayerEvent], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[LayerEvent], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event: LayerEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed on %s", event.kind.value)
