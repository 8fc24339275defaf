"""In-memory index of feature extents keyed by feature id.

The tile read path asks the cache which features touch a tile envelope and
only then loads them from the store. The cache follows store mutations by
subscribing to the layer event bus; id remaps call rekey() directly so the
store and the cache change under the same lock.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from replica.core import events
from replica.db import models as db_models

if TYPE_CHECKING:
    from replica.db import features as db_features


class FeatureCache:
    def __init__(self, store: db_features.FeatureRepositoryProtocol) -> None:
        self._store = store
        self._extents: dict[int, db_models.BBox] = {}
        self._lock = threading.Lock()

    def __contains__(self, feature_id: int) -> bool:
        with self._lock:
            return feature_id in self._extents

    def __len__(self) -> int:
        with self._lock:
            return len(self._extents)

    def reload(self) -> None:
        extents = {feature.id: feature.bbox for feature in self._store.all()}
        with self._lock:
            self._extents = extents

    def put(self, feature: db_models.Feature) -> None:
        with self._lock:
            self._extents[feature.id] = feature.bbox

    def discard(self, feature_id: int) -> None:
        with self._lock:
            self._extents.pop(feature_id, None)

    def rekey(self, old_id: int, new_id: int) -> None:
        with self._lock:
            if old_id in self._extents:
                self._extents[new_id] = self._extents.pop(old_id)

    def query(self, envelope: db_models.Envelope) -> list[int]:
        with self._lock:
            return [
                feature_id
                for feature_id, bbox in self._extents.items()
                if envelope.intersects(bbox)
            ]

    def on_event(self, event: events.LayerEvent) -> None:
        """Event bus listener keeping the cache in step with the store."""
        kind = event.kind
        if kind in (events.EventKind.LAYER_RELOADED, events.EventKind.LAYER_CLEARED):
            self.reload()
        elif kind == events.EventKind.FEATURE_DELETED and event.feature_id is not None:
            self.discard(event.feature_id)
        elif kind == events.EventKind.FEATURE_ID_CHANGED:
            if event.old_feature_id is not None and event.feature_id is not None:
                self.rekey(event.old_feature_id, event.feature_id)
        elif event.feature_id is not None:
            feature = self._store.get(event.feature_id)
            if feature is not None:
                self.put(feature)
