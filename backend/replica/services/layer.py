"""Vector layer composition and the registry of known layers.

A VectorLayer is not a class hierarchy: it composes the capabilities every
layer variant shares (layer document, feature store, change queue, photo
folders, extent cache, event bus) and selects behaviour through the
``kind`` tag of its document. Only "remote_vector" layers download and
synchronize; "local_vector" layers are edited without queueing changes.

Local edits go through VectorLayer so that the store mutation, the queued
change and the published event always happen together.

Two locks guard a layer:

* ``sync_lock`` serializes download and sync passes;
* ``id_lock`` makes an id remap a single step for readers of the store,
  cache and photo folders, and pairs every local store write with its
  queued change.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

from replica.core import events
from replica.db import features as db_features
from replica.db import layer_config
from replica.db import models as db_models
from replica.services import cache as feature_cache
from replica.services import change_queue
from replica.services import photos as photo_store
from replica.services import remote
from replica.utils import geometry as geometry_utils

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Callable, Iterable

    from shapely.geometry.base import BaseGeometry

    from replica.core import config

logger = logging.getLogger(__name__)


class VectorLayer:
    """One replicated (or purely local) vector layer."""

    def __init__(
        self,
        layer_id: str,
        configs: layer_config.LayerConfigRepositoryProtocol,
        store: db_features.FeatureRepositoryProtocol,
        photos: photo_store.PhotoStore,
        bus: events.EventBus | None = None,
    ) -> None:
        self.id = layer_id
        self.store = store
        self.photos = photos
        self.events = bus or events.EventBus()
        self.queue = change_queue.ChangeQueue(layer_id, configs)
        self.cache = feature_cache.FeatureCache(store)
        self.cache.reload()
        self.events.subscribe(self.cache.on_event)
        self.sync_lock = threading.RLock()
        self.id_lock = threading.RLock()

    def document(self) -> layer_config.LayerConfig:
        return self.queue.document()

    @property
    def kind(self) -> db_models.LayerKind:
        return self.document().kind

    @property
    def is_remote(self) -> bool:
        return self.kind == "remote_vector"

    @property
    def fields(self) -> list[db_models.Field]:
        return self.document().schema()

    def _publish(
        self,
        kind: events.EventKind,
        feature_id: int | None = None,
        old_feature_id: int | None = None,
    ) -> None:
        self.events.publish(
            events.LayerEvent(kind, self.id, feature_id, old_feature_id)
        )

    def initialize(
        self,
        fields: Iterable[db_models.Field],
        srid: int,
        features: Iterable[db_models.Feature],
    ) -> int:
        """Replace the layer content with a freshly downloaded feature set."""
        fields = list(fields)

        def apply(document: layer_config.LayerConfig) -> None:
            document.set_schema(fields)
            document.srid = srid
            document.initialized = True

        with self.id_lock:
            self.store.set_schema(fields)
            count = self.store.initialize(features)
            self.queue.edit_document(apply)
        self._publish(events.EventKind.LAYER_RELOADED)
        logger.info("Layer %s initialized with %d features", self.id, count)
        return count

    def get_feature(self, feature_id: int) -> db_models.Feature | None:
        with self.id_lock:
            return self.store.get(feature_id)

    def features_in(self, envelope: db_models.Envelope) -> list[db_models.Feature]:
        """Features whose extent touches an envelope, looked up via the cache."""
        with self.id_lock:
            found = (self.store.get(fid) for fid in self.cache.query(envelope))
            return [feature for feature in found if feature is not None]

    def create_feature(
        self,
        geometry: BaseGeometry,
        attributes: dict[str, Any] | None = None,
        srid: int = db_models.CRS_WEB_MERCATOR,
    ) -> db_models.Feature:
        geometry = geometry_utils.reproject(
            geometry, srid, db_models.CRS_WEB_MERCATOR
        )
        feature = db_models.Feature(
            id=db_models.NOT_FOUND,
            geometry=geometry,
            srid=db_models.CRS_WEB_MERCATOR,
            attributes=dict(attributes or {}),
        )
        with self.id_lock:
            feature = self.store.insert(feature)
            self.queue.record(feature.id, db_models.ChangeOperation.NEW)
        self._publish(events.EventKind.FEATURE_INSERTED, feature.id)
        return feature

    def update_feature(self, feature: db_models.Feature) -> bool:
        with self.id_lock:
            if not self.store.update(feature):
                return False
            self.queue.record(feature.id, db_models.ChangeOperation.CHANGED)
        self._publish(events.EventKind.FEATURE_UPDATED, feature.id)
        return True

    def delete_feature(self, feature_id: int) -> bool:
        with self.id_lock:
            if not self.store.delete(feature_id):
                return False
            self.photos.delete_folder(feature_id)
            self.queue.record(feature_id, db_models.ChangeOperation.DELETE)
        self._publish(events.EventKind.FEATURE_DELETED, feature_id)
        return True

    def delete_all(self) -> int:
        with self.id_lock:
            count = self.store.delete_all()
            self.queue.record(db_models.NOT_FOUND, db_models.ChangeOperation.DELETE)
        self._publish(events.EventKind.LAYER_CLEARED)
        return count

    def add_photo(
        self, feature_id: int, source: pathlib.Path, name: str | None = None
    ) -> str:
        with self.id_lock:
            stored = self.photos.add(feature_id, source, name)
            self.queue.record_photo(feature_id, stored, db_models.ChangeOperation.NEW)
        return stored

    def remove_photo(self, feature_id: int, name: str) -> bool:
        with self.id_lock:
            if not self.photos.remove(feature_id, name):
                return False
            self.queue.record_photo(feature_id, name, db_models.ChangeOperation.DELETE)
        return True

    def apply_remote(
        self,
        inserted: Iterable[db_models.Feature] = (),
        updated: Iterable[db_models.Feature] = (),
        deleted: Iterable[int] = (),
    ) -> int:
        """Apply pulled remote changes without queueing them for push."""
        count = 0
        for feature in inserted:
            with self.id_lock:
                self.store.insert(feature)
            self._publish(events.EventKind.FEATURE_INSERTED, feature.id)
            count += 1
        for feature in updated:
            with self.id_lock:
                changed = self.store.update(feature)
            if changed:
                self._publish(events.EventKind.FEATURE_UPDATED, feature.id)
                count += 1
        for feature_id in deleted:
            with self.id_lock:
                removed = self.store.delete(feature_id)
                self.photos.delete_folder(feature_id)
            if removed:
                self._publish(events.EventKind.FEATURE_DELETED, feature_id)
                count += 1
        return count


def network_probe(settings: config.Settings) -> Callable[[], bool]:
    return lambda: not settings.offline


def default_client_factory(
    settings: config.Settings,
) -> Callable[[layer_config.LayerConfig], remote.RemoteLayerClient]:
    """Build RemoteLayerClient instances from layer documents."""

    def factory(document: layer_config.LayerConfig) -> remote.RemoteLayerClient:
        return remote.RemoteLayerClient(
            document.url,
            document.remote_id,
            login=document.login,
            password=document.password,
            timeout=settings.request_timeout,
            network_available=network_probe(settings),
        )

    return factory


class LayerRegistry:
    """Open layers by id, creating each VectorLayer once per process."""

    def __init__(
        self,
        settings: config.Settings,
        configs: layer_config.LayerConfigRepositoryProtocol,
        store_factory: Callable[
            [str, list[db_models.Field]], db_features.FeatureRepositoryProtocol
        ]
        | None = None,
        client_factory: Callable[
            [layer_config.LayerConfig], remote.RemoteLayerClient
        ]
        | None = None,
    ) -> None:
        self.settings = settings
        self.configs = configs
        self._store_factory = store_factory or (
            lambda layer_id, fields: db_features.get_feature_repository(
                settings, layer_id, fields
            )
        )
        self.client_factory = client_factory or default_client_factory(settings)
        self._layers: dict[str, VectorLayer] = {}
        self._lock = threading.Lock()

    def register(self, document: layer_config.LayerConfig) -> VectorLayer:
        """Store a layer document and return its layer.

        An already open layer keeps its store, cache and queued changes;
        only the document settings are replaced.
        """
        if document.kind == "local_vector":
            document.sync_type = int(db_models.SyncType.NONE)
        with self._lock:
            layer = self._layers.get(document.id)
        if layer is None:
            self.configs.save(document)
            return self.get(document.id)

        replaced = layer_config.LayerConfig.model_fields.keys() - {
            "changes",
            "pending_remaps",
        }

        def apply(current: layer_config.LayerConfig) -> None:
            for name in replaced:
                setattr(current, name, getattr(document, name))

        layer.queue.edit_document(apply)
        layer.queue.sync_type = document.sync_flags
        return layer

    def get(self, layer_id: str) -> VectorLayer:
        with self._lock:
            layer = self._layers.get(layer_id)
            if layer is None:
                document = layer_config.require(self.configs, layer_id)
                layer = VectorLayer(
                    layer_id,
                    self.configs,
                    self._store_factory(layer_id, document.schema()),
                    photo_store.PhotoStore(self.settings.layer_dir(layer_id)),
                )
                self._layers[layer_id] = layer
            return layer

    def all(self) -> Iterable[layer_config.LayerConfig]:
        return self.configs.all()

    def client_for(self, layer: VectorLayer) -> remote.RemoteLayerClient:
        return self.client_factory(layer.document())
