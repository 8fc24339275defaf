"""Tests for VectorLayer edits and the layer registry.

Local edits must keep the store, the change queue, the photo folders and
the extent cache consistent with each other.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from shapely import geometry as shapely_geometry

from replica.core import errors, events
from replica.db import layer_config
from replica.db import models as db_models
from replica.services import remote

if TYPE_CHECKING:
    import pathlib

    from replica.services import layer as vector_layer

NEW = db_models.ChangeOperation.NEW
CHANGED = db_models.ChangeOperation.CHANGED
DELETE = db_models.ChangeOperation.DELETE


def test_create_feature_reprojects_and_queues(
    remote_layer: vector_layer.VectorLayer,
) -> None:
    feature = remote_layer.create_feature(
        shapely_geometry.Point(180, 0), {"name": "East"}, srid=db_models.CRS_WGS84
    )
    assert feature.id == -2
    assert feature.srid == db_models.CRS_WEB_MERCATOR
    assert feature.geometry.x == pytest.approx(db_models.MERCATOR_MAX, abs=0.01)
    assert remote_layer.queue.items() == [db_models.ChangeItem(-2, NEW)]
    assert -2 in remote_layer.cache


def test_update_unknown_feature(remote_layer: vector_layer.VectorLayer) -> None:
    missing = db_models.Feature(77, shapely_geometry.Point(0, 0))
    assert not remote_layer.update_feature(missing)
    assert len(remote_layer.queue) == 0


def test_create_then_delete_leaves_nothing(
    remote_layer: vector_layer.VectorLayer, tmp_path: pathlib.Path
) -> None:
    feature = remote_layer.create_feature(shapely_geometry.Point(0, 0))
    photo = tmp_path / "a.jpg"
    photo.write_bytes(b"jpeg")
    remote_layer.add_photo(feature.id, photo)

    assert remote_layer.delete_feature(feature.id)
    assert len(remote_layer.queue) == 0
    assert not remote_layer.photos.folder(feature.id).exists()
    assert feature.id not in remote_layer.cache
    assert not remote_layer.delete_feature(feature.id)


def test_update_and_delete_existing(remote_layer: vector_layer.VectorLayer) -> None:
    remote_layer.apply_remote(
        inserted=[db_models.Feature(5, shapely_geometry.Point(0, 0))]
    )
    assert len(remote_layer.queue) == 0

    moved = db_models.Feature(5, shapely_geometry.Point(1000, 1000))
    assert remote_layer.update_feature(moved)
    assert remote_layer.features_in(db_models.Envelope(900, 1100, 900, 1100)) == [moved]
    assert remote_layer.delete_feature(5)
    assert remote_layer.queue.items() == [db_models.ChangeItem(5, DELETE)]


def test_delete_all(remote_layer: vector_layer.VectorLayer) -> None:
    remote_layer.create_feature(shapely_geometry.Point(0, 0))
    remote_layer.create_feature(shapely_geometry.Point(1, 1))
    assert remote_layer.delete_all() == 2
    assert remote_layer.queue.items() == [
        db_models.ChangeItem(db_models.NOT_FOUND, DELETE)
    ]
    assert len(remote_layer.cache) == 0


def test_initialize_updates_document_and_publishes(
    remote_layer: vector_layer.VectorLayer,
) -> None:
    received: list[events.LayerEvent] = []
    remote_layer.events.subscribe(received.append)
    fields = [db_models.Field(db_models.FieldType.INTEGER, "n", "N")]
    count = remote_layer.initialize(
        fields, 4326, [db_models.Feature(1, shapely_geometry.Point(0, 0))]
    )
    assert count == 1
    document = remote_layer.document()
    assert document.initialized
    assert document.srid == 4326
    assert remote_layer.fields == fields
    assert [event.kind for event in received] == [events.EventKind.LAYER_RELOADED]


def test_remove_missing_photo(remote_layer: vector_layer.VectorLayer) -> None:
    assert not remote_layer.remove_photo(5, "nope.jpg")
    assert len(remote_layer.queue) == 0


def test_local_layer_does_not_queue(registry: vector_layer.LayerRegistry) -> None:
    local = registry.register(
        layer_config.LayerConfig(id="notes", name="Notes", kind="local_vector")
    )
    assert not local.is_remote
    assert local.document().sync_flags == db_models.SyncType.NONE
    local.create_feature(shapely_geometry.Point(0, 0))
    assert len(local.queue) == 0
    assert local.get_feature(-2) is not None


def test_registry_get_is_cached(registry: vector_layer.LayerRegistry) -> None:
    registry.register(layer_config.LayerConfig(id="a", name="A"))
    assert registry.get("a") is registry.get("a")
    assert [document.id for document in registry.all()] == ["a"]


def test_registry_unknown_layer(registry: vector_layer.LayerRegistry) -> None:
    with pytest.raises(errors.LayerNotFound):
        registry.get("missing")


def test_registry_client_for(registry: vector_layer.LayerRegistry) -> None:
    layer = registry.register(
        layer_config.LayerConfig(
            id="a", name="A", url="https://ngw.example.com", remote_id=9
        )
    )
    client = registry.client_for(layer)
    try:
        assert isinstance(client, remote.RemoteLayerClient)
        assert client.remote_id == 9
        assert client.is_network_available()
    finally:
        client.close()


def test_photo_folder_follows_settings(registry: vector_layer.LayerRegistry) -> None:
    layer = registry.register(layer_config.LayerConfig(id="a", name="A"))
    assert layer.photos.root == registry.settings.layer_dir("a")
