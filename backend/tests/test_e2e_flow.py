"""End-to-end test of the offline editing workflow.

This module verifies the integrated flow of:
- Layer registration through the API with documents stored on disk,
- Download of a remote layer into the local replica,
- Local edits while offline, queued and persisted across a restart,
- A sync pass once the network is back, remapping new feature ids,
- Tile queries reading the synchronized replica.

The remote server is an httpx.MockTransport fake and the feature store is
in memory, so the test needs neither network nor database.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any

import httpx
from fastapi import testclient
from shapely import geometry as shapely_geometry

from replica import main
from replica.api import layers as api_layers
from replica.core import config
from replica.db import features as db_features
from replica.db import layer_config
from replica.db import models as db_models
from replica.services import layer as vector_layer
from replica.services import remote, worker

if TYPE_CHECKING:
    import pathlib

M = db_models.MERCATOR_MAX


class Server:
    def __init__(self) -> None:
        self.online = True
        self.next_id = 1000
        self.features: dict[int, dict[str, Any]] = {
            1: {"id": 1, "geom": "POINT (-1000 1000)", "fields": {"name": "well"}},
            2: {"id": 2, "geom": "POINT (2000 2000)", "fields": {"name": "pump"}},
        }
        self.uploads: list[int] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/resource/42":
            return httpx.Response(
                200,
                json={
                    "feature_layer": {
                        "fields": [
                            {"datatype": "STRING", "display_name": "Name", "keyname": "name"}
                        ]
                    },
                    "vector_layer": {"srs": {"id": 3857}},
                },
            )
        if path == "/resource/42/store/" and request.method == "POST":
            feature_id = self.next_id
            self.next_id += 1
            self.features[feature_id] = {"id": feature_id, **json.loads(request.content)}
            return httpx.Response(200, json={"id": feature_id})
        if path in ("/api/resource/42/feature/", "/resource/42/store/"):
            return httpx.Response(200, json=list(self.features.values()))

        match = re.fullmatch(r"/api/resource/42/feature/(\d+)(/attachment/.*)?", path)
        assert match is not None, path
        feature_id = int(match.group(1))
        if match.group(2):
            self.uploads.append(feature_id)
        elif request.method == "PUT":
            self.features[feature_id] = {"id": feature_id, **json.loads(request.content)}
        elif request.method == "DELETE":
            del self.features[feature_id]
        return httpx.Response(200, json={})


def _registry(
    settings: config.Settings,
    server: Server,
    store: db_features.InMemoryFeatureRepository,
) -> vector_layer.LayerRegistry:
    return vector_layer.LayerRegistry(
        settings,
        layer_config.get_layer_config_repository(settings.layers_dir),
        store_factory=lambda _layer_id, _fields: store,
        client_factory=lambda document: remote.RemoteLayerClient(
            document.url,
            document.remote_id,
            transport=httpx.MockTransport(server.handle),
            network_available=lambda: server.online,
        ),
    )


def test_full_flow(tmp_path: pathlib.Path) -> None:
    """Register, download, edit offline, restart, sync and read tiles."""
    settings = config.Settings(storage_dir=tmp_path / "replica")
    settings.ensure_directories()
    server = Server()
    store = db_features.InMemoryFeatureRepository()
    registry = _registry(settings, server, store)
    layer_worker = worker.LayerWorker(registry)

    app = main.create_app()
    app.dependency_overrides[api_layers.get_registry] = lambda: registry
    app.dependency_overrides[api_layers.get_worker] = lambda: layer_worker
    app.dependency_overrides[config.get_settings] = lambda: settings
    client = testclient.TestClient(app)
    try:
        response = client.post(
            "/api/layers",
            json={
                "id": "wells",
                "name": "Wells",
                "url": "https://ngw.example.com",
                "remote_id": 42,
            },
        )
        assert response.status_code == 201
        assert client.post("/api/layers/wells/download").json() == {"imported": 2}

        # Offline edits.
        server.online = False
        layer = registry.get("wells")
        created = layer.create_feature(shapely_geometry.Point(-3000, 3000), {"name": "tank"})
        photo = tmp_path / "tank.jpg"
        photo.write_bytes(b"jpeg")
        layer.add_photo(created.id, photo)
        pump = layer.get_feature(2)
        assert pump is not None
        pump.attributes = {"name": "big pump"}
        layer.update_feature(pump)
        layer.delete_feature(1)

        offline = client.post("/api/layers/wells/sync").json()
        assert offline["stats"]["pushed"] == 0
        assert len(client.get("/api/layers/wells/changes").json()) == 3
    finally:
        app.dependency_overrides.clear()
        layer_worker.shutdown()

    # Restart: the queue comes back from the layer document on disk.
    restarted = _registry(settings, server, store)
    layer = restarted.get("wells")
    assert [(item.feature_id, item.operation) for item in layer.queue.items()] == [
        (-2, db_models.ChangeOperation.NEW),
        (2, db_models.ChangeOperation.CHANGED),
        (1, db_models.ChangeOperation.DELETE),
    ]

    server.online = True
    layer_worker = worker.LayerWorker(restarted)
    try:
        outcome = layer_worker.submit_sync("wells").result(timeout=10)
    finally:
        layer_worker.shutdown()

    assert outcome.stats.pushed == 3
    assert not outcome.stats.has_errors
    assert len(layer.queue) == 0
    assert set(server.features) == {2, 1000}
    assert server.features[2]["fields"] == {"name": "big pump"}
    assert server.uploads == [1000]
    assert layer.photos.names(1000) == ["tank.jpg"]

    app = main.create_app()
    app.dependency_overrides[api_layers.get_registry] = lambda: restarted
    client = testclient.TestClient(app)
    try:
        collection = client.get("/tiles/wells/1/0/1.json").json()
    finally:
        app.dependency_overrides.clear()
    assert sorted(feature["id"] for feature in collection["features"]) == [1000]
