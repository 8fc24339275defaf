"""Tests for the per-layer background worker."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import httpx

from replica.db import features as db_features
from replica.db import layer_config
from replica.services import layer as vector_layer
from replica.services import remote, worker

if TYPE_CHECKING:
    from replica.core import config

META = {
    "feature_layer": {
        "fields": [{"datatype": "STRING", "display_name": "Name", "keyname": "name"}]
    },
    "vector_layer": {"srs": {"id": 3857}},
}


def _registry(
    settings: config.Settings,
    configs: layer_config.InMemoryLayerConfigRepository,
    threads: list[str],
) -> vector_layer.LayerRegistry:
    def handler(request: httpx.Request) -> httpx.Response:
        threads.append(threading.current_thread().name)
        if request.url.path.endswith("/feature/"):
            return httpx.Response(
                200, json=[{"id": 1, "geom": "POINT (0 0)", "fields": {"name": "a"}}]
            )
        if request.url.path.endswith("/store/"):
            return httpx.Response(200, json=[])
        return httpx.Response(200, json=META)

    def client_factory(document: layer_config.LayerConfig) -> remote.RemoteLayerClient:
        return remote.RemoteLayerClient(
            document.url, document.remote_id, transport=httpx.MockTransport(handler)
        )

    registry = vector_layer.LayerRegistry(
        settings,
        configs,
        store_factory=lambda _layer_id, _fields: db_features.InMemoryFeatureRepository(),
        client_factory=client_factory,
    )
    registry.register(
        layer_config.LayerConfig(id="parcels", name="P", url="https://ngw", remote_id=1)
    )
    return registry


def test_download_then_sync_in_order(
    settings: config.Settings,
    configs: layer_config.InMemoryLayerConfigRepository,
) -> None:
    threads: list[str] = []
    layer_worker = worker.LayerWorker(_registry(settings, configs, threads))
    try:
        downloaded = layer_worker.submit_download("parcels")
        synced = layer_worker.submit_sync("parcels")
        assert downloaded.result(timeout=10).imported == 1
        outcome = synced.result(timeout=10)
        assert not outcome.skipped
        # The pull found the feature gone remotely.
        assert outcome.stats.pulled == 1
    finally:
        layer_worker.shutdown()

    assert threads
    assert all(name.startswith("layer-parcels") for name in threads)


def test_shutdown_allows_new_jobs(
    settings: config.Settings,
    configs: layer_config.InMemoryLayerConfigRepository,
) -> None:
    layer_worker = worker.LayerWorker(_registry(settings, configs, []))
    layer_worker.shutdown()
    assert layer_worker.submit_sync("parcels").result(timeout=10).layer_id == "parcels"
    layer_worker.shutdown()
