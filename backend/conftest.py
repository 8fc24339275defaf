"""Shared pytest fixtures and import path setup for the backend package."""

from __future__ import annotations

import pathlib
import sys

import pytest

BACKEND_ROOT = pathlib.Path(__file__).resolve().parent

if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from replica.core import config  # noqa: E402
from replica.db import features as db_features  # noqa: E402
from replica.db import layer_config  # noqa: E402
from replica.services import layer as vector_layer  # noqa: E402


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> config.Settings:
    settings = config.Settings(storage_dir=tmp_path / "replica", offline=False)
    settings.ensure_directories()
    return settings


@pytest.fixture
def configs() -> layer_config.InMemoryLayerConfigRepository:
    return layer_config.InMemoryLayerConfigRepository()


@pytest.fixture
def registry(
    settings: config.Settings,
    configs: layer_config.InMemoryLayerConfigRepository,
) -> vector_layer.LayerRegistry:
    """Registry keeping features in memory and layer documents in a dict."""
    return vector_layer.LayerRegistry(
        settings,
        configs,
        store_factory=lambda _layer_id, _fields: db_features.InMemoryFeatureRepository(),
    )


@pytest.fixture
def remote_layer(registry: vector_layer.LayerRegistry) -> vector_layer.VectorLayer:
    """A registered remote layer with an empty store and no schema yet."""
    return registry.register(
        layer_config.LayerConfig(
            id="parcels",
            name="Parcels",
            url="https://ngw.example.com",
            remote_id=42,
        )
    )
