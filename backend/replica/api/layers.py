"""Layer registration, download and synchronization API endpoints.

This module exposes the replicated layers over REST: registering a layer
document, triggering the one-shot download of a remote layer, running a sync
pass and inspecting the pending change queue. Downloads and sync passes run
on the per-layer worker thread; the endpoints await their futures.

Example:
    Register a remote layer and download it:
        >>> client.post("/api/layers", json={
        ...     "id": "parcels",
        ...     "name": "Parcels",
        ...     "url": "https://demo.nextgis.com",
        ...     "remote_id": 42,
        ... })
        >>> client.post("/api/layers/parcels/download").json()
        >>> # Returns: {"imported": 128}

    Push local edits:
        >>> client.post("/api/layers/parcels/sync").json()
        >>> # Returns: {"layer_id": "parcels", "skipped": false,
        >>> #           "stats": {"pushed": 3, "pulled": 0, ...}, ...}
"""

import asyncio
import dataclasses
import functools
from typing import Any

import fastapi
import pydantic

from replica.core import config, errors
from replica.db import layer_config
from replica.db import models as db_models
from replica.services import layer as vector_layer
from replica.services import worker as layer_worker

router = fastapi.APIRouter(prefix="/api/layers", tags=["layers"])


class LayerCreate(pydantic.BaseModel):
    """Request body of POST /api/layers."""

    id: str = pydantic.Field(min_length=1, pattern=r"^[0-9A-Za-z_-]+$")
    name: str
    kind: db_models.LayerKind = "remote_vector"
    account: str = ""
    url: str = ""
    remote_id: int = 0
    login: str = ""
    password: str = ""
    sync_type: int = int(db_models.SyncType.ALL)


@functools.lru_cache
def get_registry() -> vector_layer.LayerRegistry:
    """Process-wide layer registry built from the settings."""
    settings = config.get_settings()
    return vector_layer.LayerRegistry(
        settings, layer_config.get_layer_config_repository(settings.layers_dir)
    )


@functools.lru_cache
def get_worker() -> layer_worker.LayerWorker:
    return layer_worker.LayerWorker(get_registry())


def _get_layer(
    layer_id: str,
    registry: vector_layer.LayerRegistry = fastapi.Depends(get_registry),  # noqa: B008
) -> vector_layer.VectorLayer:
    """Resolve the layer named in the path.

    Raises:
        HTTPException: If the layer is not registered (404 status code).
    """
    try:
        return registry.get(layer_id)
    except errors.LayerNotFound as exc:
        raise fastapi.HTTPException(status_code=404, detail="Layer not found") from exc


def _get_remote_layer(
    layer: vector_layer.VectorLayer = fastapi.Depends(_get_layer),  # noqa: B008
) -> vector_layer.VectorLayer:
    if not layer.is_remote:
        raise fastapi.HTTPException(
            status_code=400,
            detail="Only remote_vector layers can be downloaded or synced",
        )
    return layer


def _describe(document: layer_config.LayerConfig) -> dict[str, Any]:
    data = document.model_dump(exclude={"password", "changes", "pending_remaps"})
    data["pending_changes"] = len(document.changes)
    return data


@router.get("")
async def list_layers(
    registry: vector_layer.LayerRegistry = fastapi.Depends(get_registry),  # noqa: B008
) -> list[dict[str, Any]]:
    """List all registered layers, without their credentials."""
    return [_describe(document) for document in registry.all()]


@router.get("/{layer_id}")
async def get_layer(
    layer: vector_layer.VectorLayer = fastapi.Depends(_get_layer),  # noqa: B008
) -> dict[str, Any]:
    return _describe(layer.document())


@router.post("", status_code=201)
async def register_layer(
    body: LayerCreate,
    registry: vector_layer.LayerRegistry = fastapi.Depends(get_registry),  # noqa: B008
) -> dict[str, Any]:
    """Register (or re-register) a layer document.

    Re-registering an existing id keeps its schema, initialized flag and
    pending changes; only the connection settings are replaced.

    Args:
        body: Layer connection settings.
        registry: Layer registry (injected via FastAPI Depends).

    Returns:
        The stored layer document, without the password.
    """
    document = registry.configs.get(body.id) or layer_config.LayerConfig(
        id=body.id, name=body.name
    )
    document = document.model_copy(update=body.model_dump())
    layer = registry.register(document)
    return _describe(layer.document())


@router.post("/{layer_id}/download")
async def download_layer(
    layer: vector_layer.VectorLayer = fastapi.Depends(_get_remote_layer),  # noqa: B008
    worker: layer_worker.LayerWorker = fastapi.Depends(get_worker),  # noqa: B008
) -> dict[str, int]:
    """Replace the local content of a layer with the remote one.

    Raises:
        HTTPException: 409 with the failure message if the download failed.
    """
    result = await asyncio.wrap_future(worker.submit_download(layer.id))
    if not result.ok:
        raise fastapi.HTTPException(status_code=409, detail=result.error)
    return {"imported": result.imported}


@router.post("/{layer_id}/sync")
async def sync_layer(
    layer: vector_layer.VectorLayer = fastapi.Depends(_get_remote_layer),  # noqa: B008
    worker: layer_worker.LayerWorker = fastapi.Depends(get_worker),  # noqa: B008
) -> dict[str, Any]:
    outcome = await asyncio.wrap_future(worker.submit_sync(layer.id))
    return {
        "layer_id": outcome.layer_id,
        "skipped": outcome.skipped,
        "finished_at": outcome.finished_at.isoformat(),
        "stats": dataclasses.asdict(outcome.stats),
    }


@router.get("/{layer_id}/changes")
async def list_changes(
    layer: vector_layer.VectorLayer = fastapi.Depends(_get_layer),  # noqa: B008
) -> list[dict[str, Any]]:
    """Pending changes of a layer in push order."""
    return [item.to_dict() for item in layer.queue.items()]
