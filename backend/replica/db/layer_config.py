"""Persisted layer documents.

Every layer is described by one JSON document holding its connection
settings, sync mode, schema and the serialized change queue. The document
is the crash-recovery point of the queue: ChangeQueue saves it after every
mutation, so it must round-trip without losing queued work.

Documents are pydantic models; repositories follow the same protocol/in-memory
/persistent split as the feature store.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from typing import TYPE_CHECKING, Protocol

import pydantic

from replica.core import errors
from replica.db import models as db_models

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


class PhotoChangeRecord(pydantic.BaseModel):
    name: str
    operation: db_models.ChangeOperation


class ChangeRecord(pydantic.BaseModel):
    id: int
    operation: db_models.ChangeOperation
    photos: list[PhotoChangeRecord] = []


class FieldRecord(pydantic.BaseModel):
    type: db_models.FieldType
    name: str
    alias: str = ""


class RemapRecord(pydantic.BaseModel):
    old_id: int
    new_id: int


class LayerConfig(pydantic.BaseModel):
    """Persisted description of a layer.

    Attributes:
        id: Local layer identifier (also names the feature table and the
            photo directory).
        name: Human-readable layer name.
        kind: Layer variant tag; only "remote_vector" layers synchronize.
        account: Account the layer belongs to.
        url: Base URL of the remote server.
        remote_id: Resource id of the layer on the remote server.
        login: Basic-auth user, empty for anonymous access.
        password: Basic-auth password.
        sync_type: SyncType bitmask.
        srid: Coordinate system declared by the remote layer.
        fields: Layer schema, filled by the downloader.
        initialized: True once a download has been committed.
        changes: Serialized change queue in push order.
        pending_remaps: Id remaps started but not yet completed.
    """

    id: str
    name: str
    kind: db_models.LayerKind = "remote_vector"
    account: str = ""
    url: str = ""
    remote_id: int = 0
    login: str = ""
    password: str = ""
    sync_type: int = int(db_models.SyncType.ALL)
    srid: int = db_models.CRS_WEB_MERCATOR
    fields: list[FieldRecord] = []
    initialized: bool = False
    changes: list[ChangeRecord] = []
    pending_remaps: list[RemapRecord] = []

    @property
    def sync_flags(self) -> db_models.SyncType:
        return db_models.SyncType(self.sync_type)

    def schema(self) -> list[db_models.Field]:
        return [db_models.Field(f.type, f.name, f.alias) for f in self.fields]

    def set_schema(self, fields: Iterable[db_models.Field]) -> None:
        self.fields = [
            FieldRecord(type=f.type, name=f.name, alias=f.alias) for f in fields
        ]

    def change_items(self) -> list[db_models.ChangeItem]:
        return [
            db_models.ChangeItem.from_dict(record.model_dump())
            for record in self.changes
        ]

    def set_change_items(self, items: Iterable[db_models.ChangeItem]) -> None:
        self.changes = [
            ChangeRecord.model_validate(item.to_dict()) for item in items
        ]


class LayerConfigRepositoryProtocol(Protocol):
    """Protocol interface for storing and retrieving layer documents."""

    def save(self, layer: LayerConfig) -> LayerConfig: ...

    def get(self, layer_id: str) -> LayerConfig | None: ...

    def all(self) -> Iterable[LayerConfig]: ...


class InMemoryLayerConfigRepository(LayerConfigRepositoryProtocol):
    """Dictionary-backed repository. Documents are deep-copied on save."""

    def __init__(self) -> None:
        self._store: dict[str, LayerConfig] = {}
        self._lock = threading.Lock()

    def save(self, layer: LayerConfig) -> LayerConfig:
        with self._lock:
            self._store[layer.id] = layer.model_copy(deep=True)
        return layer

    def get(self, layer_id: str) -> LayerConfig | None:
        with self._lock:
            stored = self._store.get(layer_id)
            return stored.model_copy(deep=True) if stored else None

    def all(self) -> Iterable[LayerConfig]:
        with self._lock:
            return [layer.model_copy(deep=True) for layer in self._store.values()]


class FileLayerConfigRepository(LayerConfigRepositoryProtocol):
    """One ``<layer id>.json`` file per layer in a directory.

    Writes go to a temporary file in the same directory which then replaces
    the document, so a crash leaves either the old or the new document.
    """

    def __init__(self, directory: pathlib.Path) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, layer_id: str) -> pathlib.Path:
        return self.directory / f"{layer_id}.json"

    def save(self, layer: LayerConfig) -> LayerConfig:
        payload = layer.model_dump_json(indent=2)
        with self._lock:
            fd, tmp_name = tempfile.mkstemp(
                dir=self.directory, prefix=f".{layer.id}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self._path(layer.id))
        return layer

    def get(self, layer_id: str) -> LayerConfig | None:
        path = self._path(layer_id)
        if not path.exists():
            return None
        try:
            return LayerConfig.model_validate_json(path.read_text("utf-8"))
        except pydantic.ValidationError:
            logger.exception("Layer document %s is corrupt", path)
            raise

    def all(self) -> Iterable[LayerConfig]:
        for path in sorted(self.directory.glob("*.json")):
            layer = self.get(path.stem)
            if layer is not None:
                yield layer


def require(repo: LayerConfigRepositoryProtocol, layer_id: str) -> LayerConfig:
    """Return a layer document or raise LayerNotFound."""
    layer = repo.get(layer_id)
    if layer is None:
        raise errors.LayerNotFound(f"Layer {layer_id} not found")
    return layer


def get_layer_config_repository(directory: pathlib.Path) -> LayerConfigRepositoryProtocol:
    return FileLayerConfigRepository(directory)
