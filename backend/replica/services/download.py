"""One-shot import of a remote vector layer into the local store.

The downloader reads the remote schema and coordinate system, fetches the
whole feature collection, decodes every feature and hands the result to the
layer in a single initialize() call. Features are reprojected to
EPSG:3857 (Web Mercator) when the layer is declared in EPSG:4326.

Failure handling:

* a feature whose geometry cannot be decoded is skipped;
* a field with an unknown type token is dropped from the schema;
* any transport error, malformed payload or unsupported coordinate system
  aborts the download with one human readable message and nothing is
  written to the store.

The decoding helpers are shared with the pull step of the sync coordinator.

Example:
    Download a layer registered in the registry:
        >>> layer = registry.get("parcels")
        >>> with registry.client_for(layer) as client:
        ...     result = LayerDownloader(layer, client).download()
        >>> result.ok, result.imported
        (True, 128)
"""

from __future__ import annotations

import datetime
import logging
from typing import TYPE_CHECKING, Any

from replica.core import errors
from replica.db import models as db_models
from replica.utils import geometry as geometry_utils

if TYPE_CHECKING:
    from collections.abc import Iterable

    from replica.services import layer as vector_layer
    from replica.services import remote

logger = logging.getLogger(__name__)

TYPE_TOKENS = {
    "STRING": db_models.FieldType.STRING,
    "INTEGER": db_models.FieldType.INTEGER,
    "DATE": db_models.FieldType.DATETIME,
    "REAL": db_models.FieldType.REAL,
}


def parse_fields(meta: dict[str, Any]) -> list[db_models.Field]:
    """Extract the schema from resource metadata.

    Raises:
        MalformedResponse: if ``feature_layer.fields`` is missing or an entry
            lacks ``datatype``, ``display_name`` or ``keyname``.
    """
    try:
        raw_fields = meta["feature_layer"]["fields"]
        fields = []
        for raw in raw_fields:
            field_type = TYPE_TOKENS.get(raw["datatype"])
            if field_type is None:
                logger.debug("Dropping field %s of type %s", raw["keyname"], raw["datatype"])
                continue
            fields.append(
                db_models.Field(field_type, raw["keyname"], raw["display_name"])
            )
    except (KeyError, TypeError) as exc:
        raise errors.MalformedResponse(f"Bad layer schema: {exc!r}") from exc
    return fields


def parse_srid(meta: dict[str, Any]) -> int:
    """Extract and validate the declared coordinate system.

    Raises:
        MalformedResponse: if ``vector_layer.srs.id`` is missing.
        UnsupportedReference: if it is neither EPSG:3857 nor EPSG:4326.
    """
    try:
        srid = int(meta["vector_layer"]["srs"]["id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise errors.MalformedResponse(f"Bad layer srs: {exc!r}") from exc
    if not geometry_utils.is_supported(srid):
        raise errors.UnsupportedReference(srid)
    return srid


def _decode_datetime(value: Any) -> datetime.datetime:
    if isinstance(value, dict):
        return datetime.datetime(
            int(value["year"]),
            int(value["month"]),
            int(value["day"]),
            int(value.get("hour", 0)),
            int(value.get("minute", 0)),
            int(value.get("second", 0)),
        )
    if isinstance(value, int | float) and not isinstance(value, bool):
        return datetime.datetime.fromtimestamp(value / 1000, tz=datetime.UTC)
    return datetime.datetime.fromisoformat(str(value))


def decode_value(value: Any, field_type: db_models.FieldType) -> Any:
    """Convert a JSON attribute value to the Python type of its field."""
    if value is None:
        return None
    try:
        if field_type == db_models.FieldType.INTEGER:
            return int(value)
        if field_type == db_models.FieldType.REAL:
            return float(value)
        if field_type == db_models.FieldType.DATETIME:
            return _decode_datetime(value)
    except (KeyError, TypeError, ValueError) as exc:
        raise errors.MalformedResponse(
            f"Cannot read {value!r} as {field_type.name}"
        ) from exc
    return str(value)


def decode_feature(
    raw: dict[str, Any],
    fields: Iterable[db_models.Field],
    srid: int,
) -> db_models.Feature | None:
    """Decode one remote feature, or None when its geometry is unusable.

    Raises:
        MalformedResponse: if the id or the fields object is missing or an
            attribute value does not match its field type.
    """
    try:
        feature_id = int(raw["id"])
        values = raw.get("fields") or {}
        if not isinstance(values, dict):
            raise TypeError("fields is not an object")
    except (KeyError, TypeError, ValueError) as exc:
        raise errors.MalformedResponse(f"Bad feature: {exc!r}") from exc

    try:
        geometry = geometry_utils.from_wkt(raw.get("geom"))
    except geometry_utils.GeometryError as exc:
        logger.info("Skipping feature %s: %s", feature_id, exc)
        return None
    geometry = geometry_utils.reproject(geometry, srid, db_models.CRS_WEB_MERCATOR)

    attributes = {
        field.name: decode_value(values.get(field.name), field.type)
        for field in fields
    }
    return db_models.Feature(
        id=feature_id,
        geometry=geometry,
        srid=db_models.CRS_WEB_MERCATOR,
        attributes=attributes,
    )


def decode_features(
    raw_features: Iterable[dict[str, Any]],
    fields: Iterable[db_models.Field],
    srid: int,
) -> tuple[list[db_models.Feature], set[int]]:
    """Decode a remote feature array.

    Returns:
        The decoded features and the ids of every remote entry, including
        those skipped for an undecodable geometry.
    """
    fields = list(fields)
    features: list[db_models.Feature] = []
    seen: set[int] = set()
    for raw in raw_features:
        feature = decode_feature(raw, fields, srid)
        seen.add(int(raw["id"]))
        if feature is not None:
            features.append(feature)
    return features, seen


def describe(exc: errors.ReplicaError) -> str:
    if isinstance(exc, errors.NetworkUnavailable | errors.UnsupportedReference):
        return str(exc)
    return f"Failed to download layer data: {exc}"


class LayerDownloader:
    """Bulk import of a remote layer's schema and features."""

    def __init__(
        self,
        layer: vector_layer.VectorLayer,
        client: remote.RemoteLayerClient,
    ) -> None:
        self.layer = layer
        self.client = client

    def download(self) -> db_models.DownloadResult:
        if not self.client.is_network_available():
            return db_models.DownloadResult(error=describe(errors.NetworkUnavailable()))

        with self.layer.sync_lock:
            try:
                meta = self.client.get_metadata()
                fields = parse_fields(meta)
                srid = parse_srid(meta)
                features, _ = decode_features(self.client.get_features(), fields, srid)
            except errors.ReplicaError as exc:
                logger.warning("Download of layer %s failed: %s", self.layer.id, exc)
                return db_models.DownloadResult(error=describe(exc))

            imported = self.layer.initialize(fields, srid, features)
        return db_models.DownloadResult(imported=imported)
