"""Local feature store repositories.

The local replica of a layer lives behind FeatureRepositoryProtocol. The
in-memory implementation serves tests and ephemeral sessions; the PostGIS
implementation keeps one table per layer with the geometry in EPSG:3857 and
the attributes in a JSONB column.

Locally created features receive negative placeholder ids (-2, -3, ...)
so they can never collide with server ids or with the NOT_FOUND sentinel.
"""

from __future__ import annotations

import datetime
import json
import re
import threading
from typing import TYPE_CHECKING, Any, Protocol, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras

from replica.db import models as db_models
from replica.utils import geometry as geometry_utils

if TYPE_CHECKING:
    from collections.abc import Iterable

    from replica.core import config


class FeatureRepositoryProtocol(Protocol):
    """Protocol interface of the local feature store of one layer."""

    def initialize(self, features: Iterable[db_models.Feature]) -> int: ...

    def insert(self, feature: db_models.Feature) -> db_models.Feature: ...

    def update(self, feature: db_models.Feature) -> bool: ...

    def delete(self, feature_id: int) -> bool: ...

    def delete_all(self) -> int: ...

    def get(self, feature_id: int) -> db_models.Feature | None: ...

    def all(self) -> Iterable[db_models.Feature]: ...

    def query_bbox(self, bbox: db_models.BBox) -> Iterable[db_models.Feature]: ...

    def change_id(self, old_id: int, new_id: int) -> bool: ...

    def set_schema(self, fields: Iterable[db_models.Field]) -> None: ...


def next_placeholder_id(existing: Iterable[int]) -> int:
    """Mint the next local placeholder id below every id in use."""
    lowest = min(existing, default=db_models.NOT_FOUND)
    return min(lowest, db_models.NOT_FOUND) - 1


class InMemoryFeatureRepository(FeatureRepositoryProtocol):
    """Simple in-memory store for tests and local development.

    Features are kept in insertion order in a dictionary keyed by id.
    Data is lost when the process exits.
    """

    def __init__(self) -> None:
        self._store: dict[int, db_models.Feature] = {}
        self._lock = threading.RLock()

    def initialize(self, features: Iterable[db_models.Feature]) -> int:
        with self._lock:
            self._store = {feature.id: feature for feature in features}
            return len(self._store)

    def insert(self, feature: db_models.Feature) -> db_models.Feature:
        with self._lock:
            if feature.id == db_models.NOT_FOUND:
                feature.id = next_placeholder_id(self._store)
            self._store[feature.id] = feature
            return feature

    def update(self, feature: db_models.Feature) -> bool:
        """Overwrite geometry and attributes of an existing row.

        Returns:
            True if a row with the feature id existed.
        """
        with self._lock:
            if feature.id not in self._store:
                return False
            self._store[feature.id] = feature
            return True

    def delete(self, feature_id: int) -> bool:
        with self._lock:
            return self._store.pop(feature_id, None) is not None

    def delete_all(self) -> int:
        with self._lock:
            count = len(self._store)
            self._store.clear()
            return count

    def get(self, feature_id: int) -> db_models.Feature | None:
        with self._lock:
            return self._store.get(feature_id)

    def all(self) -> Iterable[db_models.Feature]:
        with self._lock:
            return list(self._store.values())

    def query_bbox(self, bbox: db_models.BBox) -> Iterable[db_models.Feature]:
        """Features whose geometry bounding box intersects ``bbox``.

        Args:
            bbox: (minx, miny, maxx, maxy) in EPSG:3857 metres.
        """
        minx, miny, maxx, maxy = bbox
        envelope = db_models.Envelope(minx, maxx, miny, maxy)
        return [
            feature
            for feature in self.all()
            if envelope.intersects(feature.bbox)
        ]

    def change_id(self, old_id: int, new_id: int) -> bool:
        with self._lock:
            if old_id not in self._store or new_id in self._store:
                return False
            feature = self._store.pop(old_id)
            feature.id = new_id
            self._store[new_id] = feature
            return True

    def set_schema(self, fields: Iterable[db_models.Field]) -> None:
        """Attributes are kept as Python objects, nothing to decode."""


def _json_default(value: object) -> str:
    if isinstance(value, datetime.datetime | datetime.date):
        return value.isoformat()
    raise TypeError(f"Cannot serialize {type(value).__name__}")


class PostgresFeatureRepository(FeatureRepositoryProtocol):
    """PostgreSQL/PostGIS-backed feature store of one layer.

    Each layer gets its own table named ``features_<layer id>``. Geometries
    are written through ST_GeomFromText in EPSG:3857, attributes as JSONB.
    Date-time attributes are stored as ISO strings and decoded back using
    the layer schema.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS {table} (
      id BIGINT PRIMARY KEY,
      geom geometry(Geometry, 3857),
      attributes JSONB NOT NULL DEFAULT '{{}}'::jsonb
    );
    CREATE INDEX IF NOT EXISTS {table}_geom_idx ON {table} USING GIST (geom);
    """

    def __init__(
        self,
        settings: config.Settings,
        layer_id: str,
        fields: Iterable[db_models.Field] = (),
    ) -> None:
        """Initialize repository and make sure the layer table exists.

        Args:
            settings: Application settings containing database connection URL.
            layer_id: Local layer identifier, used to name the table.
            fields: Layer schema used to decode date-time attributes.
        """
        self.settings = settings
        self.table = "features_" + re.sub(r"[^0-9a-zA-Z_]", "_", layer_id)
        self.fields = list(fields)
        self._ensure_schema()

    def _connection(self) -> psycopg2.extensions.connection:
        """Create a new database connection.

        Returns:
            psycopg2 connection object.
        """
        return psycopg2.connect(self.settings.database_url)

    def _ensure_schema(self) -> None:
        """Ensure the PostGIS extension and the layer table exist.

        Called automatically on initialization; safe to run repeatedly.
        """
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS postgis;")
            cur.execute(self.CREATE_TABLE_SQL.format(table=self.table))
            conn.commit()

    def initialize(self, features: Iterable[db_models.Feature]) -> int:
        """Replace the whole table content in one transaction.

        Args:
            features: Downloaded features, ids as assigned by the server.

        Returns:
            Number of rows written.
        """
        rows = [self._to_row(feature) for feature in features]
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(f"DELETE FROM {self.table}")
            psycopg2.extras.execute_batch(cur, self._insert_sql(), rows)
            conn.commit()
        return len(rows)

    def _insert_sql(self) -> str:
        return (
            f"INSERT INTO {self.table} (id, geom, attributes) VALUES "
            "(%(id)s, ST_GeomFromText(%(wkt)s, 3857), %(attributes)s)"
        )

    def insert(self, feature: db_models.Feature) -> db_models.Feature:
        """Insert a feature, minting a placeholder id for NOT_FOUND.

        Args:
            feature: Feature to store; its id is set in place when minted.

        Returns:
            The stored feature.
        """
        with self._connection() as conn, conn.cursor() as cur:
            if feature.id == db_models.NOT_FOUND:
                cur.execute(f"SELECT LEAST(MIN(id), -1) - 1 FROM {self.table}")
                row = cur.fetchone()
                feature.id = int(row[0]) if row and row[0] is not None else -2
            cur.execute(self._insert_sql(), self._to_row(feature))
            conn.commit()
        return feature

    def update(self, feature: db_models.Feature) -> bool:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self.table}
                SET geom = ST_GeomFromText(%(wkt)s, 3857),
                    attributes = %(attributes)s
                WHERE id = %(id)s
                """,
                self._to_row(feature),
            )
            conn.commit()
            return bool(cur.rowcount == 1)

    def delete(self, feature_id: int) -> bool:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(f"DELETE FROM {self.table} WHERE id = %s", (feature_id,))
            conn.commit()
            return bool(cur.rowcount == 1)

    def delete_all(self) -> int:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(f"DELETE FROM {self.table}")
            conn.commit()
            return int(cur.rowcount)

    def get(self, feature_id: int) -> db_models.Feature | None:
        """Fetch one feature by id.

        Args:
            feature_id: Local feature id.

        Returns:
            The feature, or None if no such row exists.
        """
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"SELECT id, ST_AsText(geom), attributes FROM {self.table} "
                "WHERE id = %s",
                (feature_id,),
            )
            row = cur.fetchone()
            if row is None:
                return None
            return self._from_row(row)

    def all(self) -> Iterable[db_models.Feature]:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"SELECT id, ST_AsText(geom), attributes FROM {self.table} "
                "ORDER BY id"
            )
            for row in cur.fetchall():
                yield self._from_row(row)

    def query_bbox(self, bbox: db_models.BBox) -> Iterable[db_models.Feature]:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT id, ST_AsText(geom), attributes FROM {self.table}
                WHERE geom && ST_MakeEnvelope(%s, %s, %s, %s, 3857)
                """,
                bbox,
            )
            for row in cur.fetchall():
                yield self._from_row(row)

    def change_id(self, old_id: int, new_id: int) -> bool:
        """Move a row to a new id unless the new id is already taken.

        Returns:
            True if the row moved; False when old_id is gone or new_id
            exists, which makes replaying a remap a no-op.
        """
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"UPDATE {self.table} SET id = %s WHERE id = %s "
                f"AND NOT EXISTS (SELECT 1 FROM {self.table} WHERE id = %s)",
                (new_id, old_id, new_id),
            )
            conn.commit()
            return bool(cur.rowcount == 1)

    def set_schema(self, fields: Iterable[db_models.Field]) -> None:
        self.fields = list(fields)

    @staticmethod
    def _to_row(feature: db_models.Feature) -> dict[str, object]:
        """Convert a Feature to a parameter dictionary for SQL statements."""
        geometry = geometry_utils.reproject(
            feature.geometry, feature.srid, db_models.CRS_WEB_MERCATOR
        )
        return {
            "id": feature.id,
            "wkt": geometry_utils.to_wkt(geometry),
            "attributes": psycopg2.extras.Json(
                feature.attributes,
                dumps=lambda value: json.dumps(value, default=_json_default),
            ),
        }

    def _from_row(self, row: tuple[Any, ...]) -> db_models.Feature:
        """Convert a (id, wkt, attributes) row to a Feature."""
        feature_id, wkt, attributes = row
        attributes = dict(cast(dict[str, Any], attributes or {}))
        for field in self.fields:
            value = attributes.get(field.name)
            if field.type == db_models.FieldType.DATETIME and isinstance(value, str):
                attributes[field.name] = datetime.datetime.fromisoformat(value)
        return db_models.Feature(
            id=int(feature_id),
            geometry=geometry_utils.from_wkt(wkt),
            srid=db_models.CRS_WEB_MERCATOR,
            attributes=attributes,
        )


def get_feature_repository(
    settings: config.Settings,
    layer_id: str,
    fields: Iterable[db_models.Field] = (),
) -> FeatureRepositoryProtocol:
    """Factory function to create the feature store of a layer.

    Args:
        settings: Application settings selecting the backend.
        layer_id: Local layer identifier.
        fields: Layer schema, needed by the PostGIS backend.

    Returns:
        PostgresFeatureRepository when settings.use_postgres is enabled,
        InMemoryFeatureRepository otherwise.
    """
    if settings.use_postgres:
        return PostgresFeatureRepository(settings, layer_id, fields)
    return InMemoryFeatureRepository()
