"""Data models for replicated vector layers.

This module defines the core data structures used throughout the
application: the typed attribute schema of a layer (Field), the features
held in the local store (Feature), the pending mutations queued for the
remote (ChangeItem and PhotoChange), and the tile descriptors produced by
the tile index (TileItem and Envelope). All envelopes are expressed in
EPSG:3857 (Web Mercator) metres.

Example:
    Queue a photo change for a freshly created feature:
        >>> from replica.db.models import ChangeItem, ChangeOperation
        >>> item = ChangeItem(feature_id=-2, operation=ChangeOperation.NEW)
        >>> item.add_photo_change("IMG_001.jpg", ChangeOperation.NEW)
        >>> item.to_dict()
        {'id': -2, 'operation': 1, 'photos': [{'name': 'IMG_001.jpg', 'operation': 1}]}
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from shapely.geometry.base import BaseGeometry

BBox = tuple[float, float, float, float]
LayerKind = Literal["local_vector", "remote_vector"]

NOT_FOUND = -1
"""Feature id sentinel meaning "no particular feature"."""

CRS_WGS84 = 4326
CRS_WEB_MERCATOR = 3857
MERCATOR_MAX = 20037508.34
DEFAULT_TILE_SIZE = 256
MAX_TILES_COUNT = 8192


class FieldType(enum.IntEnum):
    STRING = 4
    INTEGER = 1
    DATETIME = 8
    REAL = 2


class ChangeOperation(enum.IntEnum):
    NEW = 1
    CHANGED = 2
    DELETE = 3
    PHOTO = 4


class SyncType(enum.IntFlag):
    """Synchronization mode bitmask of a layer."""

    NONE = 1
    DATA = 2
    PHOTO = 4
    ALL = DATA | PHOTO


class TmsType(enum.IntEnum):
    """Vertical tile numbering convention.

    TMS counts rows northward from the bottom of the grid, OSM counts them
    southward from the top.
    """

    OSM = 1
    TMS = 2


@dataclasses.dataclass(frozen=True)
class Field:
    """Typed attribute descriptor of a layer schema."""

    type: FieldType
    name: str
    alias: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": int(self.type), "name": self.name, "alias": self.alias}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Field:
        return cls(FieldType(data["type"]), data["name"], data.get("alias", ""))


@dataclasses.dataclass
class Feature:
    """One geometry plus attribute record of a vector layer.

    Attributes:
        id: Locally minted placeholder (negative) until the first successful
            create push, the server-assigned id afterwards.
        geometry: Shapely geometry in the coordinate system given by srid.
        srid: EPSG code of the geometry coordinates.
        attributes: Field name to typed value mapping.
    """

    id: int
    geometry: BaseGeometry
    srid: int = CRS_WEB_MERCATOR
    attributes: dict[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def bbox(self) -> BBox:
        minx, miny, maxx, maxy = self.geometry.bounds
        return (minx, miny, maxx, maxy)


@dataclasses.dataclass
class PhotoChange:
    name: str
    operation: ChangeOperation

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "operation": int(self.operation)}


@dataclasses.dataclass
class ChangeItem:
    """A queued pending mutation of one feature.

    Attributes:
        feature_id: Id of the feature, or NOT_FOUND for the
            full-layer-delete sentinel.
        operation: Main operation pushed for this feature.
        photo_changes: Ordered photo sub-changes pushed as attachments.
        revision: In-process edit counter, bumped by every recorded data
            change even when it merges into the entry. Not persisted and
            ignored by equality.
    """

    feature_id: int
    operation: ChangeOperation
    photo_changes: list[PhotoChange] = dataclasses.field(default_factory=list)
    revision: int = dataclasses.field(default=0, compare=False)

    def add_photo_change(self, name: str, operation: ChangeOperation) -> None:
        self.photo_changes.append(PhotoChange(name, operation))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.feature_id,
            "operation": int(self.operation),
            "photos": [change.to_dict() for change in self.photo_changes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeItem:
        return cls(
            feature_id=int(data["id"]),
            operation=ChangeOperation(data["operation"]),
            photo_changes=[
                PhotoChange(photo["name"], ChangeOperation(photo["operation"]))
                for photo in data.get("photos", [])
            ],
        )


@dataclasses.dataclass(frozen=True)
class Envelope:
    min_x: float
    max_x: float
    min_y: float
    max_y: float

    def as_bbox(self) -> BBox:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    def intersects(self, bbox: BBox) -> bool:
        minx, miny, maxx, maxy = bbox
        return not (
            maxx < self.min_x
            or minx > self.max_x
            or maxy < self.min_y
            or miny > self.max_y
        )


@dataclasses.dataclass(frozen=True)
class TileItem:
    x: int
    y: int
    zoom: int
    envelope: Envelope


@dataclasses.dataclass
class SyncStats:
    """Counters accumulated through a single sync pass."""

    num_io_exceptions: int = 0
    num_parse_exceptions: int = 0
    pushed: int = 0
    pulled: int = 0

    @property
    def has_errors(self) -> bool:
        return self.num_io_exceptions > 0 or self.num_parse_exceptions > 0


@dataclasses.dataclass
class SyncOutcome:
    layer_id: str
    stats: SyncStats
    skipped: bool = False
    finished_at: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(tz=datetime.UTC)
    )


@dataclasses.dataclass
class DownloadResult:
    """Outcome of a layer download: an imported count or an error message."""

    imported: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
