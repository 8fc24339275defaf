"""Geometry encoding and reprojection helpers.

This module wraps shapely (WKT parsing and writing) and pyproj (coordinate
transformation) behind a few small functions so the services never touch
either library directly. Features are stored in EPSG:3857 (Web Mercator);
remote layers may also declare EPSG:4326 (WGS84), which is reprojected at
download and pull time.

Example:
    Decode a WGS84 point and move it to Web Mercator:
        >>> from replica.utils.geometry import from_wkt, reproject
        >>> point = from_wkt("POINT (37.6 55.7)")
        >>> mercator = reproject(point, 4326, 3857)

    Encode a 3D geometry for the wire without its Z values:
        >>> to_wkt(from_wkt("POINT Z (1 2 3)"))
        'POINT (1 2)'
"""

from __future__ import annotations

import functools

import pyproj
import shapely
from shapely import errors as shapely_errors
from shapely import ops as shapely_ops
from shapely.geometry.base import BaseGeometry

from replica.db import models as db_models

SUPPORTED_SRIDS = frozenset({db_models.CRS_WGS84, db_models.CRS_WEB_MERCATOR})


class GeometryError(ValueError):
    """Exception raised when a geometry cannot be decoded.

    The downloader and the pull step catch it to skip the offending feature
    instead of failing the whole operation.
    """


def from_wkt(wkt: str | None) -> BaseGeometry:
    """Parse a WKT string into a shapely geometry.

    Args:
        wkt: Well-known text, as delivered in the ``geom`` member of a
            remote feature.

    Returns:
        The decoded geometry.

    Raises:
        GeometryError: if the text is empty, not a string, or not valid WKT.
    """
    if not isinstance(wkt, str) or not wkt.strip():
        raise GeometryError("Empty geometry")
    try:
        geometry = shapely.from_wkt(wkt)
    except (shapely_errors.GEOSException, ValueError) as exc:
        raise GeometryError(f"Invalid WKT: {exc}") from exc
    if geometry is None or geometry.is_empty:
        raise GeometryError("Empty geometry")
    return geometry


def to_wkt(geometry: BaseGeometry, with_z: bool = False) -> str:
    """Encode a geometry as WKT.

    Measures and extra dimensions are dropped unless with_z is set.
    """
    if not with_z and geometry.has_z:
        geometry = shapely.force_2d(geometry)
    return shapely.to_wkt(geometry, output_dimension=3 if with_z else 2)


@functools.lru_cache(maxsize=8)
def _transformer(source: int, target: int) -> pyproj.Transformer:
    return pyproj.Transformer.from_crs(
        f"EPSG:{source}", f"EPSG:{target}", always_xy=True
    )


def reproject(geometry: BaseGeometry, source: int, target: int) -> BaseGeometry:
    """Transform a geometry between two EPSG coordinate systems.

    Returns the geometry unchanged when source and target are equal.
    """
    if source == target:
        return geometry
    transformer = _transformer(source, target)
    return shapely_ops.transform(transformer.transform, geometry)


def is_supported(srid: int) -> bool:
    return srid in SUPPORTED_SRIDS
