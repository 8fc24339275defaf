"""Tests for WKT decoding, encoding and reprojection helpers."""

from __future__ import annotations

import pytest
from shapely import geometry as shapely_geometry

from replica.db import models as db_models
from replica.utils import geometry as geometry_utils


def test_from_wkt_point() -> None:
    point = geometry_utils.from_wkt("POINT (1 2)")
    assert (point.x, point.y) == (1.0, 2.0)


@pytest.mark.parametrize("wkt", [None, "", "   ", "POINT EMPTY", "POINT (1", 42])
def test_from_wkt_rejects(wkt: object) -> None:
    """Test that empty, malformed and non-string input raises GeometryError."""
    with pytest.raises(geometry_utils.GeometryError):
        geometry_utils.from_wkt(wkt)  # type: ignore[arg-type]


def test_to_wkt_drops_z_by_default() -> None:
    point = shapely_geometry.Point(1, 2, 3)
    assert geometry_utils.to_wkt(point) == "POINT (1 2)"
    assert geometry_utils.to_wkt(point, with_z=True) == "POINT Z (1 2 3)"


def test_reproject_wgs84_to_mercator() -> None:
    point = shapely_geometry.Point(180, 0)
    projected = geometry_utils.reproject(
        point, db_models.CRS_WGS84, db_models.CRS_WEB_MERCATOR
    )
    assert projected.x == pytest.approx(db_models.MERCATOR_MAX, abs=0.01)
    assert projected.y == pytest.approx(0, abs=1e-6)


def test_reproject_same_crs_is_identity() -> None:
    point = shapely_geometry.Point(3, 4)
    assert geometry_utils.reproject(point, 3857, 3857) is point


def test_is_supported() -> None:
    assert geometry_utils.is_supported(4326)
    assert geometry_utils.is_supported(3857)
    assert not geometry_utils.is_supported(32633)
