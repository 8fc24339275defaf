"""Unit tests for the tile index.

These tests enforce:
    - The enumeration cap, including a cap smaller than the natural count,
    - Whole-world coverage at low zoom levels,
    - TMS/OSM row numbering producing identical envelopes,
    - Horizontal wrap-around for viewports crossing the antimeridian,
    - Wrapped columns landing inside the grid and listed once,
    - Widening of degenerate (zero width or height) viewports.
"""

from __future__ import annotations

import pytest

from replica.db import models as db_models
from replica.services import tiles

M = db_models.MERCATOR_MAX
WORLD = (-M, -M, M, M)


def test_world_at_zoom_zero_is_one_tile() -> None:
    items = tiles.tile_items_for(WORLD, 0.0, db_models.TmsType.TMS)
    assert len(items) == 1
    item = items[0]
    assert (item.x, item.y, item.zoom) == (0, 0, 0)
    assert item.envelope == db_models.Envelope(-M, M, -M, M)


def test_fractional_zoom_is_truncated() -> None:
    items = tiles.tile_items_for(WORLD, 1.9, db_models.TmsType.OSM)
    assert len(items) == 4
    assert {item.zoom for item in items} == {1}


def test_cap_limits_result() -> None:
    items = tiles.tile_items_for(WORLD, 10, db_models.TmsType.TMS)
    assert len(items) == db_models.MAX_TILES_COUNT


@pytest.mark.parametrize("cap", [0, 1, 3])
def test_custom_cap(cap: int) -> None:
    items = tiles.tile_items_for(WORLD, 2, db_models.TmsType.TMS, max_tiles=cap)
    assert len(items) == cap


def test_osm_flips_rows_with_same_envelopes() -> None:
    bounds = (-M, -M, 0.0, 0.0)
    tms = tiles.tile_items_for(bounds, 2, db_models.TmsType.TMS)
    osm = tiles.tile_items_for(bounds, 2, db_models.TmsType.OSM)
    assert [item.envelope for item in tms] == [item.envelope for item in osm]
    for tms_item, osm_item in zip(tms, osm, strict=True):
        assert osm_item.x == tms_item.x
        assert osm_item.y == 4 - tms_item.y - 1


def test_antimeridian_wraps_x() -> None:
    """Test that columns past the east edge wrap to the west edge."""
    bounds = (0.5 * M, 0.0, 1.5 * M, 0.5 * M)
    items = tiles.tile_items_for(bounds, 1, db_models.TmsType.TMS)
    assert [(item.x, item.y) for item in items] == [(1, 1), (0, 1)]
    # Envelope follows the unwrapped grid position.
    assert items[1].envelope.min_x == pytest.approx(M)
    assert items[1].envelope.max_x == pytest.approx(2 * M)


def test_rows_outside_world_are_dropped() -> None:
    bounds = (-1.0, 0.5 * M, 1.0, 3 * M)
    items = tiles.tile_items_for(bounds, 1, db_models.TmsType.TMS)
    assert {item.y for item in items} == {1}


def test_degenerate_bounds_give_one_tile() -> None:
    items = tiles.tile_items_for((0.0, 0.0, 0.0, 0.0), 1, db_models.TmsType.TMS)
    assert [(item.x, item.y) for item in items] == [(1, 1)]


def test_tile_envelope_matches_enumeration() -> None:
    for tms_type in (db_models.TmsType.TMS, db_models.TmsType.OSM):
        for item in tiles.tile_items_for(WORLD, 2, tms_type):
            expected = tiles.tile_envelope(item.x, item.y, item.zoom, tms_type)
            assert expected.as_bbox() == pytest.approx(item.envelope.as_bbox())


def test_pixel_size() -> None:
    assert tiles.pixel_size(0) == pytest.approx(2 * M / 256)
    assert tiles.pixel_size(1) == pytest.approx(M / 256)


@pytest.mark.parametrize(
    ("scale", "zoom", "expected"),
    [(2.0, 3.0, 4.0), (0.5, 3.0, 2.0), (1.0, 3.0, 3.0), (0.0, 3.0, 3.0)],
)
def test_zoom_for_scale_factor(scale: float, zoom: float, expected: float) -> None:
    assert tiles.zoom_for_scale_factor(scale, zoom) == pytest.approx(expected)


def test_columns_several_worlds_away_wrap_into_grid() -> None:
    bounds = (-5 * M, 0.0, -3.5 * M, 0.5 * M)
    items = tiles.tile_items_for(bounds, 1, db_models.TmsType.TMS)
    assert [(item.x, item.y) for item in items] == [(0, 1), (1, 1)]


def test_bounds_wider_than_world_list_each_tile_once() -> None:
    bounds = (-M - 1.0, -M, M + 1.0, M)
    items = tiles.tile_items_for(bounds, 0, db_models.TmsType.TMS)
    assert [(item.x, item.y) for item in items] == [(0, 0)]

    items = tiles.tile_items_for((-3 * M, -M, 3 * M, M), 1, db_models.TmsType.OSM)
    keys = [(item.x, item.y) for item in items]
    assert sorted(keys) == [(0, 0), (0, 1), (1, 0), (1, 1)]
