"""Tile index for EPSG:3857 tile grids.

This module decides which discrete tiles cover a bounding box at a given
zoom level. The computation runs on the Web Mercator plane: the world is
a square of side ``2 * MERCATOR_MAX`` metres centred on the origin, split
into ``2**zoom`` tiles per axis.

The horizontal range is never clamped: columns are wrapped into the grid,
so a viewport crossing the antimeridian yields tiles from the other side.
Envelopes are always computed from the unwrapped grid position, which keeps
them aligned with the viewport that asked for them.

Example:
    Tiles covering the whole world at zoom 1 in OSM numbering:
        >>> from replica.db import models as db_models
        >>> from replica.services.tiles import tile_items_for
        >>> world = (-db_models.MERCATOR_MAX, -db_models.MERCATOR_MAX,
        ...          db_models.MERCATOR_MAX, db_models.MERCATOR_MAX)
        >>> len(tile_items_for(world, 1.0, db_models.TmsType.OSM))
        4
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from replica.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable

    from replica.services import layer as vector_layer


def tile_items_for(
    bounds: db_models.BBox,
    zoom: float,
    tms_type: db_models.TmsType,
    max_tiles: int = db_models.MAX_TILES_COUNT,
) -> list[db_models.TileItem]:
    """Return the tiles covering a bounding box.

    Args:
        bounds: (minx, miny, maxx, maxy) in EPSG:3857 metres.
        zoom: Fractional zoom level, truncated to an integer.
        tms_type: Row numbering convention of the returned tiles.
        max_tiles: Enumeration stops as soon as this many tiles exist.

    Returns:
        Tile items ordered column by column, rows bottom-up within a column.
        A tile reached again after wrapping around the world is listed once,
        with the envelope of its first occurrence.
    """
    min_x, min_y, max_x, max_y = bounds
    decimal_zoom = int(zoom)
    tiles_in_dimension = 1 << decimal_zoom
    half_tiles = tiles_in_dimension * 0.5
    tile_size = db_models.MERCATOR_MAX / half_tiles

    beg_x = math.floor(min_x / tile_size + half_tiles)
    beg_y = math.floor(min_y / tile_size + half_tiles)
    end_x = math.ceil(max_x / tile_size + half_tiles)
    end_y = math.ceil(max_y / tile_size + half_tiles)

    if beg_y == end_y:
        end_y += 1
    if beg_x == end_x:
        end_x += 1

    beg_y = max(beg_y, 0)
    end_y = min(end_y, tiles_in_dimension)
    end_x = min(end_x, beg_x + tiles_in_dimension)

    result: list[db_models.TileItem] = []
    if max_tiles <= 0:
        return result

    seen: set[tuple[int, int]] = set()
    for x in range(beg_x, end_x):
        for y in range(beg_y, end_y):
            real_x = x % tiles_in_dimension

            real_y = y
            if tms_type == db_models.TmsType.OSM:
                real_y = tiles_in_dimension - y - 1
            if real_y < 0 or real_y >= tiles_in_dimension:
                continue
            if (real_x, real_y) in seen:
                continue
            seen.add((real_x, real_y))

            tile_min_x = -db_models.MERCATOR_MAX + x * tile_size
            tile_min_y = -db_models.MERCATOR_MAX + y * tile_size
            envelope = db_models.Envelope(
                min_x=tile_min_x,
                max_x=tile_min_x + tile_size,
                min_y=tile_min_y,
                max_y=tile_min_y + tile_size,
            )
            result.append(
                db_models.TileItem(real_x, real_y, decimal_zoom, envelope)
            )
            if len(result) >= max_tiles:
                return result

    return result


def tile_envelope(
    x: int, y: int, zoom: int, tms_type: db_models.TmsType
) -> db_models.Envelope:
    """Envelope of a single tile given in the requested numbering."""
    tiles_in_dimension = 1 << zoom
    tile_size = 2 * db_models.MERCATOR_MAX / tiles_in_dimension
    grid_y = tiles_in_dimension - y - 1 if tms_type == db_models.TmsType.OSM else y
    min_x = -db_models.MERCATOR_MAX + x * tile_size
    min_y = -db_models.MERCATOR_MAX + grid_y * tile_size
    return db_models.Envelope(min_x, min_x + tile_size, min_y, min_y + tile_size)


def pixel_size(zoom: int) -> float:
    """Ground size of one pixel in metres at an integer zoom."""
    pixels = (1 << zoom) * db_models.DEFAULT_TILE_SIZE
    return db_models.MERCATOR_MAX * 2 / pixels


def zoom_for_scale_factor(scale: float, current_zoom: float) -> float:
    """Zoom reached by scaling the map by ``scale`` from ``current_zoom``."""
    if scale > 1:
        return current_zoom + math.log2(scale)
    if 0 < scale < 1:
        return current_zoom - math.log2(1 / scale)
    return current_zoom


def features_for_tile(
    layer: vector_layer.VectorLayer,
    tile: db_models.TileItem,
) -> Iterable[db_models.Feature]:
    """Features of a layer whose extent touches a tile envelope."""
    return layer.features_in(tile.envelope)
