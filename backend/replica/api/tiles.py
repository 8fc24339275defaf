"""Tile index and tile content endpoints.

This module exposes the tile index over REST. The items endpoint answers
which tiles cover a viewport at a (possibly fractional) zoom level; the
tile endpoint returns the features of the local replica whose extent
touches one tile, as a GeoJSON FeatureCollection in EPSG:3857.

Both endpoints accept ``scheme=tms`` (y grows northwards, the default) or
``scheme=osm`` (y grows southwards, as in XYZ slippy maps).

Example:
    Tiles covering the whole world at zoom 1:
        >>> response = client.get(
        ...     "/tiles/parcels/items",
        ...     params={"min_x": -20037508.34, "min_y": -20037508.34,
        ...             "max_x": 20037508.34, "max_y": 20037508.34,
        ...             "zoom": 1.5, "scheme": "osm"},
        ... )
        >>> len(response.json())
        4

    Features of one tile:
        >>> client.get("/tiles/parcels/10/512/511.json?scheme=osm").json()
        >>> # Returns: {"type": "FeatureCollection", "features": [...]}
"""

from typing import Any, Literal

import fastapi
from shapely import geometry as shapely_geometry

from replica.api import layers
from replica.core import config
from replica.db import models as db_models
from replica.services import layer as vector_layer
from replica.services import tiles as tile_index

router = fastapi.APIRouter(prefix="/tiles", tags=["tiles"])

Scheme = Literal["tms", "osm"]

_SCHEMES = {"tms": db_models.TmsType.TMS, "osm": db_models.TmsType.OSM}


def _json_value(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def _tile_to_dict(tile: db_models.TileItem) -> dict[str, Any]:
    return {
        "x": tile.x,
        "y": tile.y,
        "zoom": tile.zoom,
        "envelope": list(tile.envelope.as_bbox()),
    }


def _feature_to_geojson(feature: db_models.Feature) -> dict[str, Any]:
    return {
        "type": "Feature",
        "id": feature.id,
        "geometry": shapely_geometry.mapping(feature.geometry),
        "properties": {
            name: _json_value(value) for name, value in feature.attributes.items()
        },
    }


@router.get("/{layer_id}/items")
async def list_tile_items(
    min_x: float,
    min_y: float,
    max_x: float,
    max_y: float,
    zoom: float = fastapi.Query(ge=0, le=30),  # noqa: B008
    scheme: Scheme = "tms",
    layer: vector_layer.VectorLayer = fastapi.Depends(layers._get_layer),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> list[dict[str, Any]]:
    """Tiles covering a viewport given in EPSG:3857 metres.

    Args:
        min_x: Western edge of the viewport.
        min_y: Southern edge of the viewport.
        max_x: Eastern edge; may exceed the world bounds to wrap around.
        max_y: Northern edge.
        zoom: Zoom level, truncated to an integer.
        scheme: Tile numbering, "tms" or "osm".
        layer: Target layer (injected, 404 when unknown).
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        At most ``settings.max_tiles`` tile descriptors.
    """
    bounds = (min_x, min_y, max_x, max_y)
    items = tile_index.tile_items_for(
        bounds, zoom, _SCHEMES[scheme], max_tiles=settings.max_tiles
    )
    return [_tile_to_dict(tile) for tile in items]


@router.get("/{layer_id}/{z}/{x}/{y}.json")
async def get_tile_features(
    z: int,
    x: int,
    y: int,
    scheme: Scheme = "tms",
    layer: vector_layer.VectorLayer = fastapi.Depends(layers._get_layer),  # noqa: B008
) -> dict[str, Any]:
    """Features of a layer whose extent touches one tile.

    Raises:
        HTTPException: If the tile lies outside the grid (404 status code).
    """
    tiles_in_dimension = 1 << z if 0 <= z <= 30 else 0
    if not (0 <= x < tiles_in_dimension and 0 <= y < tiles_in_dimension):
        raise fastapi.HTTPException(status_code=404, detail="Tile out of range")

    tile_type = _SCHEMES[scheme]
    tile = db_models.TileItem(x, y, z, tile_index.tile_envelope(x, y, z, tile_type))
    features = tile_index.features_for_tile(layer, tile)
    return {
        "type": "FeatureCollection",
        "features": [_feature_to_geojson(feature) for feature in features],
    }
