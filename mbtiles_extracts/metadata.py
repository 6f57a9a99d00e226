"""Summary metadata (bounds/center/identity) for a finished partition."""
from __future__ import annotations
from typing import Any, Dict, Optional
import copy
import logging
import math

from .projection import clamp_bounds, tile_bbox
from .store import Extent

logger = logging.getLogger(__name__)


def center_zoom(minzoom: int, maxzoom: int) -> int:
    span = maxzoom - minzoom
    if span <= 1:
        return maxzoom
    return int(math.floor(span * 0.5)) + minzoom


def finalize_info(template: Dict[str, Any], key: str, extent: Optional[Extent],
                  zoom: Optional[int] = None) -> Dict[str, Any]:
    """
    Derive a partition's metadata from the source metadata and the extent of
    tiles it actually received at `zoom` (the source minzoom by default).

    `extent` is (minx, miny, maxx, maxy) in stored TMS rows. Bounds come from
    the two extreme corner tiles only, so they are coarse at low zooms (and
    zoom 0 yields the whole world); they are clamped to the valid world range.
    """
    info = copy.deepcopy(template)
    info["name"] = key
    info["description"] = key
    if extent is None:
        return info

    minzoom = int(info["minzoom"])
    maxzoom = int(info["maxzoom"])
    zoom = minzoom if zoom is None else zoom
    minx, miny, maxx, maxy = extent

    west, south, _, _ = tile_bbox(zoom, minx, miny, tms=True)
    _, _, east, north = tile_bbox(zoom, maxx, maxy, tms=True)
    west, south, east, north = clamp_bounds((west, south, east, north))

    info["bounds"] = [west, south, east, north]
    info["center"] = [
        (east - west) / 2 + west,
        (north - south) / 2 + south,
        center_zoom(minzoom, maxzoom),
    ]
    # per-field schemas describe the whole source, not this subset
    for layer in info.get("vector_layers") or []:
        layer["fields"] = {}
    return info


def update_partition_info(part, template: Dict[str, Any]) -> Dict[str, Any]:
    """Compute and persist the metadata of one open partition."""
    zoom = int(template["minzoom"])
    extent = part.sink.written_extent(zoom)
    if extent is None:
        logger.info("Partition %s has no tiles at zoom %d, keeping source bounds", part.key, zoom)
    info = finalize_info(template, part.key, extent, zoom=zoom)
    part.sink.put_info(info)
    logger.debug("Partition %s metadata: bounds=%s center=%s", part.key, info.get("bounds"), info.get("center"))
    return info
