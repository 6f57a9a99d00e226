"""Slippy-map tile math (Web Mercator, XYZ rows unless stated otherwise)."""
from __future__ import annotations
import math
from typing import Tuple

WORLD_LNG = 180.0
WORLD_LAT = 90.0


def unproject(z: int, x: float, y: float) -> Tuple[float, float]:
    """Inverse Web Mercator for (possibly fractional) tile coordinates."""
    n = 2.0 ** z
    lng = x * 360.0 / n - 180.0
    lat = 360.0 / math.pi * math.atan(math.exp((180.0 - y * 360.0 / n) * math.pi / 180.0)) - 90.0
    return lng, lat


def tile_center(z: int, x: int, y: int) -> Tuple[float, float]:
    # sample the middle of the tile so the lookup doesn't depend on tile size
    return unproject(z, x + 0.5, y + 0.5)


def flip_row(z: int, y: int) -> int:
    """XYZ <-> TMS row conversion (the operation is its own inverse)."""
    return (1 << z) - 1 - y


def tile_bbox(z: int, x: int, y: int, tms: bool = False) -> Tuple[float, float, float, float]:
    """
    (west, south, east, north) of a tile. Out-of-range rows/columns are not
    rejected; callers that need sane values go through clamp_bounds().
    """
    if tms:
        y = flip_row(z, y)
    west, north = unproject(z, x, y)
    east, south = unproject(z, x + 1, y + 1)
    return west, south, east, north


def _clamp(v: float, limit: float) -> float:
    return max(-limit, min(limit, v))


def clamp_bounds(bounds) -> Tuple[float, float, float, float]:
    west, south, east, north = bounds
    return (
        _clamp(west, WORLD_LNG),
        _clamp(south, WORLD_LAT),
        _clamp(east, WORLD_LNG),
        _clamp(north, WORLD_LAT),
    )
