from __future__ import annotations
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, List, Optional, Set
import logging

import geopandas as gpd
from shapely.geometry import Point

from .errors import ConfigurationError
from .projection import tile_center

logger = logging.getLogger(__name__)


def region_key(value: Any) -> str:
    """Classification value -> partition key / file stem ("New York" -> "new_york")."""
    return str(value).lower().replace(" ", "_")


def load_polygons(polygons) -> gpd.GeoDataFrame:
    """
    Accepts a GeoDataFrame, a GeoJSON mapping (FeatureCollection or a single
    Feature) or a path readable by geopandas. Result is in EPSG:4326 with
    null/empty geometries removed and a positional index.
    """
    if isinstance(polygons, gpd.GeoDataFrame):
        gdf = polygons.copy()
    elif isinstance(polygons, Mapping):
        if polygons.get("type") == "FeatureCollection":
            features = polygons.get("features") or []
        else:
            features = [polygons]
        if not features:
            raise ConfigurationError("Polygon collection has no features")
        gdf = gpd.GeoDataFrame.from_features(features, crs="EPSG:4326")
    else:
        path = Path(polygons)
        if not path.exists():
            raise ConfigurationError(f"Polygon file not found: {path}")
        gdf = gpd.read_file(path)

    if gdf.crs is None:
        gdf = gdf.set_crs(4326)
    elif gdf.crs.to_epsg() != 4326:
        logger.info("Reprojecting polygons from %s to EPSG:4326", gdf.crs)
        gdf = gdf.to_crs(4326)

    gdf = gdf[gdf.geometry.notnull() & ~gdf.geometry.is_empty]
    if gdf.empty:
        raise ConfigurationError("Polygon collection has no usable geometries")
    return gdf.reset_index(drop=True)


class RegionAssigner:
    """
    Point-in-polygon lookup from a tile to the region it belongs to.

    A point on a shared border matches both polygons; the one that comes first
    in the collection wins so that a tile always lands in the same partition.
    """

    def __init__(self, polygons, prop_name: str):
        if not prop_name:
            raise ConfigurationError("Property name to extract by not provided.")
        gdf = load_polygons(polygons)
        if prop_name not in gdf.columns:
            raise ConfigurationError(f"Polygons have no {prop_name!r} property")

        values = gdf[prop_name]
        missing = values.isna()
        if missing.any():
            raise ConfigurationError(
                f"{int(missing.sum())} of {len(gdf)} polygons have no {prop_name!r} value"
            )

        self.prop_name = prop_name
        self._gdf = gdf
        self._props: List[Dict[str, Any]] = gdf.drop(columns=gdf.geometry.name).to_dict("records")
        self._keys: List[str] = [region_key(v) for v in values]
        self._sindex = gdf.sindex
        self.collisions = self._find_collisions(values.tolist(), self._keys)
        for key, raw in self.collisions.items():
            logger.warning(
                "Region key %r is shared by values %s; their tiles are merged into one partition",
                key, raw,
            )
        logger.info(
            "RegionAssigner ready with %d polygons, %d regions (property=%s)",
            len(gdf), len(self.keys), prop_name,
        )

    @staticmethod
    def _find_collisions(values: List[Any], keys: List[str]) -> Dict[str, List[str]]:
        seen: Dict[str, Set[str]] = {}
        for v, k in zip(values, keys):
            seen.setdefault(k, set()).add(str(v))
        return {k: sorted(raw) for k, raw in seen.items() if len(raw) > 1}

    @property
    def keys(self) -> Set[str]:
        return set(self._keys)

    def _match(self, lng: float, lat: float) -> Optional[int]:
        hits = self._sindex.query(Point(lng, lat), predicate="intersects")
        if len(hits) == 0:
            return None
        return int(hits.min())

    def classify(self, lng: float, lat: float) -> Optional[Dict[str, Any]]:
        idx = self._match(lng, lat)
        return None if idx is None else dict(self._props[idx])

    def assign(self, z: int, x: int, y: int) -> Optional[str]:
        idx = self._match(*tile_center(z, x, y))
        return None if idx is None else self._keys[idx]
