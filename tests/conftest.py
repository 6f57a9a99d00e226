from __future__ import annotations
import copy
import json
import sqlite3
import threading
import time
from pathlib import Path

import pytest

from mbtiles_extracts.errors import StorageError
from mbtiles_extracts.projection import flip_row
from mbtiles_extracts.store import TileCoord, TileSink, TileSource


def square(name, west, south, east, north, prop="name"):
    return {
        "type": "Feature",
        "properties": {prop: name},
        "geometry": {
            "type": "Polygon",
            "coordinates": [[[west, south], [east, south], [east, north], [west, north], [west, south]]],
        },
    }


def collection(*features):
    return {"type": "FeatureCollection", "features": list(features)}


def make_mbtiles(path: Path, tiles, metadata=None) -> Path:
    """tiles: {(z, x, y_xyz): bytes}; metadata: {name: str}"""
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE metadata (name TEXT, value TEXT)")
    conn.execute("CREATE TABLE tiles (zoom_level INTEGER, tile_column INTEGER, tile_row INTEGER, tile_data BLOB)")
    conn.execute("CREATE UNIQUE INDEX tiles_zxy ON tiles (zoom_level, tile_column, tile_row)")
    for (z, x, y), data in tiles.items():
        conn.execute("INSERT INTO tiles VALUES (?, ?, ?, ?)", (z, x, flip_row(z, y), data))
    for name, value in (metadata or {}).items():
        conn.execute("INSERT INTO metadata VALUES (?, ?)", (name, value))
    conn.commit()
    conn.close()
    return path


class MemorySource(TileSource):
    """tiles: {(z, x, y): bytes or None}; None = enumerated but unreadable (absent)."""

    def __init__(self, tiles, info=None, on_pull=None):
        self.tiles = dict(tiles)
        zooms = [z for z, _, _ in self.tiles] or [0]
        self._info = info or {"name": "memory", "minzoom": min(zooms), "maxzoom": max(zooms)}
        self.on_pull = on_pull
        self.closed = False
        self.info_calls = 0

    def info(self):
        self.info_calls += 1
        return copy.deepcopy(self._info)

    def iter_tiles(self, batch_size=100):
        for z, x, y in list(self.tiles):
            if self.on_pull is not None:
                self.on_pull()
            yield TileCoord(z, x, y)

    def get_tile(self, z, x, y):
        return self.tiles.get((z, x, y))

    def close(self):
        self.closed = True


class RecordingSink(TileSink):
    def __init__(self, path, delay=0.0, put_delay=0.0, fail_on_put=False, fail_on_open=False):
        self.path = Path(path)
        self.delay = delay
        self.put_delay = put_delay
        self.fail_on_put = fail_on_put
        self.fail_on_open = fail_on_open
        self.lock = threading.Lock()
        self.calls = []
        self.writable = False
        self.tiles = {}
        self.info = None
        self.early_writes = []

    def open(self):
        time.sleep(self.delay)
        if self.fail_on_open:
            raise OSError(f"cannot create {self.path}")
        self.calls.append("open")

    def begin_writing(self):
        time.sleep(self.delay)
        with self.lock:
            self.calls.append("begin")
            self.writable = True

    def put_tile(self, z, x, y, data):
        time.sleep(self.put_delay)
        with self.lock:
            if not self.writable:
                self.early_writes.append((z, x, y))
            if self.fail_on_put:
                raise StorageError(f"disk full writing {z}/{x}/{y}")
            self.tiles[(z, x, y)] = data

    def put_info(self, info):
        with self.lock:
            self.info = info

    def written_extent(self, zoom):
        cols = [x for z, x, _ in self.tiles if z == zoom]
        rows = [flip_row(z, y) for z, _, y in self.tiles if z == zoom]
        if not cols:
            return None
        return min(cols), min(rows), max(cols), max(rows)

    def end_writing(self):
        with self.lock:
            self.calls.append("end")
            self.writable = False

    def abort(self):
        with self.lock:
            self.calls.append("abort")
            self.writable = False


class SinkFactory:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.created = []

    def __call__(self, path):
        sink = RecordingSink(path, **self.kwargs)
        self.created.append(sink)
        return sink

    def by_stem(self):
        return {s.path.stem: s for s in self.created}


@pytest.fixture
def testland():
    # covers the center of tile 2/1/1 (-45, ~41) but not 2/2/1 (45, ~41)
    return collection(square("Testland", -60.0, 30.0, -30.0, 50.0))


@pytest.fixture
def scenario_mbtiles(tmp_path):
    meta = {
        "name": "country",
        "format": "pbf",
        "minzoom": "2",
        "maxzoom": "2",
        "bounds": "-180,-85.0511,180,85.0511",
        "json": json.dumps({"vector_layers": [{"id": "roads", "fields": {"class": "String"}}]}),
    }
    return make_mbtiles(tmp_path / "country.mbtiles", {(2, 1, 1): b"first", (2, 2, 1): b"second"}, meta)
