from __future__ import annotations
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple
import json
import logging
import sqlite3
import threading

from .errors import StorageError
from .projection import flip_row

logger = logging.getLogger(__name__)


class TileCoord(NamedTuple):
    z: int
    x: int
    y: int  # XYZ row

    def __str__(self) -> str:
        return f"{self.z}/{self.x}/{self.y}"


# (minx, miny, maxx, maxy) in raw stored (TMS) rows
Extent = Tuple[int, int, int, int]

_INT_KEYS = ("minzoom", "maxzoom")
_LIST_KEYS = ("bounds", "center")
# structured keys that live inside the single `json` metadata row
_JSON_KEYS = ("vector_layers", "tilestats")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS metadata (name TEXT, value TEXT);
CREATE UNIQUE INDEX IF NOT EXISTS metadata_name ON metadata (name);
CREATE TABLE IF NOT EXISTS tiles (
    zoom_level INTEGER,
    tile_column INTEGER,
    tile_row INTEGER,
    tile_data BLOB
);
CREATE UNIQUE INDEX IF NOT EXISTS tiles_zxy ON tiles (zoom_level, tile_column, tile_row);
"""


@contextmanager
def _storage_op(what: str, path: Path):
    try:
        yield
    except sqlite3.Error as e:
        raise StorageError(f"{what} failed for {path}: {e}") from e


# ------------------------- Metadata (de)serialization ------------------------- #
class TileInfo(dict):
    """Metadata dict that remembers which keys were read from the `json` row."""

    def __init__(self, *args, json_keys: Iterable[str] = (), **kwargs):
        super().__init__(*args, **kwargs)
        self.json_keys = set(json_keys)


def parse_metadata(rows: Iterable[Tuple[str, Any]]) -> TileInfo:
    """MBTiles metadata rows -> info dict (numbers parsed, `json` row merged in)."""
    info = TileInfo()
    top_level = set()
    for name, value in rows:
        if name != "json":
            top_level.add(name)
        try:
            if name == "json":
                packed = json.loads(value)
                info.update(packed)
                info.json_keys.update(packed)
            elif name in _INT_KEYS:
                info[name] = int(float(value))
            elif name in _LIST_KEYS:
                info[name] = [float(v) for v in str(value).split(",")]
            else:
                info[name] = value
        except (TypeError, ValueError) as e:
            raise StorageError(f"Invalid metadata value for {name!r}: {value!r}") from e
    # a key stored both ways stays a top-level row
    info.json_keys -= top_level
    return info


def serialize_metadata(info: Dict[str, Any]) -> List[Tuple[str, str]]:
    rows: List[Tuple[str, str]] = []
    packed: Dict[str, Any] = {}
    json_keys = set(_JSON_KEYS) | getattr(info, "json_keys", set())
    for name, value in info.items():
        if value is None:
            continue
        if name in json_keys:
            packed[name] = value
        elif name in _LIST_KEYS and isinstance(value, (list, tuple)):
            rows.append((name, ",".join(str(v) for v in value)))
        elif isinstance(value, (dict, list, tuple)):
            packed[name] = value
        else:
            rows.append((name, str(value)))
    if packed:
        rows.append(("json", json.dumps(packed, separators=(",", ":"))))
    return rows


# ------------------------- Interfaces ------------------------- #
class TileSource:
    def info(self) -> Dict[str, Any]:
        raise NotImplementedError

    def iter_tiles(self, batch_size: int = 100) -> Iterator[TileCoord]:
        raise NotImplementedError

    def get_tile(self, z: int, x: int, y: int) -> Optional[bytes]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class TileSink:
    path: Path

    def open(self) -> None:
        raise NotImplementedError

    def begin_writing(self) -> None:
        raise NotImplementedError

    def put_tile(self, z: int, x: int, y: int, data: bytes) -> None:
        raise NotImplementedError

    def put_info(self, info: Dict[str, Any]) -> None:
        raise NotImplementedError

    def written_extent(self, zoom: int) -> Optional[Extent]:
        raise NotImplementedError

    def end_writing(self) -> None:
        raise NotImplementedError

    def abort(self) -> None:
        """Release the store without committing. Must be safe to call twice."""


# ------------------------- MBTiles source ------------------------- #
class MBTilesSource(TileSource):
    """
    Read side of an MBTiles archive.

    Tile reads happen on worker threads, so every thread gets its own
    read-only connection. The enumeration cursor uses a dedicated one as well.
    """

    def __init__(self, path):
        self.path = Path(path)
        if not self.path.is_file():
            raise StorageError(f"MBTiles source not found: {self.path}")
        self._local = threading.local()
        self._lock = threading.Lock()
        self._conns: List[sqlite3.Connection] = []

        try:
            with _storage_op("Opening source", self.path):
                conn = self._conn()
                conn.execute("SELECT 1 FROM tiles LIMIT 1").fetchall()
                conn.execute("SELECT 1 FROM metadata LIMIT 1").fetchall()
        except StorageError:
            self.close()
            raise
        logger.info("MBTilesSource opened %s", self.path)

    def _connect(self) -> sqlite3.Connection:
        uri = self.path.resolve().as_uri() + "?mode=ro"
        with _storage_op("Connecting", self.path):
            return sqlite3.connect(uri, uri=True, check_same_thread=False)

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._lock:
                self._conns.append(conn)
        return conn

    def info(self) -> Dict[str, Any]:
        with _storage_op("Reading metadata", self.path):
            conn = self._conn()
            info = parse_metadata(conn.execute("SELECT name, value FROM metadata").fetchall())
            if "minzoom" not in info or "maxzoom" not in info:
                lo, hi = conn.execute("SELECT MIN(zoom_level), MAX(zoom_level) FROM tiles").fetchone()
                if lo is not None:
                    info.setdefault("minzoom", int(lo))
                    info.setdefault("maxzoom", int(hi))
        return info

    def iter_tiles(self, batch_size: int = 100) -> Iterator[TileCoord]:
        conn = self._connect()
        try:
            with _storage_op("Enumerating tiles", self.path):
                cur = conn.execute("SELECT zoom_level, tile_column, tile_row FROM tiles")
                rows = cur.fetchmany(batch_size)
            while rows:
                for z, x, row in rows:
                    yield TileCoord(int(z), int(x), flip_row(int(z), int(row)))
                with _storage_op("Enumerating tiles", self.path):
                    rows = cur.fetchmany(batch_size)
        finally:
            conn.close()

    def get_tile(self, z: int, x: int, y: int) -> Optional[bytes]:
        with _storage_op(f"Reading tile {z}/{x}/{y}", self.path):
            row = self._conn().execute(
                "SELECT tile_data FROM tiles WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?",
                (z, x, flip_row(z, y)),
            ).fetchone()
        if row is None or row[0] is None:
            return None
        return bytes(row[0])

    def close(self) -> None:
        with self._lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            conn.close()
        logger.debug("MBTilesSource closed %s (%d connections)", self.path, len(conns))


# ------------------------- MBTiles sink ------------------------- #
class MBTilesSink(TileSink):
    """
    Write side of one destination archive. Calls come from several worker
    threads and are serialized on a per-sink lock; everything between
    begin_writing() and end_writing() is a single transaction.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._writing = False

    def _require(self, writing: bool = True) -> sqlite3.Connection:
        if self._conn is None or (writing and not self._writing):
            raise RuntimeError(f"{self.path} is not open for writing")
        return self._conn

    def open(self) -> None:
        with self._lock:
            try:
                if self.path.exists():
                    self.path.unlink()
            except OSError as e:
                raise StorageError(f"Cannot replace existing {self.path}: {e}") from e
            with _storage_op("Creating", self.path):
                self._conn = sqlite3.connect(str(self.path), check_same_thread=False, isolation_level=None)

    def begin_writing(self) -> None:
        with self._lock:
            conn = self._require(writing=False)
            with _storage_op("Starting write", self.path):
                conn.executescript(_SCHEMA)
                conn.execute("BEGIN")
            self._writing = True

    def put_tile(self, z: int, x: int, y: int, data: bytes) -> None:
        with self._lock:
            conn = self._require()
            with _storage_op(f"Writing tile {z}/{x}/{y}", self.path):
                conn.execute(
                    "INSERT OR REPLACE INTO tiles (zoom_level, tile_column, tile_row, tile_data) VALUES (?, ?, ?, ?)",
                    (z, x, flip_row(z, y), sqlite3.Binary(data)),
                )

    def put_info(self, info: Dict[str, Any]) -> None:
        rows = serialize_metadata(info)
        with self._lock:
            conn = self._require()
            with _storage_op("Writing metadata", self.path):
                conn.execute("DELETE FROM metadata")
                conn.executemany("INSERT INTO metadata (name, value) VALUES (?, ?)", rows)

    def written_extent(self, zoom: int) -> Optional[Extent]:
        with self._lock:
            conn = self._require()
            with _storage_op("Querying extent", self.path):
                row = conn.execute(
                    "SELECT MIN(tile_column), MIN(tile_row), MAX(tile_column), MAX(tile_row) "
                    "FROM tiles WHERE zoom_level = ?",
                    (zoom,),
                ).fetchone()
        if row is None or row[0] is None:
            return None
        return tuple(int(v) for v in row)

    def end_writing(self) -> None:
        with self._lock:
            conn = self._require()
            with _storage_op("Committing", self.path):
                conn.execute("COMMIT")
            conn.close()
            self._conn = None
            self._writing = False
        logger.debug("MBTilesSink closed %s", self.path)

    def abort(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
            writing, self._writing = self._writing, False
            if conn is None:
                return
            try:
                with _storage_op("Rolling back", self.path):
                    if writing and conn.in_transaction:
                        conn.execute("ROLLBACK")
            finally:
                conn.close()
        logger.debug("MBTilesSink aborted %s", self.path)
