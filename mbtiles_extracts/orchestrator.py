from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional
import logging

from tqdm import tqdm

from .assigner import RegionAssigner
from .config import SplitConfig
from .errors import ExtractError, StorageError
from .metadata import update_partition_info
from .registry import PartitionRegistry, SplitCounters
from .store import MBTilesSink, TileCoord, TileSink, TileSource
from .writer_pool import CompletionEvent, CopyPool, EventKind

logger = logging.getLogger(__name__)


@dataclass
class SplitResult:
    tiles_got: int
    tiles_done: int
    tiles_dropped: int
    partitions: Dict[str, Path] = field(default_factory=dict)
    written: Dict[str, int] = field(default_factory=dict)

    @property
    def tiles_written(self) -> int:
        return sum(self.written.values())


def _as_fatal(error: BaseException, what: str) -> BaseException:
    if isinstance(error, ExtractError):
        return error
    if isinstance(error, OSError):
        wrapped = StorageError(f"{what}: {error}")
        wrapped.__cause__ = error
        return wrapped
    return error


class SplitOrchestrator:
    """
    Routes every source tile to its region partition.

    One coordinating loop (the caller's thread) pulls coordinates from the
    source, classifies them and reacts to completion events from the copy
    pool. Counters and partition state are only touched here. Intake is
    suspended above `high_water_mark` in-flight tiles and resumed below half
    of it.
    """

    def __init__(
        self,
        source: TileSource,
        assigner: RegionAssigner,
        output_dir,
        config: Optional[SplitConfig] = None,
        sink_factory: Callable[[Path], TileSink] = MBTilesSink,
        suffix: str = ".mbtiles",
    ):
        self.source = source
        self.assigner = assigner
        self.config = config or SplitConfig()
        self.counters = SplitCounters()
        self.pool = CopyPool(source, max_workers=self.config.max_workers)
        self.registry = PartitionRegistry(self.pool, output_dir, suffix=suffix, sink_factory=sink_factory)
        self.paused = False
        self.ended = False
        self._progress: Optional[tqdm] = None

    # ------------------------------------------------------------------
    def _route(self, coord: TileCoord) -> None:
        c = self.counters
        c.fetched()
        if not self.paused and c.in_flight > self.config.high_water_mark:
            self.paused = True
            logger.debug("Suspending intake at %d in-flight tiles", c.in_flight)

        key = self.assigner.assign(coord.z, coord.x, coord.y)
        if key is None:
            c.tiles_dropped += 1
            self._tile_done()
            return
        self.registry.dispatch(key, coord)

    def _tile_done(self) -> None:
        c = self.counters
        c.completed()
        if self._progress is not None:
            self._progress.update(1)
        if self.paused and c.in_flight < self.config.resume_mark:
            self.paused = False
            logger.debug("Resuming intake at %d in-flight tiles", c.in_flight)

    def _handle(self, event: CompletionEvent) -> None:
        if not event.ok:
            raise _as_fatal(event.error, f"{event.kind.value} failed for partition {event.key}")
        if event.kind is EventKind.OPENED:
            self.registry.mark_writable(event.key)
        else:
            self.registry.record_completion(event.key, event.written)
            self._tile_done()

    # ------------------------------------------------------------------
    def _shutdown(self) -> SplitResult:
        info = self.source.info()
        parts = list(self.registry)
        logger.info("All %d tiles done, finalizing %d partitions", self.counters.tiles_done, len(parts))
        try:
            self.pool.map_partitions(lambda p: update_partition_info(p, info), parts)
            self.pool.map_partitions(lambda p: p.sink.end_writing(), parts)
        except Exception as e:
            raise _as_fatal(e, "Finalizing partitions failed")

        if self._progress is not None:
            self._progress.close()
        result = SplitResult(
            tiles_got=self.counters.tiles_got,
            tiles_done=self.counters.tiles_done,
            tiles_dropped=self.counters.tiles_dropped,
            partitions={p.key: p.path for p in parts},
            written={p.key: p.written for p in parts},
        )
        logger.info(
            "tiles processed: %d (%d written to %d partitions, %d outside every region)",
            result.tiles_done, result.tiles_written, len(parts), result.tiles_dropped,
        )
        return result

    def _abort_partitions(self) -> None:
        for part in self.registry:
            try:
                part.sink.abort()
            except StorageError as e:
                logger.warning("Could not release partition %s: %s", part.key, e)

    def run(self) -> SplitResult:
        cfg = self.config
        tiles = self.source.iter_tiles(cfg.fetch_size)
        self._progress = tqdm(
            unit="tile",
            desc="tiles processed",
            mininterval=cfg.progress_interval,
            disable=not cfg.progress,
        )
        finished = False
        try:
            while not self.counters.quiescent(self.ended):
                event = self.pool.next_event(block=False)
                if event is not None:
                    self._handle(event)
                    continue
                if self.ended or self.paused:
                    # something is in flight, otherwise we would be quiescent or resumed
                    self._handle(self.pool.next_event(block=True))
                    continue
                coord = next(tiles, None)
                if coord is None:
                    self.ended = True
                    logger.info("Source enumeration ended after %d tiles", self.counters.tiles_got)
                    continue
                self._route(coord)

            result = self._shutdown()
            finished = True
            return result
        finally:
            close = getattr(tiles, "close", None)
            if close is not None:
                close()
            self.pool.shutdown(cancel=not finished)
            if not finished:
                self._abort_partitions()
            self._progress.close()
            self.source.close()
