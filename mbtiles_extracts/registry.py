from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional
import logging

from .store import MBTilesSink, TileCoord, TileSink

logger = logging.getLogger(__name__)


class PartitionState(Enum):
    # a key with no Partition object yet is ABSENT
    OPENING = "opening"
    WRITABLE = "writable"


@dataclass(eq=False)
class Partition:
    key: str
    path: Path
    sink: TileSink
    state: PartitionState = PartitionState.OPENING
    pending: List[TileCoord] = field(default_factory=list)
    dispatched: int = 0   # copies handed to the executor
    completed: int = 0    # copies finished (written or source tile absent)
    written: int = 0


@dataclass
class SplitCounters:
    """Global progress counters. Only the coordinating loop mutates them."""
    tiles_got: int = 0
    tiles_done: int = 0
    tiles_dropped: int = 0

    @property
    def in_flight(self) -> int:
        return self.tiles_got - self.tiles_done

    def fetched(self) -> None:
        self.tiles_got += 1

    def completed(self) -> None:
        if self.tiles_done >= self.tiles_got:
            raise RuntimeError(
                f"Completion without a fetched tile (got={self.tiles_got}, done={self.tiles_done})"
            )
        self.tiles_done += 1

    def quiescent(self, ended: bool) -> bool:
        return ended and self.tiles_done == self.tiles_got


class PartitionRegistry:
    """
    Per-region lifecycle: ABSENT -> OPENING -> WRITABLE.

    Tiles routed to a region whose store is still opening are buffered and
    handed to the executor only once the store reports it is writable.
    """

    def __init__(
        self,
        executor,
        output_dir,
        suffix: str = ".mbtiles",
        sink_factory: Callable[[Path], TileSink] = MBTilesSink,
    ):
        self._executor = executor
        self.output_dir = Path(output_dir)
        self.suffix = suffix
        self._sink_factory = sink_factory
        self._partitions: Dict[str, Partition] = {}

    def __len__(self) -> int:
        return len(self._partitions)

    def __iter__(self) -> Iterator[Partition]:
        return iter(list(self._partitions.values()))

    def __contains__(self, key: str) -> bool:
        return key in self._partitions

    def get(self, key: str) -> Optional[Partition]:
        return self._partitions.get(key)

    def path_for(self, key: str) -> Path:
        return self.output_dir / f"{key}{self.suffix}"

    def _create(self, key: str) -> Partition:
        path = self.path_for(key)
        part = Partition(key=key, path=path, sink=self._sink_factory(path))
        self._partitions[key] = part
        logger.info("Opening partition %s -> %s", key, path)
        return part

    def _send(self, part: Partition, coord: TileCoord) -> None:
        part.dispatched += 1
        self._executor.copy(part, coord)

    def dispatch(self, key: str, coord: TileCoord) -> None:
        part = self._partitions.get(key)
        if part is None:
            part = self._create(key)
            part.pending.append(coord)
            self._executor.open_partition(part)
        elif part.state is PartitionState.OPENING:
            part.pending.append(coord)
        else:
            self._send(part, coord)

    def mark_writable(self, key: str) -> Partition:
        part = self._partitions.get(key)
        if part is None or part.state is not PartitionState.OPENING:
            raise RuntimeError(f"Partition {key!r} is not opening")
        part.state = PartitionState.WRITABLE
        logger.debug("Partition %s writable, draining %d buffered tiles", key, len(part.pending))
        # LIFO; order within the buffer carries no meaning
        while part.pending:
            self._send(part, part.pending.pop())
        return part

    def record_completion(self, key: str, written: bool) -> None:
        part = self._partitions[key]
        if part.completed >= part.dispatched:
            raise RuntimeError(
                f"Partition {key!r} completed more copies than were dispatched ({part.dispatched})"
            )
        part.completed += 1
        if written:
            part.written += 1
