from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, TypeVar
import logging
import queue

from .registry import Partition
from .store import TileCoord, TileSource

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventKind(Enum):
    OPENED = "opened"
    COPIED = "copied"


@dataclass(frozen=True)
class CompletionEvent:
    kind: EventKind
    key: str
    coord: Optional[TileCoord] = None
    written: bool = False
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CopyPool:
    """
    Runs partition opens and tile copies on a thread pool.

    Workers never touch shared counters or partition state; each job reports
    back through one completion queue which the coordinating loop drains.
    Failures travel on the same queue as `CompletionEvent.error`.
    """

    def __init__(self, source: TileSource, max_workers: int = 8):
        self.source = source
        self.max_workers = int(max_workers)
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="tile-copy")
        self._events: "queue.Queue[CompletionEvent]" = queue.Queue()

    def _submit(self, kind: EventKind, part: Partition, job: Callable[[], bool],
                coord: Optional[TileCoord] = None) -> None:
        def run() -> None:
            try:
                written = job()
            except Exception as e:
                logger.debug("%s job for %s failed: %s", kind.value, part.key, e)
                self._events.put(CompletionEvent(kind, part.key, coord, error=e))
            else:
                self._events.put(CompletionEvent(kind, part.key, coord, written=bool(written)))

        self._executor.submit(run)

    def open_partition(self, part: Partition) -> None:
        def job() -> bool:
            part.path.parent.mkdir(parents=True, exist_ok=True)
            part.sink.open()
            part.sink.begin_writing()
            return False

        self._submit(EventKind.OPENED, part, job)

    def copy(self, part: Partition, coord: TileCoord) -> None:
        def job() -> bool:
            data = self.source.get_tile(coord.z, coord.x, coord.y)
            if data is None:
                logger.debug("Tile %s missing from source, skipped", coord)
                return False
            part.sink.put_tile(coord.z, coord.x, coord.y, data)
            return True

        self._submit(EventKind.COPIED, part, job, coord)

    def next_event(self, block: bool = True) -> Optional[CompletionEvent]:
        try:
            return self._events.get(block=block)
        except queue.Empty:
            return None

    def map_partitions(self, fn: Callable[[Partition], T], partitions: Iterable[Partition]) -> List[T]:
        """Run fn on every partition concurrently; the first failure is re-raised."""
        futures = [self._executor.submit(fn, p) for p in partitions]
        results: List[T] = []
        try:
            for fut in as_completed(futures):
                results.append(fut.result())
        except Exception:
            for fut in futures:
                fut.cancel()
            raise
        return results

    def shutdown(self, cancel: bool = False) -> None:
        self._executor.shutdown(wait=True, cancel_futures=cancel)
