"""Split one MBTiles archive into per-region archives."""

__version__ = "0.1.0"

from .assigner import RegionAssigner, region_key
from .config import SplitConfig
from .errors import ConfigurationError, ExtractError, StorageError
from .orchestrator import SplitOrchestrator, SplitResult
from .split import split_mbtiles
from .store import MBTilesSink, MBTilesSource, TileCoord

__all__ = [
    "ConfigurationError",
    "ExtractError",
    "MBTilesSink",
    "MBTilesSource",
    "RegionAssigner",
    "SplitConfig",
    "SplitOrchestrator",
    "SplitResult",
    "StorageError",
    "TileCoord",
    "region_key",
    "split_mbtiles",
]
