from __future__ import annotations
from pathlib import Path
from typing import Optional, Union
import logging

from .assigner import RegionAssigner
from .config import SplitConfig, default_output_dir
from .errors import ConfigurationError
from .orchestrator import SplitOrchestrator, SplitResult
from .store import MBTilesSource

logger = logging.getLogger(__name__)


def split_mbtiles(
    source_path: Union[str, Path],
    polygons,
    prop_name: str,
    output_dir: Optional[Union[str, Path]] = None,
    config: Optional[SplitConfig] = None,
) -> SplitResult:
    """
    Split `source_path` into one MBTiles file per region of `polygons`.

    Regions are named by the `prop_name` property of each polygon; output
    files land in `output_dir` (default: a directory named after the source
    file, next to it) as `<region_key>.mbtiles`.
    """
    if not prop_name:
        raise ConfigurationError("Property name to extract by not provided.")
    source_path = Path(source_path)
    out = Path(output_dir) if output_dir is not None else default_output_dir(source_path)

    assigner = RegionAssigner(polygons, prop_name)
    source = MBTilesSource(source_path)
    logger.info("Splitting %s by %r into %s", source_path, prop_name, out)
    orchestrator = SplitOrchestrator(
        source=source,
        assigner=assigner,
        output_dir=out,
        config=config,
        suffix=source_path.suffix or ".mbtiles",
    )
    return orchestrator.run()
