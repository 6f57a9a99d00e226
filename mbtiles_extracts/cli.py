from __future__ import annotations
import argparse
import logging
import sys
from time import perf_counter

from .config import DEFAULT_HIGH_WATER_MARK, SplitConfig
from .errors import ConfigurationError, StorageError
from .split import split_mbtiles

logger = logging.getLogger(__name__)


def _positive_int(raw: str) -> int:
    try:
        v = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Not an integer: {raw}")
    if v < 1:
        raise argparse.ArgumentTypeError(f"Must be >= 1: {raw}")
    return v


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="mbtiles-extracts",
        description="Split an MBTiles archive into one archive per polygon region.",
    )
    ap.add_argument("source", help="Path to the source .mbtiles file.")
    ap.add_argument("polygons", help="GeoJSON (or any geopandas-readable file) with region polygons.")
    ap.add_argument("--property", "-p", dest="prop_name", required=True,
                    help="Polygon property whose value names each output archive.")
    ap.add_argument("--outdir", default=None,
                    help="Output directory (default: <source dir>/<source name>/).")
    ap.add_argument("--high-water", type=_positive_int, default=DEFAULT_HIGH_WATER_MARK,
                    help="Suspend reading above this many in-flight tiles (default: %(default)s).")
    ap.add_argument("--workers", type=_positive_int, default=8,
                    help="Worker threads for reads/writes (default: %(default)s).")
    ap.add_argument("--batch-size", type=_positive_int, default=None,
                    help="Rows fetched per enumeration batch (default: --high-water).")
    ap.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    ap.add_argument("--log-level", default="INFO")
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(relativeCreated).0fms] %(levelname)s %(name)s: %(message)s",
    )

    start = perf_counter()
    try:
        config = SplitConfig(
            high_water_mark=args.high_water,
            max_workers=args.workers,
            batch_size=args.batch_size,
            progress=not args.no_progress,
        )
        result = split_mbtiles(
            args.source,
            args.polygons,
            args.prop_name,
            output_dir=args.outdir,
            config=config,
        )
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 2
    except StorageError as e:
        logger.error("Storage error: %s", e)
        return 1

    logger.info(
        "Split complete in %.2f seconds: %d partitions, %d/%d tiles written",
        perf_counter() - start, len(result.partitions), result.tiles_written, result.tiles_done,
    )
    for key in sorted(result.partitions):
        logger.info("  %s: %d tiles -> %s", key, result.written[key], result.partitions[key])
    return 0


if __name__ == "__main__":
    sys.exit(main())
