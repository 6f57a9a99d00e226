from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .errors import ConfigurationError

DEFAULT_HIGH_WATER_MARK = 100


@dataclass(frozen=True)
class SplitConfig:
    high_water_mark: int = DEFAULT_HIGH_WATER_MARK  # suspend intake above this many in-flight tiles
    max_workers: int = 8                            # threads doing opens/copies/finalization
    batch_size: Optional[int] = None                # enumeration fetch size; default = high_water_mark
    progress: bool = True
    progress_interval: float = 0.064                # seconds between progress refreshes

    def __post_init__(self) -> None:
        for name in ("high_water_mark", "max_workers"):
            if int(getattr(self, name)) < 1:
                raise ConfigurationError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.batch_size is not None and int(self.batch_size) < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.progress_interval < 0:
            raise ConfigurationError(f"progress_interval must be >= 0, got {self.progress_interval}")

    @property
    def resume_mark(self) -> float:
        return self.high_water_mark / 2

    @property
    def fetch_size(self) -> int:
        return int(self.batch_size or self.high_water_mark)


def default_output_dir(source_path: Union[str, Path]) -> Path:
    """<dir of source>/<source stem>, e.g. data/us.mbtiles -> data/us/."""
    p = Path(source_path)
    return p.parent / p.stem
