class ExtractError(Exception):
    """Base class for every error raised while splitting a tile archive."""


class ConfigurationError(ExtractError, ValueError):
    """Bad run parameters. Always raised before any tile I/O starts."""


class StorageError(ExtractError, OSError):
    """Open/read/write/metadata failure on the source or a destination store."""
