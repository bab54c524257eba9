"""Exception types raised by catsync."""

__all__ = [
    "CatsyncError",
    "ConfigurationError",
    "CacheError",
    "WriterError",
    "CategoryPathError",
    "ParseFailure",
    "FetchError",
]


class CatsyncError(Exception):
    """Base class for all catsync errors."""
    pass


class ConfigurationError(CatsyncError):
    """Raised when required settings are missing or invalid."""
    pass


class CacheError(CatsyncError):
    """Raised when the cache is misused or its directories are unusable."""
    pass


class WriterError(CatsyncError):
    """Raised when an output document cannot be written."""
    pass


class CategoryPathError(WriterError):
    """Raised for an unknown category id or a cyclic parent chain."""
    pass


class ParseFailure(CatsyncError):
    """Raised when a feed document cannot be parsed.

    Attributes:
        source: Name of the file or stream that failed
    """

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class FetchError(CatsyncError):
    """Raised when a remote document cannot be fetched."""
    pass
