class WatchError(Exception):
    """Base class for all outbreak_watch errors."""


class SourceUnavailable(WatchError):
    """Raised when a scrape adapter cannot deliver records for a source."""


class PersistenceConflict(WatchError):
    """Raised when an upsert hits an existing row. Callers treat it as success."""


class PreviousStateUnreadable(WatchError):
    """Raised when the stored watermark cannot be read or decoded."""


class RecipientUnreachable(WatchError):
    """Raised when a message cannot be delivered to a recipient."""


class ConfigurationError(WatchError):
    """Raised when required settings or source configuration are missing or invalid."""


class ParseError(WatchError):
    """Raised when a raw record cannot be normalized into a canonical record."""
