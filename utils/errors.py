"""Error taxonomy shared by collectors, the history store and sinks."""


class DBWatchError(Exception):
    """Base error for the monitoring agent."""


class ConfigError(DBWatchError):
    """Invalid or missing configuration."""


class CollectionError(DBWatchError):
    """A diagnostic query could not produce usable rows."""

    def __init__(self, message, source_id=None):
        super().__init__(message)
        self.source_id = source_id


class Unavailable(CollectionError):
    """Target unreachable, timed out, or the collection was cancelled."""


class SchemaMismatch(CollectionError):
    """Result shape no longer matches the source's column mapping."""

    def __init__(self, message, source_id=None, missing_columns=None):
        super().__init__(message, source_id=source_id)
        self.missing_columns = list(missing_columns or [])


class SinkDeliveryError(DBWatchError):
    """A notification sink could not deliver an alert event."""

    def __init__(self, message, sink=None):
        super().__init__(message)
        self.sink = sink


class Cancelled(Unavailable):
    """Collection interrupted by shutdown; not a failure of the target."""
