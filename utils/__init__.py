"""Utility modules for dbwatch."""
from utils.logger import setup_logging
from utils.formatters import format_value, format_tags, format_duration, format_timestamp, time_ago
from utils.counters import Counters
from utils.backoff import retry_with_backoff
from utils.errors import DBWatchError, ConfigError, CollectionError, Unavailable, SchemaMismatch, Cancelled
