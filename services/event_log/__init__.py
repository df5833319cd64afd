"""Play event log with listen validity classification."""

from .event_log import EventLog, is_valid_listen, minimum_listen_seconds

__all__ = ["EventLog", "is_valid_listen", "minimum_listen_seconds"]
