"""Stream client module."""

from ndstream.client.backoff import BackoffClass, BackoffController, BackoffPolicy, BackoffState
from ndstream.client.connection import ConnectionManager
from ndstream.client.settings import StreamSettings
from ndstream.client.stream import StreamClient, parse_record

__all__ = [
    "BackoffClass",
    "BackoffController",
    "BackoffPolicy",
    "BackoffState",
    "ConnectionManager",
    "StreamClient",
    "StreamSettings",
    "parse_record",
]
