"""Remote store, function endpoint and change feed adapters."""

from .client import Backend, BackendCallError, BackendClient
from .feed import ChangeEvent, ChangeFeed, HttpChangeFeed, MemoryChangeFeed

__all__ = [
    "Backend",
    "BackendCallError",
    "BackendClient",
    "ChangeEvent",
    "ChangeFeed",
    "HttpChangeFeed",
    "MemoryChangeFeed",
]
