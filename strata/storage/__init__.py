"""Partition store backends."""

from strata.storage.base import PartitionStore, StorageError, StorageUnavailableError
from strata.storage.memory import InMemoryPartitionStore
from strata.storage.sqlite import SQLitePartitionStore

__all__ = [
    "InMemoryPartitionStore",
    "PartitionStore",
    "SQLitePartitionStore",
    "StorageError",
    "StorageUnavailableError",
]
