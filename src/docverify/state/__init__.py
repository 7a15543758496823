"""
State persistence for the document verification poller.

This package provides a key-value persistence interface with pluggable
backends so the polling store can survive reloads and stay testable.
"""

from .manager import (
    FileKeyValueStore,
    InMemoryKeyValueStore,
    KeyValueStore,
    KeyValueStoreFactory,
)

__all__ = [
    "KeyValueStore",
    "KeyValueStoreFactory",
    "InMemoryKeyValueStore",
    "FileKeyValueStore",
]
