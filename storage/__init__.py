"""
Location storage module.

This module provides:
- LocationRecord and StoreStats models
- LocationStore, the SQLite-backed store with TTL eviction
"""

from storage.models import LocationRecord, StoreStats
from storage.location_store import (
    DEFAULT_QUERY_LIMIT,
    DEFAULT_TTL_SECONDS,
    MAX_QUERY_LIMIT,
    LocationStore,
)

__all__ = [
    "LocationRecord",
    "StoreStats",
    "LocationStore",
    "DEFAULT_QUERY_LIMIT",
    "DEFAULT_TTL_SECONDS",
    "MAX_QUERY_LIMIT",
]
