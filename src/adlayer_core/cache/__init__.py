"""Ephemeral and durable caching tiers."""
from .ephemeral import CacheEntry, EphemeralCache
from .redis_store import RedisSnapshotStore
from .snapshot_store import (
    GuardedSnapshotStore,
    InMemorySnapshotStore,
    SnapshotRecord,
    SnapshotStore,
    SQLiteSnapshotStore,
)
from .variants import VariantKey, VariantSet, derive_variants

__all__ = [
    "CacheEntry",
    "EphemeralCache",
    "SnapshotRecord",
    "SnapshotStore",
    "InMemorySnapshotStore",
    "SQLiteSnapshotStore",
    "RedisSnapshotStore",
    "GuardedSnapshotStore",
    "VariantKey",
    "VariantSet",
    "derive_variants",
]
