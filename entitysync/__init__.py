"""Sync entity store kinds into an analytical sink, range by range.

Layout:
    entitysync.keys          - Hierarchical keys and their total order
    entitysync.entity        - Entities, properties and value types
    entitysync.codec         - Entity <-> JSON document format
    entitysync.store         - Store contract and in-memory store
    entitysync.partitioning  - Key ranges and scatter-sample partitioning
    entitysync.sync          - Range scan and export engine
    entitysync.sinks         - Sink contract and the insertAll sink
    entitysync.runner        - Config-driven sync of a kind with checkpoints
    entitysync.cli           - entity-sync command line entrypoint
"""

__version__ = "1.0.0"

# =============================================================================
# Public API Re-exports
# =============================================================================

from entitysync.entity import BlobKey, Entity, Property, ValueType
from entitysync.exceptions import (
    CodecError,
    ConfigValidationError,
    EntitySyncError,
    IngestionError,
    InvalidCursorError,
    InvalidKeyError,
    InvalidRangeError,
    StoreError,
    StoreTimeoutError,
    SyncCancelledError,
    SyncErrors,
)
from entitysync.keys import Key, compare_keys, path_of
from entitysync.codec import decode_entity, encode_entity
from entitysync.store import Cursor, MemoryStore, Store
from entitysync.partitioning import KeyRange, partition
from entitysync.sinks import Destination, InsertRow, RowError, Sink
from entitysync.sync import RangeSyncer, SyncResult
from entitysync.scheduling import QueueScheduler, Scheduler

__all__ = [
    "__version__",
    "BlobKey",
    "CodecError",
    "ConfigValidationError",
    "Cursor",
    "Destination",
    "Entity",
    "EntitySyncError",
    "IngestionError",
    "InsertRow",
    "InvalidCursorError",
    "InvalidKeyError",
    "InvalidRangeError",
    "Key",
    "KeyRange",
    "MemoryStore",
    "Property",
    "QueueScheduler",
    "RangeSyncer",
    "RowError",
    "Scheduler",
    "Sink",
    "Store",
    "StoreError",
    "StoreTimeoutError",
    "SyncCancelledError",
    "SyncErrors",
    "SyncResult",
    "ValueType",
    "compare_keys",
    "decode_entity",
    "encode_entity",
    "partition",
    "path_of",
]
