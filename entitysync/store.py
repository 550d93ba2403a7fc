"""Store contract consumed by the sync engine, plus an in-memory store.

The engine only needs ordered range queries with resumable cursors, key
sampling for partitioning, and plain get/put/allocate for bulk loads. Real
backends implement :class:`Store`; :class:`MemoryStore` is a self-contained
implementation owned by a single test or worker.
"""

from __future__ import annotations

import base64
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from entitysync.entity import Entity, Property
from entitysync.exceptions import InvalidCursorError, NoSuchEntityError, StoreError
from entitysync.keys import Key

logger = logging.getLogger(__name__)

KEY_PROPERTY = "__key__"

QueryRow = Tuple[Key, List[Property]]


@dataclass(frozen=True)
class Cursor:
    """Opaque continuation token issued by a store for one query shape."""

    token: str

    def __str__(self) -> str:
        return self.token


class QueryIterator(ABC):
    """Ordered stream of ``(key, properties)`` rows.

    Exhaustion (``StopIteration``) is the end-of-range signal; any other
    exception is a read error.
    """

    def __iter__(self) -> Iterator[QueryRow]:
        return self

    @abstractmethod
    def __next__(self) -> QueryRow:
        ...

    @abstractmethod
    def cursor(self) -> Optional[Cursor]:
        """Cursor positioned right after the last row returned."""
        ...


class Store(ABC):
    """Abstract entity store."""

    @abstractmethod
    def range_query(
        self,
        kind: str,
        lower: Optional[Key],
        upper: Optional[Key] = None,
        start_cursor: Optional[Cursor] = None,
        equal: bool = False,
        limit: Optional[int] = None,
    ) -> QueryIterator:
        """Run ``lower <= key < upper`` (or ``key == lower`` when ``equal``) ordered by key."""
        ...

    @abstractmethod
    def sample_keys(self, kind: str, property_name: str, limit: int) -> List[Key]:
        """Keys of ``kind`` ordered ascending by ``property_name``, keys only."""
        ...

    @abstractmethod
    def get(self, key: Key) -> Entity:
        ...

    @abstractmethod
    def put(self, entity: Entity) -> Key:
        ...

    @abstractmethod
    def allocate_ids(self, kind: str, count: int, parent: Optional[Key] = None) -> List[Key]:
        ...

    def get_multi(self, keys: Sequence[Key]) -> List[Entity]:
        return [self.get(k) for k in keys]

    def put_multi(self, entities: Sequence[Entity]) -> List[Key]:
        return [self.put(e) for e in entities]


def _order_token(value: Any) -> Tuple[int, Any]:
    # mixed-type property values sort by type first
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, datetime):
        return (3, value.timestamp())
    if isinstance(value, (bytes, bytearray)):
        return (4, bytes(value))
    if isinstance(value, str):
        return (5, value.encode("utf-8"))
    return (6, str(value))


class MemoryQueryIterator(QueryIterator):
    """Iterator over a snapshot of matching keys taken at query time."""

    def __init__(self, store: "MemoryStore", shape: List[Any], keys: List[Key]):
        self._store = store
        self._shape = shape
        self._keys = keys
        self._position = 0
        self._last: Optional[Key] = None

    def __next__(self) -> QueryRow:
        while self._position < len(self._keys):
            key = self._keys[self._position]
            self._position += 1
            props = self._store._read(key)
            if props is None:
                # deleted after the snapshot
                continue
            self._last = key
            return key, props
        raise StopIteration

    def cursor(self) -> Optional[Cursor]:
        if self._last is None:
            return None
        return _make_cursor(self._shape, self._last)


def _make_cursor(shape: List[Any], after: Key) -> Cursor:
    payload = json.dumps({"q": shape, "after": after.to_flat()}, separators=(",", ":"))
    return Cursor(base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii"))


def _read_cursor(cursor: Cursor, shape: List[Any]) -> Key:
    try:
        payload = json.loads(base64.urlsafe_b64decode(cursor.token.encode("ascii")).decode("utf-8"))
        query_shape, after = payload["q"], payload["after"]
    except (ValueError, KeyError, TypeError) as exc:
        raise InvalidCursorError("Malformed cursor", operation="query", original_error=exc) from exc
    if query_shape != shape:
        raise InvalidCursorError("Cursor was issued for a different query", operation="query")
    return Key.from_flat(after)


class MemoryStore(Store):
    """In-memory store keyed by :class:`Key`.

    Each test or worker owns its own instance; there is no module-level
    registry. Safe to share between threads.
    """

    def __init__(self) -> None:
        self._entities: Dict[Key, List[Property]] = {}
        self._next_id = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entities)

    def _read(self, key: Key) -> Optional[List[Property]]:
        with self._lock:
            props = self._entities.get(key)
            return None if props is None else [Property(p.name, p.value, p.multiple, p.indexed) for p in props]

    def _allocate(self) -> int:
        self._next_id += 1
        return self._next_id

    def put(self, entity: Entity) -> Key:
        if entity.key is None:
            raise StoreError("Cannot put an entity without key", operation="put")
        with self._lock:
            key = entity.key
            if key.incomplete:
                key = key.with_id(self._allocate())
            elif key.id is not None and key.id > self._next_id:
                # never hand out an id that is already stored
                self._next_id = key.id
            self._entities[key] = [Property(p.name, p.value, p.multiple, p.indexed) for p in entity.properties]
        logger.debug(f"Stored entity {key}")
        return key

    def get(self, key: Key) -> Entity:
        props = self._read(key)
        if props is None:
            raise NoSuchEntityError(f"No such entity: {key}", operation="get", kind=key.kind)
        return Entity(key, props)

    def delete(self, key: Key) -> None:
        with self._lock:
            self._entities.pop(key, None)

    def allocate_ids(self, kind: str, count: int, parent: Optional[Key] = None) -> List[Key]:
        if count < 0:
            raise StoreError("Cannot allocate a negative number of ids", operation="allocate_ids", kind=kind)
        with self._lock:
            return [Key.new(kind, self._allocate(), parent) for _ in range(count)]

    def _keys_of_kind(self, kind: str) -> List[Key]:
        with self._lock:
            return [k for k in self._entities if k.kind == kind]

    def sample_keys(self, kind: str, property_name: str, limit: int) -> List[Key]:
        if limit <= 0:
            return []
        if property_name == KEY_PROPERTY:
            return sorted(self._keys_of_kind(kind))[:limit]
        with self._lock:
            candidates = []
            for key, props in self._entities.items():
                if key.kind != kind:
                    continue
                for prop in props:
                    if prop.name == property_name:
                        candidates.append((_order_token(prop.value), key))
                        break
        candidates.sort()
        return [key for _, key in candidates[:limit]]

    def range_query(
        self,
        kind: str,
        lower: Optional[Key],
        upper: Optional[Key] = None,
        start_cursor: Optional[Cursor] = None,
        equal: bool = False,
        limit: Optional[int] = None,
    ) -> MemoryQueryIterator:
        shape = [
            kind,
            lower.to_flat() if lower is not None else None,
            upper.to_flat() if upper is not None else None,
            equal,
            limit,
        ]
        keys = sorted(self._keys_of_kind(kind))
        if lower is not None:
            if equal:
                keys = [k for k in keys if k == lower]
            else:
                keys = [k for k in keys if k >= lower]
        if upper is not None and not equal:
            keys = [k for k in keys if k < upper]
        if start_cursor is not None:
            after = _read_cursor(start_cursor, shape)
            keys = [k for k in keys if k > after]
        if limit is not None:
            keys = keys[:limit]
        return MemoryQueryIterator(self, shape, keys)
