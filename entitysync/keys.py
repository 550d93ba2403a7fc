"""Hierarchical entity keys and their total ordering.

A key is an ordered path of ``(kind, identifier)`` elements, ancestor first.
The identifier is either a non-empty string name or a non-zero integer id;
only the final element may carry neither (an incomplete key, assigned an id
when the entity is stored).

Keys travel in two encodings:

- the flat array ``[kind, identifier, kind, identifier, ...]`` used inside
  entity documents (``null`` marks an incomplete final element);
- a URL-safe string (base64 of the compact flat array) used for
  idempotency ids and scheduler parameters.
"""

from __future__ import annotations

import base64
import binascii
import functools
import json
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

from entitysync.exceptions import InvalidKeyError

MAX_INT64 = 2 ** 63 - 1
MIN_INT64 = -(2 ** 63)

Identifier = Union[str, int, None]


@dataclass(frozen=True)
class PathElement:
    """One ``(kind, identifier)`` step of a key path."""

    kind: str
    name: Optional[str] = None
    id: Optional[int] = None

    @property
    def incomplete(self) -> bool:
        return self.name is None and self.id is None

    @property
    def identifier(self) -> Identifier:
        return self.name if self.name is not None else self.id

    @classmethod
    def of(cls, kind: Any, identifier: Any) -> "PathElement":
        if not isinstance(kind, str) or not kind:
            raise InvalidKeyError("Key kind must be a non-empty string", raw=kind)
        if identifier is None:
            return cls(kind)
        if isinstance(identifier, bool):
            raise InvalidKeyError(f"Invalid identifier type for kind '{kind}'", raw=identifier)
        if isinstance(identifier, str):
            if not identifier:
                raise InvalidKeyError(f"Empty key name for kind '{kind}'", raw=identifier)
            return cls(kind, name=identifier)
        if isinstance(identifier, int):
            if identifier == 0:
                raise InvalidKeyError(f"Zero key id for kind '{kind}'", raw=identifier)
            if not MIN_INT64 <= identifier <= MAX_INT64:
                raise InvalidKeyError(f"Key id out of 64-bit range for kind '{kind}'", raw=identifier)
            return cls(kind, id=identifier)
        raise InvalidKeyError(f"Invalid identifier type for kind '{kind}'", raw=identifier)


@functools.total_ordering
@dataclass(frozen=True)
class Key:
    """Immutable key owning its full root-to-leaf path."""

    path: Tuple[PathElement, ...]

    def __post_init__(self) -> None:
        if not isinstance(self.path, tuple) or not self.path:
            raise InvalidKeyError("Key path must be a non-empty tuple", raw=self.path)
        for element in self.path[:-1]:
            if element.incomplete:
                raise InvalidKeyError("Only the last key element may be incomplete", raw=self.path)

    @classmethod
    def new(cls, kind: str, identifier: Identifier = None, parent: Optional["Key"] = None) -> "Key":
        """Build a key for ``kind`` under an optional parent."""
        prefix: Tuple[PathElement, ...] = ()
        if parent is not None:
            if parent.incomplete:
                raise InvalidKeyError("Parent key must be complete", raw=parent.to_flat())
            prefix = parent.path
        return cls(prefix + (PathElement.of(kind, identifier),))

    @classmethod
    def from_path(cls, *pairs: Any) -> "Key":
        """Build a key from alternating kind/identifier arguments.

        >>> Key.from_path("Account", 1, "Order", "o-17")
        Key('Account', 1, 'Order', 'o-17')
        """
        return cls.from_flat(pairs)

    @classmethod
    def from_flat(cls, flat: Sequence[Any]) -> "Key":
        if not isinstance(flat, (list, tuple)):
            raise InvalidKeyError("Flat key must be an array", raw=flat)
        if not flat or len(flat) % 2 != 0:
            raise InvalidKeyError("Flat key must alternate kind and identifier", raw=flat)
        elements = tuple(
            PathElement.of(flat[i], flat[i + 1]) for i in range(0, len(flat), 2)
        )
        return cls(elements)

    def to_flat(self) -> List[Identifier]:
        flat: List[Identifier] = []
        for element in self.path:
            flat.append(element.kind)
            flat.append(element.identifier)
        return flat

    def encode(self) -> str:
        """Return the URL-safe string form of this key."""
        raw = json.dumps(self.to_flat(), separators=(",", ":"), ensure_ascii=False)
        return base64.urlsafe_b64encode(raw.encode("utf-8")).rstrip(b"=").decode("ascii")

    @classmethod
    def decode(cls, encoded: str) -> "Key":
        if not isinstance(encoded, str) or not encoded:
            raise InvalidKeyError("Encoded key must be a non-empty string", raw=encoded)
        padded = encoded + "=" * (-len(encoded) % 4)
        try:
            raw = base64.urlsafe_b64decode(padded.encode("ascii"))
            flat = json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeError, ValueError) as exc:
            raise InvalidKeyError(f"Unable to decode key: {exc}", raw=encoded) from exc
        return cls.from_flat(flat)

    @property
    def kind(self) -> str:
        return self.path[-1].kind

    @property
    def name(self) -> Optional[str]:
        return self.path[-1].name

    @property
    def id(self) -> Optional[int]:
        return self.path[-1].id

    @property
    def identifier(self) -> Identifier:
        return self.path[-1].identifier

    @property
    def incomplete(self) -> bool:
        return self.path[-1].incomplete

    @property
    def parent(self) -> Optional["Key"]:
        if len(self.path) == 1:
            return None
        return Key(self.path[:-1])

    def with_id(self, new_id: int) -> "Key":
        """Return a copy with the final element completed by ``new_id``."""
        last = PathElement.of(self.kind, new_id)
        return Key(self.path[:-1] + (last,))

    def path_of(self) -> Tuple["Key", ...]:
        return path_of(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Key):
            return NotImplemented
        return compare_keys(self, other) < 0

    def __str__(self) -> str:
        return "".join(f"/{e.kind},{e.identifier}" for e in self.path)

    def __repr__(self) -> str:
        return "Key(" + ", ".join(repr(part) for part in self.to_flat()) + ")"


def path_of(key: Key) -> Tuple[Key, ...]:
    """Return the root-to-leaf ancestor chain, ending with ``key`` itself."""
    return tuple(Key(key.path[: i + 1]) for i in range(len(key.path)))


def _identifier_rank(element: PathElement) -> int:
    # incomplete < numeric id < string name
    if element.incomplete:
        return 0
    if element.id is not None:
        return 1
    return 2


def _cmp(a: Any, b: Any) -> int:
    return (a > b) - (a < b)


def _compare_elements(a: PathElement, b: PathElement) -> int:
    result = _cmp(a.kind.encode("utf-8"), b.kind.encode("utf-8"))
    if result:
        return result
    rank_a, rank_b = _identifier_rank(a), _identifier_rank(b)
    if rank_a != rank_b:
        return _cmp(rank_a, rank_b)
    if rank_a == 1:
        return _cmp(a.id, b.id)
    if rank_a == 2:
        return _cmp(a.name.encode("utf-8"), b.name.encode("utf-8"))
    return 0


def compare_keys(a: Key, b: Key) -> int:
    """Compare two keys by their full ancestor paths.

    Returns -1, 0 or 1. Elements compare by kind (byte order), then numeric
    ids before string names, then by id or name. When one path is a strict
    prefix of the other, the shorter one sorts first.
    """
    for x, y in zip(a.path, b.path):
        result = _compare_elements(x, y)
        if result:
            return result
    return _cmp(len(a.path), len(b.path))
