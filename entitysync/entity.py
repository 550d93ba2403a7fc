"""Entities, properties and the closed set of property value types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from entitysync.exceptions import CodecError
from entitysync.keys import Key


class BlobKey(str):
    """Opaque handle to a blob kept outside the entity."""

    def __repr__(self) -> str:
        return f"BlobKey({str.__repr__(self)})"


class ValueType(str, Enum):
    """Supported property value kinds and their document type tags."""

    INT = "int"
    FLOAT = "float"
    STRING = "string"
    BOOL = "bool"
    KEY = "key"
    BLOBKEY = "blobkey"
    DATE = "date"
    BLOB = "blob"
    NULL = "null"

    @property
    def is_primitive(self) -> bool:
        """Whether an indexed value of this type is written as a bare JSON value."""
        return self in _PRIMITIVES

    @classmethod
    def choices(cls) -> List[str]:
        return [member.value for member in cls if member is not cls.NULL]


_PRIMITIVES = frozenset({ValueType.INT, ValueType.FLOAT, ValueType.STRING, ValueType.BOOL, ValueType.NULL})


def value_type_of(value: Any, property_name: Optional[str] = None) -> ValueType:
    """Classify a runtime property value, raising CodecError for anything else."""
    # bool before int, BlobKey before str
    if value is None:
        return ValueType.NULL
    if isinstance(value, bool):
        return ValueType.BOOL
    if isinstance(value, int):
        return ValueType.INT
    if isinstance(value, float):
        return ValueType.FLOAT
    if isinstance(value, BlobKey):
        return ValueType.BLOBKEY
    if isinstance(value, str):
        return ValueType.STRING
    if isinstance(value, Key):
        return ValueType.KEY
    if isinstance(value, datetime):
        return ValueType.DATE
    if isinstance(value, (bytes, bytearray)):
        return ValueType.BLOB
    raise CodecError(
        "Unsupported property value type",
        property_name=property_name,
        expected="|".join(ValueType.choices()),
        actual=type(value).__name__,
    )


@dataclass
class Property:
    name: str
    value: Any
    multiple: bool = False
    indexed: bool = True

    @property
    def value_type(self) -> ValueType:
        return value_type_of(self.value, self.name)


@dataclass
class Entity:
    """A key plus an ordered multiset of properties."""

    key: Optional[Key]
    properties: List[Property] = field(default_factory=list)

    def add(self, prop: Property) -> None:
        self.properties.append(prop)

    def get(self, name: str) -> Any:
        """Return the first value stored under ``name``, or None."""
        for prop in self.properties:
            if prop.name == name:
                return prop.value
        return None

    def get_all(self, name: str) -> List[Any]:
        return [prop.value for prop in self.properties if prop.name == name]

    def get_int(self, name: str) -> int:
        value = self.get(name)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return 0

    def get_float(self, name: str) -> float:
        value = self.get(name)
        if isinstance(value, float):
            return value
        return 0.0

    def get_string(self, name: str) -> str:
        value = self.get(name)
        if isinstance(value, str):
            return str(value)
        return ""

    def get_bool(self, name: str) -> bool:
        value = self.get(name)
        if isinstance(value, bool):
            return value
        return False

    @property
    def kind(self) -> Optional[str]:
        return self.key.kind if self.key is not None else None
