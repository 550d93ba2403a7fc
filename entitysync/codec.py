"""Entity <-> JSON document codec.

Document layout::

    {
      "__key__": ["Account", 1, "Order", "o-17"],
      "Total": 12.5,                                  # indexed primitive
      "Notes": {"type": "string", "value": "...", "indexed": false},
      "Owner": {"type": "key", "value": ["User", "ana"], "indexed": true},
      "Tags": ["a", "b"]                              # repeated property
    }

Indexed int/float/string/bool/null values are written bare; everything else
is wrapped with its type tag. Floats always render with a decimal point or an
exponent so they decode back as floats. The same documents are the bulk
export/import file format (a JSON array of documents).
"""

from __future__ import annotations

import base64
import binascii
import json
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping

from entitysync.entity import BlobKey, Entity, Property, ValueType
from entitysync.exceptions import CodecError, InvalidKeyError
from entitysync.keys import MAX_INT64, MIN_INT64, Key

KEY_FIELD = "__key__"
PRIMITIVE_TAG = "primitive"

_TIMESTAMP_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt ](\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d{1,9}))?"
    r"([Zz]|[+-]\d{2}:\d{2})$"
)


def format_timestamp(value: datetime) -> str:
    """Render a datetime as RFC 3339 in UTC with microsecond precision.

    Naive datetimes are taken to be UTC already.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S") + f".{value.microsecond:06d}Z"


def parse_timestamp(raw: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime.

    Raises ValueError for anything that is not a complete timestamp with an
    offset. Sub-microsecond digits are truncated.
    """
    match = _TIMESTAMP_RE.match(raw)
    if not match:
        raise ValueError(f"not an RFC 3339 timestamp: {raw!r}")
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    micros = int((fraction or "0")[:6].ljust(6, "0"))
    if offset in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if offset[0] == "-" else 1
        hours, minutes = int(offset[1:3]), int(offset[4:6])
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
    value = datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micros, tzinfo=tz
    )
    return value.astimezone(timezone.utc)


# --- per-type encoders -----------------------------------------------------

def _check_int(value: int, name: str) -> int:
    if not MIN_INT64 <= value <= MAX_INT64:
        raise CodecError("Integer out of 64-bit range", property_name=name, expected="int64", actual=value)
    return value


def _encode_float(value: float, name: str) -> float:
    if not math.isfinite(value):
        raise CodecError("Unsupported float value", property_name=name, expected="finite float", actual=value)
    return float(value)


def _encode_key(value: Key, name: str) -> List[Any]:
    return value.to_flat()


def _encode_date(value: datetime, name: str) -> str:
    try:
        return format_timestamp(value)
    except (OverflowError, ValueError) as exc:
        raise CodecError(f"Unrepresentable date: {exc}", property_name=name, expected="date", actual=repr(value)) from exc


def _encode_blob(value: bytes, name: str) -> str:
    return base64.urlsafe_b64encode(bytes(value)).decode("ascii")


_ENCODERS: Dict[ValueType, Callable[[Any, str], Any]] = {
    ValueType.INT: _check_int,
    ValueType.FLOAT: _encode_float,
    ValueType.STRING: lambda value, name: str(value),
    ValueType.BOOL: lambda value, name: value,
    ValueType.KEY: _encode_key,
    ValueType.BLOBKEY: lambda value, name: str(value),
    ValueType.DATE: _encode_date,
    ValueType.BLOB: _encode_blob,
    ValueType.NULL: lambda value, name: None,
}


# --- per-type decoders -----------------------------------------------------

def _mismatch(name: str, tag: str, raw: Any) -> CodecError:
    return CodecError(
        f"Can't decode {name}, value is not {tag}",
        property_name=name,
        expected=tag,
        actual=type(raw).__name__,
    )


def _decode_int(raw: Any, name: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise _mismatch(name, "int", raw)
    return _check_int(raw, name)


def _decode_float(raw: Any, name: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise _mismatch(name, "float", raw)
    return _encode_float(float(raw), name)


def _decode_string(raw: Any, name: str) -> str:
    if not isinstance(raw, str):
        raise _mismatch(name, "string", raw)
    return raw


def _decode_bool(raw: Any, name: str) -> bool:
    if not isinstance(raw, bool):
        raise _mismatch(name, "bool", raw)
    return raw


def _decode_key(raw: Any, name: str) -> Key:
    try:
        return Key.from_flat(raw)
    except InvalidKeyError as exc:
        raise CodecError(
            f"Can't decode {name}, value is not key: {exc.message}",
            property_name=name,
            expected="key",
            actual=raw,
        ) from exc


def _decode_blobkey(raw: Any, name: str) -> BlobKey:
    if not isinstance(raw, str):
        raise _mismatch(name, "blobkey", raw)
    return BlobKey(raw)


def _decode_date(raw: Any, name: str) -> datetime:
    if not isinstance(raw, str):
        raise _mismatch(name, "date", raw)
    try:
        return parse_timestamp(raw)
    except ValueError as exc:
        raise CodecError(
            f"Can't decode {name}, invalid timestamp: {exc}",
            property_name=name,
            expected="date",
            actual=raw,
        ) from exc


def _decode_blob(raw: Any, name: str) -> bytes:
    if not isinstance(raw, str):
        raise _mismatch(name, "blob", raw)
    try:
        return base64.urlsafe_b64decode(raw.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise CodecError(
            f"Can't decode {name}, invalid base64 blob",
            property_name=name,
            expected="blob",
            actual=raw,
        ) from exc


_DECODERS: Dict[str, Callable[[Any, str], Any]] = {
    ValueType.INT.value: _decode_int,
    ValueType.FLOAT.value: _decode_float,
    ValueType.STRING.value: _decode_string,
    ValueType.BOOL.value: _decode_bool,
    ValueType.KEY.value: _decode_key,
    ValueType.BLOBKEY.value: _decode_blobkey,
    ValueType.DATE.value: _decode_date,
    ValueType.BLOB.value: _decode_blob,
}


def _decode_primitive(raw: Any, name: str) -> Any:
    if raw is None or isinstance(raw, (bool, str)):
        return raw
    if isinstance(raw, int):
        return _check_int(raw, name)
    if isinstance(raw, float):
        return _encode_float(raw, name)
    raise CodecError(
        "Invalid primitive value",
        property_name=name,
        expected="number|string|bool|null",
        actual=type(raw).__name__,
    )


# --- properties --------------------------------------------------------------

def encode_value(prop: Property) -> Any:
    """Encode one property occurrence (no repetition handling)."""
    value_type = prop.value_type
    encoded = _ENCODERS[value_type](prop.value, prop.name)
    if value_type.is_primitive and prop.indexed:
        return encoded
    if value_type is ValueType.NULL:
        return {"value": None, "indexed": prop.indexed}
    return {"type": value_type.value, "value": encoded, "indexed": prop.indexed}


def decode_value(name: str, raw: Any, multiple: bool = False) -> Property:
    """Decode one property occurrence from its document form."""
    if isinstance(raw, list):
        raise CodecError("Nested arrays are not supported", property_name=name, expected="value", actual="array")
    if not isinstance(raw, dict):
        return Property(name, _decode_primitive(raw, name), multiple=multiple)

    tag = raw.get("type", PRIMITIVE_TAG)
    indexed = raw.get("indexed", True)
    if not isinstance(indexed, bool):
        raise CodecError("'indexed' must be a boolean", property_name=name, expected="bool", actual=indexed)
    if "value" not in raw:
        raise CodecError(
            f"Complex property {name} without 'value' attribute",
            property_name=name,
            expected="object with 'value'",
            actual=sorted(raw),
        )
    if tag == PRIMITIVE_TAG:
        value = _decode_primitive(raw["value"], name)
    else:
        decoder = _DECODERS.get(tag) if isinstance(tag, str) else None
        if decoder is None:
            raise CodecError(
                f"Unknown type tag {tag!r}",
                property_name=name,
                expected="|".join(ValueType.choices()),
                actual=tag,
            )
        value = decoder(raw["value"], name)
    return Property(name, value, multiple=multiple, indexed=indexed)


# --- entities ---------------------------------------------------------------

def encode_entity(entity: Entity) -> Dict[str, Any]:
    """Convert an entity into a JSON-compatible document."""
    if entity.key is None:
        raise CodecError("Entity has no key", property_name=KEY_FIELD, expected="key", actual=None)
    document: Dict[str, Any] = {KEY_FIELD: entity.key.to_flat()}
    repeated = set()
    for prop in entity.properties:
        if prop.name == KEY_FIELD:
            raise CodecError("Reserved property name", property_name=prop.name)
        encoded = encode_value(prop)
        if prop.multiple:
            if prop.name not in document:
                document[prop.name] = [encoded]
                repeated.add(prop.name)
            elif prop.name in repeated:
                document[prop.name].append(encoded)
            else:
                raise CodecError(
                    f"{prop.name} with invalid Multiple values",
                    property_name=prop.name,
                    expected="all repeated",
                    actual="single and repeated",
                )
        else:
            if prop.name in document:
                raise CodecError(
                    f"{prop.name} appears more than once without Multiple",
                    property_name=prop.name,
                    expected="single value",
                    actual="repeated" if prop.name in repeated else "duplicate",
                )
            document[prop.name] = encoded
    return document


def decode_entity(document: Mapping[str, Any]) -> Entity:
    """Convert a document back into an entity.

    All-or-nothing: any bad field raises CodecError and no partial entity
    is returned.
    """
    if not isinstance(document, Mapping):
        raise CodecError("Element is not a JSON object", expected="object", actual=type(document).__name__)
    if KEY_FIELD not in document:
        raise CodecError("Element's key field is not present", property_name=KEY_FIELD, expected="key")
    try:
        key = Key.from_flat(document[KEY_FIELD])
    except InvalidKeyError as exc:
        raise CodecError(
            f"Element's key field is invalid: {exc.message}",
            property_name=KEY_FIELD,
            expected="flat key array",
            actual=document[KEY_FIELD],
        ) from exc

    properties: List[Property] = []
    for name, raw in document.items():
        if name == KEY_FIELD:
            continue
        if isinstance(raw, list):
            properties.extend(decode_value(name, item, multiple=True) for item in raw)
        else:
            properties.append(decode_value(name, raw))
    return Entity(key, properties)


def dumps_entity(entity: Entity) -> str:
    return json.dumps(encode_entity(entity), ensure_ascii=False, allow_nan=False)


def dumps_entities(entities: Iterable[Entity], pretty: bool = False) -> str:
    """Serialize entities to the bulk file format (a JSON array of documents)."""
    documents = [encode_entity(e) for e in entities]
    return json.dumps(documents, indent=2 if pretty else None, ensure_ascii=False, allow_nan=False)


def loads_entities(text: str) -> List[Entity]:
    """Parse the bulk file format."""
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise CodecError(f"Invalid JSON: {exc}", expected="JSON array") from exc
    if not isinstance(data, list):
        raise CodecError("Root object is not an array", expected="array", actual=type(data).__name__)
    return [decode_entity(element) for element in data]
