"""Bulk export and import of a kind through the entity document format."""

import json
import logging
import time
from typing import IO, List, Optional

from entitysync.codec import encode_entity, loads_entities
from entitysync.entity import Entity
from entitysync.exceptions import StoreError
from entitysync.keys import Key
from entitysync.store import Cursor, Store

logger = logging.getLogger(__name__)

DUMP_BATCH_SIZE = 100
LOAD_BATCH_SIZE = 50


def dump(store: Store, kind: str, fp: IO[str], batch_size: int = DUMP_BATCH_SIZE, pretty: bool = False) -> int:
    """Write every entity of ``kind`` to ``fp`` as one JSON array.

    The query is re-issued from the previous cursor for each batch, so no
    single query stays open for the whole kind. Returns the entity count.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    indent = 2 if pretty else None
    separator = ",\n" if pretty else ","
    started = time.monotonic()
    count = 0
    cursor: Optional[Cursor] = None

    fp.write("[")
    while True:
        iterator = store.range_query(kind, None, start_cursor=cursor, limit=batch_size)
        in_batch = 0
        for key, properties in iterator:
            text = json.dumps(encode_entity(Entity(key, properties)), indent=indent, ensure_ascii=False, allow_nan=False)
            if count:
                fp.write(separator)
            elif pretty:
                fp.write("\n")
            fp.write(text)
            count += 1
            in_batch += 1
        if in_batch < batch_size:
            break
        cursor = iterator.cursor()
        logger.debug(f"Dumped {count} {kind} entities so far")
    if pretty and count:
        fp.write("\n")
    fp.write("]")

    logger.info(f"Dumped {count} entities of kind '{kind}' in {time.monotonic() - started:.2f}s")
    return count


def load(store: Store, fp: IO[str], batch_size: int = LOAD_BATCH_SIZE, get_after_put: bool = False) -> List[Key]:
    """Store the entities of a bulk file, returning their keys in file order.

    With ``get_after_put`` every batch is read back after writing, which
    forces the writes to be visible before the next batch starts.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    entities = loads_entities(fp.read())
    keys: List[Key] = []
    for offset in range(0, len(entities), batch_size):
        batch = entities[offset:offset + batch_size]
        try:
            stored = store.put_multi(batch)
        except StoreError:
            logger.error(f"Failed to store batch at offset {offset} ({len(batch)} entities)")
            raise
        if get_after_put:
            store.get_multi(stored)
        keys.extend(stored)
        logger.debug(f"Loaded {len(keys)}/{len(entities)} entities")

    logger.info(f"Loaded {len(keys)} entities")
    return keys
