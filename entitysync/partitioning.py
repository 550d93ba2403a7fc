"""Key ranges and scatter-sample based partitioning of a kind."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from entitysync.keys import Key
from entitysync.store import KEY_PROPERTY, Store

logger = logging.getLogger(__name__)

SCATTER_PROPERTY = "__scatter__"
DEFAULT_SAMPLE_SIZE = 32


@dataclass(frozen=True)
class KeyRange:
    """``[start, end)``; ``[start, inf)`` when ``end`` is None; one key when equal."""

    start: Optional[Key]
    end: Optional[Key] = None

    @property
    def single(self) -> bool:
        return self.start is not None and self.start == self.end

    @property
    def kind(self) -> Optional[str]:
        return self.start.kind if self.start is not None else None

    def contains(self, key: Key) -> bool:
        if self.start is None:
            return False
        if self.single:
            return key == self.start
        if key < self.start:
            return False
        return self.end is None or key < self.end

    def continuation(self, last_key: Key) -> "KeyRange":
        """The unfinished remainder ``[last_key, end)``."""
        return KeyRange(last_key, self.end)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.encode() if self.start is not None else None,
            "end": self.end.encode() if self.end is not None else None,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "KeyRange":
        start = raw.get("start")
        end = raw.get("end")
        return cls(
            Key.decode(start) if start else None,
            Key.decode(end) if end else None,
        )

    def __str__(self) -> str:
        end = str(self.end) if self.end is not None else "inf"
        return f"[{self.start}, {end})"


def partition(
    store: Store,
    kind: str,
    scatter_property: str = SCATTER_PROPERTY,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
) -> List[KeyRange]:
    """Split ``kind`` into disjoint ranges that together cover all its keys.

    The smallest key seeds the first range; keys sampled through the scatter
    property become split points. Without samples the whole kind is one open
    range, and an empty kind yields no ranges.
    """
    first = store.sample_keys(kind, KEY_PROPERTY, 1)
    if not first:
        logger.info(f"No entities of kind '{kind}'; nothing to partition")
        return []
    start = first[0]

    samples = store.sample_keys(kind, scatter_property, sample_size)
    if not samples:
        logger.info(f"No scatter samples for kind '{kind}'; using a single range from {start}")
        return [KeyRange(start, None)]

    ranges: List[KeyRange] = []
    previous = start
    for split in sorted(set(samples)):
        if split <= previous:
            continue
        ranges.append(KeyRange(previous, split))
        previous = split
    ranges.append(KeyRange(previous, None))

    logger.info(f"Partitioned kind '{kind}' into {len(ranges)} ranges from {len(samples)} samples")
    return ranges
