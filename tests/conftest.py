"""Pytest configuration and fixtures."""

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List

import pytest

# Add project root to sys.path so tests can import entitysync without install
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from entitysync.entity import Entity, Property  # noqa: E402
from entitysync.keys import Key  # noqa: E402
from entitysync.sinks.base import Destination, InsertRow, RowError, Sink  # noqa: E402
from entitysync.store import MemoryStore  # noqa: E402

# Sample kinds use this property to hold scatter values
TEST_SCATTER_PROPERTY = "_scatter__"

RANGE_TEST_IDS = [1, 2, 30, 40, 50, 6, 1000, 1001]
RANGE_TEST_SCATTER = {30: 3, 50: 2, 1000: 1}


class RecordingSink(Sink):
    """Sink that accepts every row and remembers each call."""

    def __init__(self) -> None:
        self.calls: List[List[InsertRow]] = []
        self.destinations: List[Destination] = []

    def ingest_rows(self, destination, rows):
        self.destinations.append(destination)
        self.calls.append(list(rows))
        return []

    @property
    def rows(self) -> List[InsertRow]:
        return [row for call in self.calls for row in call]

    def ingested_keys(self) -> List[str]:
        return [row.insert_id.split("#")[0] for row in self.rows]


class FailingCallSink(RecordingSink):
    """Rejects the calls whose (0-based) index is in ``fail_calls``."""

    def __init__(self, fail_calls=(), row_errors=False) -> None:
        super().__init__()
        self.fail_calls = set(fail_calls)
        self.row_errors = row_errors

    def ingest_rows(self, destination, rows):
        index = len(self.calls)
        super().ingest_rows(destination, rows)
        if index in self.fail_calls:
            if self.row_errors:
                return [RowError(0, [{"reason": "invalid", "location": "f", "message": "bad"}])]
            raise RuntimeError("sink unavailable")
        return []


def sample_entities() -> List[Entity]:
    when = datetime(2013, 5, 1, 12, 30, tzinfo=timezone.utc)
    entities = []
    for i in (1, 2, 3):
        entities.append(Entity(Key.new("Sample", i), [
            Property("Name", f"sample-{i}"),
            Property("Count", i * 10),
            Property("Ratio", i / 4),
            Property("Created", when),
            Property("Tags", "a", multiple=True),
            Property("Tags", "b", multiple=True),
        ]))
    for i in (1, 2):
        entities.append(Entity(Key.new("Log", i), [
            Property("Message", f"entry {i}", indexed=False),
        ]))
    for i in RANGE_TEST_IDS:
        props = [Property("Value", i)]
        if i in RANGE_TEST_SCATTER:
            props.append(Property(TEST_SCATTER_PROPERTY, RANGE_TEST_SCATTER[i]))
        entities.append(Entity(Key.new("RangeTest", i), props))
    return entities


@pytest.fixture
def store() -> MemoryStore:
    """A MemoryStore loaded with the Sample, Log and RangeTest kinds."""
    s = MemoryStore()
    s.put_multi(sample_entities())
    return s


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def destination() -> Destination:
    return Destination("test-project", "test_dataset")
