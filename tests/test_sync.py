"""Tests for the range scan and export engine."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from entitysync.config_models import SyncSettings
from entitysync.entity import Entity, Property
from entitysync.exceptions import (
    CodecError,
    IngestionError,
    InvalidCursorError,
    InvalidRangeError,
    StoreError,
    StoreTimeoutError,
    SyncCancelledError,
)
from entitysync.keys import Key
from entitysync.partitioning import KeyRange
from entitysync.retry import RetryPolicy
from entitysync.scheduling import QueueScheduler
from entitysync.sinks.base import Destination
from entitysync.store import MemoryStore, QueryIterator, Store
from entitysync.sync import RangeSyncer

from tests.conftest import FailingCallSink, RecordingSink


def _k(kind, i):
    return Key.from_path(kind, i)


def _store_of(kind: str, count: int) -> MemoryStore:
    store = MemoryStore()
    for i in range(1, count + 1):
        store.put(Entity(_k(kind, i), [Property("Value", i)]))
    return store


class FlakyIterator(QueryIterator):
    def __init__(self, store: "FlakyStore", inner: QueryIterator):
        self._store = store
        self._inner = inner

    def __next__(self):
        self._store.reads += 1
        if self._store.reads in self._store.errors_at:
            raise self._store.errors_at.pop(self._store.reads)
        if self._store.fail_after is not None and self._store.served >= self._store.fail_after:
            raise self._store.persistent_error
        row = next(self._inner)
        self._store.served += 1
        return row

    def cursor(self):
        return self._inner.cursor()


class FlakyStore(Store):
    """Wraps a store; raises scripted errors from its query iterators.

    ``errors_at`` maps the n-th read attempt (1-based) to the error raised
    instead. Once ``fail_after`` rows have been served every further read
    raises ``persistent_error``.
    """

    def __init__(
        self,
        inner: Store,
        errors_at: Optional[Dict[int, Exception]] = None,
        fail_after: Optional[int] = None,
        persistent_error: Optional[Exception] = None,
    ):
        self.inner = inner
        self.errors_at = dict(errors_at or {})
        self.fail_after = fail_after
        self.persistent_error = persistent_error or RuntimeError("disk on fire")
        self.reads = 0
        self.served = 0
        self.queries: List[dict] = []

    def range_query(self, kind, lower, upper=None, start_cursor=None, equal=False, limit=None):
        self.queries.append({"lower": lower, "upper": upper, "cursor": start_cursor, "equal": equal})
        return FlakyIterator(self, self.inner.range_query(kind, lower, upper, start_cursor, equal, limit))

    def sample_keys(self, kind, property_name, limit):
        return self.inner.sample_keys(kind, property_name, limit)

    def get(self, key):
        return self.inner.get(key)

    def put(self, entity):
        return self.inner.put(entity)

    def allocate_ids(self, kind, count, parent=None):
        return self.inner.allocate_ids(kind, count, parent)


class CancellingSink(RecordingSink):
    """Sets ``event`` once the first call has been accepted."""

    def __init__(self, event: threading.Event):
        super().__init__()
        self.event = event

    def ingest_rows(self, destination, rows):
        result = super().ingest_rows(destination, rows)
        self.event.set()
        return result


def _syncer(store, sink, **settings) -> RangeSyncer:
    return RangeSyncer(store, sink, SyncSettings(**settings), retry_policy=RetryPolicy.immediate())


# ---------------------------------------------------------------------------
# Range shapes
# ---------------------------------------------------------------------------


def test_open_range_syncs_whole_kind(store, sink, destination):
    result = _syncer(store, sink).sync_range(destination, KeyRange(_k("Sample", 1)))

    assert result.ingested == 3
    assert result.done
    assert result.last_key is None
    assert result.errors == []
    assert result.error is None
    assert sink.destinations == [Destination("test-project", "test_dataset", "Sample")]
    assert [row.json["Name"] for row in sink.rows] == ["sample-1", "sample-2", "sample-3"]


def test_bounded_range_excludes_end(store, sink, destination):
    end = _k("Sample", 3)
    result = _syncer(store, sink).sync_range(destination, KeyRange(_k("Sample", 1), end))

    assert result.ingested == 2
    assert result.done
    assert result.last_key == end


def test_single_key_range(store, sink, destination):
    key = _k("Sample", 2)
    result = _syncer(store, sink).sync_range(destination, KeyRange(key, key))

    assert result.ingested == 1
    assert result.done
    assert [row.json["Name"] for row in sink.rows] == ["sample-2"]


def test_missing_start_is_reported(store, sink, destination):
    result = _syncer(store, sink).sync_range(destination, KeyRange(None))

    assert result.ingested == 0
    assert result.last_key is None
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], InvalidRangeError)
    assert "no start" in str(result.errors[0])
    assert sink.calls == []


def test_mixed_kind_range_is_rejected(store, sink, destination):
    result = _syncer(store, sink).sync_range(destination, KeyRange(_k("Sample", 1), _k("Log", 1)))

    assert result.ingested == 0
    assert isinstance(result.errors[0], InvalidRangeError)
    assert sink.calls == []


def test_explicit_table_is_kept(store, sink):
    destination = Destination("p", "d", "samples_v2")
    _syncer(store, sink).sync_range(destination, KeyRange(_k("Sample", 1)))
    assert sink.destinations == [destination]


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------


def test_sub_batches_never_exceed_nine_rows(sink, destination):
    store = _store_of("Bulk", 20)
    result = _syncer(store, sink).sync_range(destination, KeyRange(_k("Bulk", 1)))

    assert result.ingested == 20
    assert [len(call) for call in sink.calls] == [9, 9, 2]


def test_insert_ids_carry_key_and_increasing_timestamp(sink, destination):
    store = _store_of("Bulk", 12)
    _syncer(store, sink).sync_range(destination, KeyRange(_k("Bulk", 1)))

    keys = [Key.decode(row.insert_id.split("#")[0]) for row in sink.rows]
    stamps = [int(row.insert_id.split("#")[1]) for row in sink.rows]
    assert keys == [_k("Bulk", i) for i in range(1, 13)]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


def test_full_batch_leaves_continuation_key(sink, destination):
    store = _store_of("Bulk", 12)
    result = _syncer(store, sink, batch_size=5).sync_range(destination, KeyRange(_k("Bulk", 1)))

    assert result.ingested == 5
    assert not result.done
    assert result.last_key == _k("Bulk", 6)


def test_batch_filled_by_last_entity_is_done(sink, destination):
    store = _store_of("Bulk", 10)
    syncer = _syncer(store, sink, batch_size=5)
    first = syncer.sync_range(destination, KeyRange(_k("Bulk", 1)))
    second = syncer.sync_range(destination, KeyRange(first.last_key))

    assert first.last_key == _k("Bulk", 6)
    assert second.done
    assert first.ingested + second.ingested == 10


def test_continuations_ingest_every_entity_once(sink, destination):
    store = _store_of("Bulk", 12)
    queue = QueueScheduler()
    syncer = RangeSyncer(store, sink, SyncSettings(batch_size=5), scheduler=queue)

    first = syncer.run(destination, KeyRange(_k("Bulk", 1)))
    assert len(queue) == 1
    rest = queue.drain(syncer)

    assert len(rest) == 2
    assert rest[-1].done
    assert first.ingested + sum(r.ingested for r in rest) == 12
    assert sorted(sink.ingested_keys()) == sorted(_k("Bulk", i).encode() for i in range(1, 13))
    assert len(queue) == 0


def test_run_does_not_schedule_finished_range(store, sink, destination):
    queue = QueueScheduler()
    syncer = RangeSyncer(store, sink, scheduler=queue)
    result = syncer.run(destination, KeyRange(_k("Sample", 1)))
    assert result.done
    assert len(queue) == 0


# ---------------------------------------------------------------------------
# Read errors
# ---------------------------------------------------------------------------


def test_timeout_resumes_from_last_cursor(store, sink, destination):
    flaky = FlakyStore(store, errors_at={3: StoreTimeoutError("deadline exceeded"), 6: TimeoutError()})
    result = _syncer(flaky, sink).sync_range(destination, KeyRange(_k("RangeTest", 1)))

    assert result.errors == []
    assert result.done
    assert result.ingested == 8
    assert len(sink.ingested_keys()) == len(set(sink.ingested_keys())) == 8
    assert len(flaky.queries) == 3
    assert flaky.queries[0]["cursor"] is None
    assert flaky.queries[1]["cursor"] is not None
    assert flaky.queries[1]["lower"] == _k("RangeTest", 1)


def test_timeout_message_is_transient(store, sink, destination):
    flaky = FlakyStore(store, errors_at={1: RuntimeError("operation timed out")})
    result = _syncer(flaky, sink).sync_range(destination, KeyRange(_k("Sample", 1)))
    assert result.errors == []
    assert result.ingested == 3


def test_error_budget_halts_scan(store, sink, destination):
    flaky = FlakyStore(store, fail_after=2)
    result = _syncer(flaky, sink, max_errors=10).sync_range(destination, KeyRange(_k("RangeTest", 1)))

    assert result.aborted
    assert not result.done
    assert len(result.errors) == 11
    assert all(isinstance(e, StoreError) for e in result.errors)
    assert result.last_key == _k("RangeTest", 2)
    assert result.ingested == 2


def test_aborted_range_is_not_rescheduled(store, sink, destination):
    queue = QueueScheduler()
    flaky = FlakyStore(store, fail_after=0)
    syncer = RangeSyncer(flaky, sink, SyncSettings(max_errors=0), scheduler=queue)
    result = syncer.run(destination, KeyRange(_k("Sample", 1)))

    assert result.aborted
    assert result.last_key == _k("Sample", 1)
    assert len(queue) == 0


def test_exhausted_timeouts_count_against_budget(store, sink, destination):
    flaky = FlakyStore(store, fail_after=0, persistent_error=StoreTimeoutError("timeout"))
    syncer = RangeSyncer(flaky, sink, SyncSettings(max_errors=1), retry_policy=RetryPolicy.immediate(2))
    result = syncer.sync_range(destination, KeyRange(_k("Sample", 1)))

    assert result.aborted
    assert len(result.errors) == 2
    assert all(isinstance(e, StoreTimeoutError) for e in result.errors)
    # two re-issues plus the recorded failure, twice
    assert flaky.reads == 6


def test_few_read_errors_do_not_stop_scan(store, sink, destination):
    flaky = FlakyStore(store, errors_at={2: RuntimeError("corrupt row")})
    result = _syncer(flaky, sink).sync_range(destination, KeyRange(_k("RangeTest", 1)))

    assert result.done
    assert result.ingested == 8
    assert len(result.errors) == 1
    assert "corrupt row" in str(result.error)


def test_raising_retry_predicate_records_read_error(store, sink, destination):
    def broken(exc):
        raise AttributeError("predicate bug")

    flaky = FlakyStore(store, errors_at={2: StoreTimeoutError("slow")})
    syncer = RangeSyncer(flaky, sink, SyncSettings(), retry_policy=RetryPolicy(retry_if=broken, base_delay=0.0))
    result = syncer.sync_range(destination, KeyRange(_k("RangeTest", 1)))

    assert result.done
    assert result.ingested == 8
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], StoreTimeoutError)


def test_invalid_resume_cursor_aborts(store, sink, destination):
    iterator = store.range_query("Sample", None)
    next(iterator)
    result = _syncer(store, sink).sync_range(
        destination, KeyRange(_k("Sample", 1)), resume_cursor=iterator.cursor()
    )

    assert result.aborted
    assert isinstance(result.errors[0], InvalidCursorError)
    assert result.ingested == 0


def test_resume_cursor_skips_read_entities(store, sink, destination):
    iterator = store.range_query("Sample", _k("Sample", 1))
    next(iterator)
    result = _syncer(store, sink).sync_range(
        destination, KeyRange(_k("Sample", 1)), resume_cursor=iterator.cursor()
    )

    assert result.done
    assert result.ingested == 2


# ---------------------------------------------------------------------------
# Conversion and sink errors
# ---------------------------------------------------------------------------


def test_conversion_errors_skip_entity(sink, destination):
    store = _store_of("Bulk", 3)
    store.put(Entity(_k("Bulk", 2), [Property("Value", float("nan"))]))
    result = _syncer(store, sink).sync_range(destination, KeyRange(_k("Bulk", 1)))

    assert result.done
    assert result.ingested == 2
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], CodecError)


def test_unrepresentable_date_skips_entity(sink, destination):
    store = _store_of("Bulk", 3)
    early = datetime(1, 1, 1, tzinfo=timezone(timedelta(hours=1)))
    store.put(Entity(_k("Bulk", 2), [Property("When", early)]))
    result = _syncer(store, sink).sync_range(destination, KeyRange(_k("Bulk", 1)))

    assert result.done
    assert result.ingested == 2
    assert sink.ingested_keys() == [_k("Bulk", 1).encode(), _k("Bulk", 3).encode()]
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], CodecError)
    assert result.errors[0].property_name == "When"


@pytest.mark.parametrize("row_errors", [False, True])
def test_failed_sub_batch_counts_zero_rows(destination, row_errors):
    store = _store_of("Bulk", 20)
    sink = FailingCallSink(fail_calls={1}, row_errors=row_errors)
    result = _syncer(store, sink).sync_range(destination, KeyRange(_k("Bulk", 1)))

    assert len(sink.calls) == 3
    assert result.ingested == 11
    assert result.done
    assert len(result.errors) == 1
    error = result.errors[0]
    assert isinstance(error, IngestionError)
    if row_errors:
        assert len(error.row_errors) == 1
        assert error.details["failed_rows"] == [0]
    else:
        assert error.details["error_type"] == "RuntimeError"


def test_exclude_drops_matching_properties(store, sink, destination):
    _syncer(store, sink, exclude="^(Tags|Ratio)$").sync_range(destination, KeyRange(_k("Sample", 1)))
    row = sink.rows[0].json
    assert "Tags" not in row
    assert "Ratio" not in row
    assert row["Name"] == "sample-1"
    assert "__timestamp__" in row


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def test_cancel_before_scan(store, sink, destination):
    event = threading.Event()
    event.set()
    result = _syncer(store, sink).sync_range(destination, KeyRange(_k("Sample", 1)), cancel_event=event)

    assert result.cancelled
    assert result.ingested == 0
    assert result.last_key == _k("Sample", 1)
    assert isinstance(result.errors[-1], SyncCancelledError)
    assert sink.calls == []


def test_cancel_during_flush(destination):
    event = threading.Event()
    sink = CancellingSink(event)
    store = _store_of("Bulk", 20)
    queue = QueueScheduler()
    syncer = RangeSyncer(store, sink, scheduler=queue)
    result = syncer.run(destination, KeyRange(_k("Bulk", 1)), cancel_event=event)

    assert result.cancelled
    assert not result.done
    assert result.ingested == 9
    assert len(sink.calls) == 1
    assert result.last_key == _k("Bulk", 10)
    assert isinstance(result.errors[-1], SyncCancelledError)
    assert len(queue) == 0
