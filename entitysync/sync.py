"""Range scan and export: stream one key range from a store into a sink.

One invocation of :meth:`RangeSyncer.sync_range` is a single sequential unit:

1. Scan ``[start, end)`` ordered by key, converting every entity into a sink
   row. Store timeouts re-issue the same query from the last good cursor;
   other read errors and conversion errors count against ``max_errors``.
   Scanning stops at the end of the range, when the error budget is
   exceeded, or when ``batch_size`` rows are buffered.
2. Flush the buffer in sub-batches of ``sub_batch_size`` rows, one sink
   call at a time. A failed sub-batch is recorded and the next one is still
   attempted.

The result carries the number of rows the sink accepted, the key to resume
from (``end`` when the range completed) and every error recorded on the way.
Errors are reported, never raised.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from entitysync.config_models import SyncSettings
from entitysync.entity import Entity
from entitysync.exceptions import (
    CodecError,
    IngestionError,
    InvalidCursorError,
    InvalidRangeError,
    StoreError,
    SyncCancelledError,
    SyncErrors,
)
from entitysync.keys import Key
from entitysync.logging_config import log_performance, range_logger
from entitysync.partitioning import KeyRange
from entitysync.retry import RetryPolicy
from entitysync.scheduling import Scheduler
from entitysync.sinks.base import Destination, InsertRow, Sink
from entitysync.sinks.bigquery_sink import entity_to_row
from entitysync.store import Cursor, QueryIterator, Store

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    ingested: int
    last_key: Optional[Key]
    errors: List[Exception] = field(default_factory=list)
    done: bool = False
    aborted: bool = False
    cancelled: bool = False
    cursor: Optional[Cursor] = None
    scanned: int = 0

    @property
    def error(self) -> Optional[SyncErrors]:
        """All recorded errors as one exception, or None."""
        if not self.errors:
            return None
        return SyncErrors(self.errors)


@dataclass
class _ScanState:
    cursor: Optional[Cursor]
    buffer: List[Tuple[Key, dict]] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)
    last_key: Optional[Key] = None
    next_key: Optional[Key] = None
    scanned: int = 0
    done: bool = False
    aborted: bool = False
    cancelled: bool = False


class _IdempotencyClock:
    """Nanosecond timestamps, strictly increasing for one invocation."""

    def __init__(self) -> None:
        self._last = 0

    def next(self) -> int:
        now = time.time_ns()
        if now <= self._last:
            now = self._last + 1
        self._last = now
        return now


def _is_cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


class RangeSyncer:
    """Sync key ranges from ``store`` into ``sink``.

    Args:
        store: Source of entities
        sink: Destination of rows
        settings: Batch sizes, error budget and row exclusion
        scheduler: Receives the continuation of unfinished ranges in run()
        retry_policy: Classification and backoff for transient read errors
    """

    def __init__(
        self,
        store: Store,
        sink: Sink,
        settings: Optional[SyncSettings] = None,
        scheduler: Optional[Scheduler] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.store = store
        self.sink = sink
        self.settings = settings or SyncSettings()
        self.scheduler = scheduler
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.settings.max_transient_retries,
            base_delay=self.settings.retry_base_delay,
        )

    def run(
        self,
        destination: Destination,
        key_range: KeyRange,
        resume_cursor: Optional[Cursor] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncResult:
        """Sync ``key_range`` and schedule its continuation when unfinished.

        Aborted and cancelled invocations are not rescheduled; the caller
        decides what to do with them.
        """
        result = self.sync_range(destination, key_range, resume_cursor, cancel_event)
        if result.done or result.aborted or result.cancelled or result.last_key is None:
            return result
        if self.scheduler is None:
            logger.info(f"Range {key_range} unfinished at {result.last_key}; no scheduler configured")
            return result
        self.scheduler.schedule(destination, key_range.continuation(result.last_key))
        return result

    def sync_range(
        self,
        destination: Destination,
        key_range: KeyRange,
        resume_cursor: Optional[Cursor] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncResult:
        start, end = key_range.start, key_range.end
        if start is None:
            logger.warning("Refusing to sync a range with no start key")
            return SyncResult(0, None, [InvalidRangeError("Range sync has no start key")])
        if end is not None and end.kind != start.kind:
            return SyncResult(0, None, [InvalidRangeError(
                "Range start and end must have the same kind",
                {"start_kind": start.kind, "end_kind": end.kind},
            )])

        destination = destination.for_kind(start.kind)
        log = range_logger(logger, destination, key_range)
        started = time.monotonic()
        log.info(f"Syncing range {key_range} into {destination}")

        state = self._scan(key_range, resume_cursor, cancel_event)
        if state.cancelled:
            state.errors.append(SyncCancelledError("Range sync cancelled while scanning"))
            return SyncResult(
                0, start, state.errors, cancelled=True, cursor=resume_cursor, scanned=state.scanned
            )

        ingested, flush_errors, unflushed = self._flush(destination, state.buffer, cancel_event)
        errors = state.errors + flush_errors

        if unflushed is not None:
            last_key = unflushed
        elif state.done:
            last_key = end
        elif state.aborted:
            last_key = state.last_key or start
        else:
            last_key = state.next_key

        result = SyncResult(
            ingested=ingested,
            last_key=last_key,
            errors=errors,
            done=state.done and unflushed is None,
            aborted=state.aborted,
            cancelled=unflushed is not None,
            cursor=state.cursor,
            scanned=state.scanned,
        )

        duration = time.monotonic() - started
        log_performance(
            log,
            "range_sync",
            duration_seconds=duration,
            entities_scanned=state.scanned,
            entities_ingested=ingested,
            error_count=len(errors),
            done=result.done,
        )
        if errors:
            log.warning(f"Range {key_range} finished with {len(errors)} error(s): {SyncErrors(errors)}")
        return result

    def _query(self, key_range: KeyRange, cursor: Optional[Cursor]) -> QueryIterator:
        start = key_range.start
        if key_range.single:
            return self.store.range_query(start.kind, start, start_cursor=cursor, equal=True)
        return self.store.range_query(start.kind, start, key_range.end, start_cursor=cursor)

    def _record(self, state: _ScanState, error: Exception) -> None:
        state.errors.append(error)
        if len(state.errors) > self.settings.max_errors:
            logger.error(f"Error budget of {self.settings.max_errors} exceeded; halting scan at {state.last_key}")
            state.aborted = True

    def _wait(self, attempt: int, cancel_event: Optional[threading.Event]) -> None:
        delay = self.retry_policy.compute_delay(attempt)
        if delay <= 0:
            return
        if cancel_event is not None:
            cancel_event.wait(delay)
        else:
            time.sleep(delay)

    def _scan(
        self,
        key_range: KeyRange,
        cursor: Optional[Cursor],
        cancel_event: Optional[threading.Event],
    ) -> _ScanState:
        state = _ScanState(cursor=cursor)
        kind = key_range.start.kind
        iterator: Optional[QueryIterator] = None
        transient_attempts = 0

        while not state.aborted:
            if _is_cancelled(cancel_event):
                state.cancelled = True
                break
            try:
                if iterator is None:
                    iterator = self._query(key_range, state.cursor)
                key, properties = next(iterator)
            except StopIteration:
                state.done = True
                break
            except InvalidCursorError as e:
                logger.error(f"Cannot resume {key_range}: {e}")
                state.errors.append(e)
                state.aborted = True
                break
            except Exception as e:
                iterator = None
                if self.retry_policy.should_retry(e) and transient_attempts < self.retry_policy.max_attempts:
                    transient_attempts += 1
                    logger.warning(
                        f"Transient error reading {kind} after {state.last_key}: {e}; "
                        f"re-issuing query from last cursor (attempt {transient_attempts})"
                    )
                    self._wait(transient_attempts, cancel_event)
                    continue
                transient_attempts = 0
                logger.warning(f"Error loading next entity: {e}")
                if not isinstance(e, StoreError):
                    e = StoreError(f"Error loading next entity: {e}", operation="query", kind=kind, original_error=e)
                self._record(state, e)
                continue

            transient_attempts = 0
            if len(state.buffer) >= self.settings.batch_size:
                # the key we stop at is read but left for the continuation
                state.next_key = key
                break

            state.scanned += 1
            state.last_key = key
            state.cursor = iterator.cursor()
            try:
                row = entity_to_row(Entity(key, properties), exclude=self.settings.exclude)
            except CodecError as e:
                logger.warning(f"Error converting {key}: {e}")
                self._record(state, e)
                continue
            state.buffer.append((key, row))

        return state

    def _flush(
        self,
        destination: Destination,
        buffer: List[Tuple[Key, dict]],
        cancel_event: Optional[threading.Event],
    ) -> Tuple[int, List[Exception], Optional[Key]]:
        """Send the buffer in sub-batches; return (ingested, errors, first unsent key on cancel)."""
        clock = _IdempotencyClock()
        size = self.settings.sub_batch_size
        ingested = 0
        errors: List[Exception] = []

        for offset in range(0, len(buffer), size):
            chunk = buffer[offset:offset + size]
            if _is_cancelled(cancel_event):
                errors.append(SyncCancelledError(
                    "Range sync cancelled while flushing", {"unsent_rows": len(buffer) - offset}
                ))
                return ingested, errors, chunk[0][0]

            rows = [InsertRow(f"{key.encode()}#{clock.next()}", row) for key, row in chunk]
            try:
                row_errors = self.sink.ingest_rows(destination, rows)
            except IngestionError as e:
                logger.warning(f"Error ingesting {len(rows)} rows into {destination}: {e}")
                errors.append(e)
                continue
            except Exception as e:
                logger.warning(f"Error ingesting {len(rows)} rows into {destination}: {e}")
                errors.append(IngestionError(
                    "Sink call failed",
                    destination=str(destination),
                    row_count=len(rows),
                    original_error=e,
                ))
                continue

            if row_errors:
                errors.append(IngestionError(
                    "Insert errors when ingesting: " + "; ".join(str(r) for r in row_errors),
                    destination=str(destination),
                    row_count=len(rows),
                    row_errors=row_errors,
                ))
                continue
            ingested += len(rows)

        return ingested, errors, None
