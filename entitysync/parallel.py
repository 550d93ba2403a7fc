"""Parallel range sync support for running every range of a kind concurrently."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from entitysync.exceptions import EntitySyncError
from entitysync.partitioning import DEFAULT_SAMPLE_SIZE, SCATTER_PROPERTY, KeyRange, partition
from entitysync.sinks.base import Destination
from entitysync.sync import RangeSyncer

logger = logging.getLogger(__name__)

DEFAULT_MAX_INVOCATIONS = 10000


@dataclass
class RangeReport:
    range: KeyRange
    ingested: int = 0
    errors: List[Exception] = field(default_factory=list)
    invocations: int = 0
    done: bool = False
    # remainder to resume later; None when done or aborted
    pending: Optional[KeyRange] = None


def sync_kind(
    syncer: RangeSyncer,
    destination: Destination,
    kind: str,
    max_workers: int = 4,
    max_invocations: int = DEFAULT_MAX_INVOCATIONS,
    scatter_property: str = SCATTER_PROPERTY,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
    cancel_event: Optional[threading.Event] = None,
) -> List[RangeReport]:
    """
    Partition ``kind`` and sync every range in parallel.

    Args:
        syncer: Range syncer shared by the workers
        destination: Target dataset; the table defaults to ``kind``
        kind: Entity kind to sync
        max_workers: Maximum number of parallel workers
        max_invocations: Per-range cap on sync_range calls
        scatter_property: Property sampled for split points
        sample_size: Number of scatter samples
        cancel_event: Stops every worker when set

    Returns:
        One RangeReport per partitioned range, in range order
    """
    ranges = partition(syncer.store, kind, scatter_property, sample_size)
    if not ranges:
        logger.info(f"Nothing to sync for kind '{kind}'")
        return []
    return sync_ranges(syncer, destination, ranges, max_workers, max_invocations, cancel_event)


def sync_ranges(
    syncer: RangeSyncer,
    destination: Destination,
    ranges: Sequence[KeyRange],
    max_workers: int = 4,
    max_invocations: int = DEFAULT_MAX_INVOCATIONS,
    cancel_event: Optional[threading.Event] = None,
) -> List[RangeReport]:
    """Sync already known ranges (fresh partitions or resumed checkpoints) in parallel."""
    if not ranges:
        return []
    if max_workers <= 0:
        max_workers = 1

    label = ranges[0].kind
    logger.info(f"Starting parallel sync with {max_workers} workers for {len(ranges)} ranges of '{label}'")

    reports: List[Optional[RangeReport]] = [None] * len(ranges)

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_index = {
            executor.submit(_safe_sync_range, syncer, destination, key_range, max_invocations, cancel_event): i
            for i, key_range in enumerate(ranges)
        }

        for future in as_completed(future_to_index):
            index = future_to_index[future]
            key_range = ranges[index]
            try:
                report = future.result()
            except Exception as e:
                logger.error(f"✗ Unexpected error for range {key_range}: {e}", exc_info=True)
                report = RangeReport(key_range, errors=[e])
            reports[index] = report

            if report.done and not report.errors:
                logger.info(f"✓ Synced range {key_range}: {report.ingested} rows in {report.invocations} invocations")
            else:
                logger.error(f"✗ Range {key_range} finished with {len(report.errors)} error(s), done={report.done}")

    # Summary
    final = [r for r in reports if r is not None]
    ingested = sum(r.ingested for r in final)
    failed = sum(1 for r in final if r.errors or not r.done)
    logger.info(
        f"Parallel sync of '{label}' complete: {ingested} rows ingested, "
        f"{len(final) - failed} clean, {failed} with errors out of {len(final)} ranges"
    )

    return final


def _safe_sync_range(
    syncer: RangeSyncer,
    destination: Destination,
    key_range: KeyRange,
    max_invocations: int,
    cancel_event: Optional[threading.Event],
) -> RangeReport:
    """
    Follow one range through its continuations until it completes.

    Store and sink exceptions are folded into the report instead of raised.
    """
    report = RangeReport(key_range)
    current = key_range
    try:
        while report.invocations < max_invocations:
            result = syncer.sync_range(destination, current, cancel_event=cancel_event)
            report.invocations += 1
            report.ingested += result.ingested
            report.errors.extend(result.errors)
            if result.done:
                report.done = True
                break
            if result.cancelled and result.last_key is not None:
                report.pending = current.continuation(result.last_key)
                break
            if result.aborted or result.cancelled or result.last_key is None:
                break
            current = current.continuation(result.last_key)
        else:
            logger.warning(f"Range {key_range} still pending at {current.start} after {max_invocations} invocations")
            report.pending = current
    except EntitySyncError as e:
        logger.error(f"Range sync failed for {key_range}: {e}", exc_info=True)
        report.errors.append(e)
    return report
