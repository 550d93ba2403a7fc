"""Config-driven runner that wires settings, sink, checkpoints and workers together."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from entitysync.checkpoint import CheckpointManager
from entitysync.config_models import AppConfig
from entitysync.logging_config import range_logger
from entitysync.parallel import DEFAULT_MAX_INVOCATIONS, RangeReport, sync_kind, sync_ranges
from entitysync.sinks.base import Destination, Sink
from entitysync.sinks.bigquery_sink import BigQuerySink
from entitysync.store import Store
from entitysync.sync import RangeSyncer

logger = logging.getLogger(__name__)


def build_sink(config: AppConfig, headers: Optional[Dict[str, str]] = None) -> BigQuerySink:
    return BigQuerySink.from_settings(config.sink, headers=headers)


def build_checkpoints(config: AppConfig) -> Optional[CheckpointManager]:
    if not config.checkpoint_dir:
        return None
    return CheckpointManager(Path(config.checkpoint_dir))


def config_destination(config: AppConfig) -> Destination:
    return Destination(config.sink.project, config.sink.dataset)


def run_kind(
    config: AppConfig,
    store: Store,
    kind: str,
    sink: Sink,
    cancel_event: Optional[threading.Event] = None,
    max_invocations: int = DEFAULT_MAX_INVOCATIONS,
) -> List[RangeReport]:
    """
    Sync every entity of ``kind`` into the configured dataset.

    With a checkpoint directory configured, ranges left pending by an earlier
    run are resumed instead of partitioning the kind again. Ranges that stop
    before their end are checkpointed; completed ranges clear theirs.

    Args:
        config: Loaded application config
        store: Source of entities
        kind: Entity kind to sync
        sink: Destination of rows
        cancel_event: Stops every worker when set
        max_invocations: Per-range cap on sync_range calls

    Returns:
        One RangeReport per synced range
    """
    destination = config_destination(config)
    log = range_logger(logger, destination, kind=kind)
    checkpoints = build_checkpoints(config)
    syncer = RangeSyncer(store, sink, config.sync)

    resumed = checkpoints.pending_for(destination, kind) if checkpoints else []
    if resumed:
        log.info(f"Resuming {len(resumed)} checkpointed range(s) of '{kind}'")
        reports = sync_ranges(syncer, destination, resumed, config.max_workers, max_invocations, cancel_event)
    else:
        reports = sync_kind(
            syncer,
            destination,
            kind,
            max_workers=config.max_workers,
            max_invocations=max_invocations,
            scatter_property=config.partition.scatter_property,
            sample_size=config.partition.sample_size,
            cancel_event=cancel_event,
        )

    if checkpoints is not None:
        for report in reports:
            if report.pending is not None:
                checkpoints.save_checkpoint(destination, report.pending, metadata={"ingested": report.ingested})
            elif report.done:
                checkpoints.clear_checkpoint(destination, kind, report.range.end)

    pending = sum(1 for r in reports if r.pending is not None)
    if pending:
        log.warning(f"{pending} range(s) of '{kind}' left pending")
    return reports
