"""Continuation scheduling strategies.

A range sync that stops before the end of its range hands the remainder to a
:class:`Scheduler`. Where it goes (a task queue, a checkpoint file, an
in-memory queue) is up to the implementation injected into the syncer.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import TYPE_CHECKING, Deque, List, Optional, Tuple

from entitysync.partitioning import KeyRange
from entitysync.sinks.base import Destination

if TYPE_CHECKING:
    from entitysync.sync import RangeSyncer, SyncResult

logger = logging.getLogger(__name__)


class Scheduler(ABC):
    @abstractmethod
    def schedule(self, destination: Destination, key_range: KeyRange) -> None:
        ...


class QueueScheduler(Scheduler):
    """FIFO of pending continuations, drained by the owning worker."""

    def __init__(self) -> None:
        self._pending: Deque[Tuple[Destination, KeyRange]] = deque()

    def __len__(self) -> int:
        return len(self._pending)

    def schedule(self, destination: Destination, key_range: KeyRange) -> None:
        logger.debug(f"Reschedule {key_range} into {destination}")
        self._pending.append((destination, key_range))

    def pop(self) -> Optional[Tuple[Destination, KeyRange]]:
        if not self._pending:
            return None
        return self._pending.popleft()

    def drain(self, syncer: "RangeSyncer", max_invocations: Optional[int] = None) -> List["SyncResult"]:
        """Run pending continuations (and the ones they schedule) until none remain."""
        results: List["SyncResult"] = []
        while self._pending:
            if max_invocations is not None and len(results) >= max_invocations:
                logger.warning(f"Stopping drain after {len(results)} invocations; {len(self)} ranges pending")
                break
            destination, key_range = self._pending.popleft()
            results.append(syncer.run(destination, key_range))
        return results
