"""Checkpoint files for resumable range syncs.

Tracks the pending continuation of every unfinished range of a destination
table so a sync that stopped part way can be resumed by a later process.
Files are named after the range end: a continuation keeps the end of the
range it came from and replaces that range's checkpoint, while the other
partitions of the kind keep their own.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from entitysync.keys import Key
from entitysync.partitioning import KeyRange
from entitysync.scheduling import Scheduler
from entitysync.sinks.base import Destination

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9_.-]")
OPEN_END = "open"


def checkpoint_name(destination: Destination, kind: str, end: Optional[Key] = None) -> str:
    table = destination.table or kind
    bound = end.encode() if end is not None else OPEN_END
    return _UNSAFE_NAME.sub("_", f"{destination.project}.{destination.dataset}.{table}.{bound}")


class CheckpointManager(Scheduler):
    """Manage pending continuations on disk."""

    def __init__(self, output_dir: Path, enabled: bool = True):
        """Initialize checkpoint manager.

        Args:
            output_dir: Base directory; files go under ``_checkpoints/``
            enabled: Whether checkpointing is enabled
        """
        self.output_dir = Path(output_dir)
        self.enabled = enabled
        self.checkpoint_dir = self.output_dir / "_checkpoints"

        if self.enabled:
            self.checkpoint_dir.mkdir(parents=True, exist_ok=True)

    def get_checkpoint_path(self, name: str) -> Path:
        return self.checkpoint_dir / f"{name}.json"

    def save_checkpoint(
        self,
        destination: Destination,
        key_range: KeyRange,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record ``key_range`` as pending for ``destination``.

        Replaces an earlier checkpoint with the same range end.

        Args:
            destination: Target table (defaults to the range's kind)
            key_range: Remaining range to sync
            metadata: Additional metadata to store
        """
        if not self.enabled:
            return

        name = checkpoint_name(destination, key_range.kind or "", key_range.end)
        checkpoint_data = {
            "name": name,
            "destination": {
                "project": destination.project,
                "dataset": destination.dataset,
                "table": destination.table,
            },
            "kind": key_range.kind,
            "range": key_range.to_dict(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metadata": metadata or {},
        }

        checkpoint_path = self.get_checkpoint_path(name)
        try:
            with open(checkpoint_path, "w", encoding="utf-8") as f:
                json.dump(checkpoint_data, f, indent=2)
            logger.debug(f"Saved checkpoint {name}: {key_range}")
        except OSError as exc:
            logger.warning(f"Failed to save checkpoint {name}: {exc}")

    def load_checkpoint(self, destination: Destination, kind: str, end: Optional[Key] = None) -> Optional[KeyRange]:
        """Pending range ending at ``end`` or None if absent, disabled or unreadable."""
        if not self.enabled:
            return None

        name = checkpoint_name(destination, kind, end)
        checkpoint_path = self.get_checkpoint_path(name)
        if not checkpoint_path.exists():
            return None

        try:
            with open(checkpoint_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            key_range = KeyRange.from_dict(data["range"])
        except Exception as exc:
            logger.warning(f"Failed to load checkpoint {name}: {exc}")
            return None

        logger.info(f"Loaded checkpoint {name}: {key_range}")
        return key_range

    def pending(self) -> List[Tuple[Destination, KeyRange]]:
        """Every readable checkpoint, ordered by file name."""
        if not self.enabled or not self.checkpoint_dir.exists():
            return []

        found: List[Tuple[Destination, KeyRange]] = []
        for checkpoint_file in sorted(self.checkpoint_dir.glob("*.json")):
            try:
                with open(checkpoint_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                dest = data["destination"]
                found.append((
                    Destination(dest["project"], dest["dataset"], dest.get("table")),
                    KeyRange.from_dict(data["range"]),
                ))
            except Exception as exc:
                logger.warning(f"Skipping unreadable checkpoint {checkpoint_file.name}: {exc}")
        return found

    def pending_for(self, destination: Destination, kind: str) -> List[KeyRange]:
        """Pending ranges of ``kind`` for ``destination``, ordered by start key."""
        ranges = [r for d, r in self.pending() if d == destination and r.kind == kind]
        return sorted(ranges, key=lambda r: r.start)

    def clear_checkpoint(self, destination: Destination, kind: str, end: Optional[Key] = None) -> None:
        """Clear the checkpoint of the range ending at ``end`` (e.g. once it completes)."""
        if not self.enabled:
            return

        name = checkpoint_name(destination, kind, end)
        checkpoint_path = self.get_checkpoint_path(name)
        if checkpoint_path.exists():
            try:
                checkpoint_path.unlink()
                logger.debug(f"Cleared checkpoint {name}")
            except OSError as exc:
                logger.warning(f"Failed to clear checkpoint {name}: {exc}")

    def clear_all_checkpoints(self) -> None:
        """Clear all checkpoints in the directory."""
        if not self.enabled or not self.checkpoint_dir.exists():
            return

        try:
            for checkpoint_file in self.checkpoint_dir.glob("*.json"):
                checkpoint_file.unlink()
            logger.info("Cleared all checkpoints")
        except OSError as exc:
            logger.warning(f"Failed to clear checkpoints: {exc}")

    def schedule(self, destination: Destination, key_range: KeyRange) -> None:
        self.save_checkpoint(destination, key_range)
