"""
Typed configuration primitives for range syncs.

These dataclasses centralize validation logic so entitysync.config can remain
focused on wiring and IO concerns rather than hand-validating nested dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from entitysync.exceptions import ConfigValidationError

BATCH_SIZE = 1000
SUB_BATCH_SIZE = 9
MAX_ERRORS_PER_SYNC = 10


def _ensure_dict(value: Any, key: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigValidationError(f"{key} must be a dictionary", key=key)
    return value


def _ensure_str(value: Any, key: str) -> str:
    if not isinstance(value, str):
        raise ConfigValidationError(f"{key} must be a string", key=key)
    return value


def _ensure_positive_int(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigValidationError(f"{key} must be a positive integer", key=key)
    return value


def _ensure_non_negative_number(value: Any, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigValidationError(f"{key} must be a non-negative number", key=key)
    return float(value)


@dataclass
class SyncSettings:
    batch_size: int = BATCH_SIZE
    sub_batch_size: int = SUB_BATCH_SIZE
    max_errors: int = MAX_ERRORS_PER_SYNC
    max_transient_retries: int = 5
    retry_base_delay: float = 0.1
    exclude: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "SyncSettings":
        data = _ensure_dict(raw, "sync")
        settings = cls()
        if "batch_size" in data:
            settings.batch_size = _ensure_positive_int(data["batch_size"], "sync.batch_size")
        if "sub_batch_size" in data:
            settings.sub_batch_size = _ensure_positive_int(data["sub_batch_size"], "sync.sub_batch_size")
        if "max_errors" in data:
            max_errors = data["max_errors"]
            if isinstance(max_errors, bool) or not isinstance(max_errors, int) or max_errors < 0:
                raise ConfigValidationError("sync.max_errors must be a non-negative integer", key="sync.max_errors")
            settings.max_errors = max_errors
        if "max_transient_retries" in data:
            settings.max_transient_retries = _ensure_positive_int(
                data["max_transient_retries"], "sync.max_transient_retries"
            )
        if "retry_base_delay" in data:
            settings.retry_base_delay = _ensure_non_negative_number(data["retry_base_delay"], "sync.retry_base_delay")
        if data.get("exclude") is not None:
            settings.exclude = _ensure_str(data["exclude"], "sync.exclude")
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "sub_batch_size": self.sub_batch_size,
            "max_errors": self.max_errors,
            "max_transient_retries": self.max_transient_retries,
            "retry_base_delay": self.retry_base_delay,
            "exclude": self.exclude,
        }


@dataclass
class PartitionSettings:
    scatter_property: str = "__scatter__"
    sample_size: int = 32

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "PartitionSettings":
        data = _ensure_dict(raw, "partition")
        settings = cls()
        if "scatter_property" in data:
            settings.scatter_property = _ensure_str(data["scatter_property"], "partition.scatter_property")
            if not settings.scatter_property:
                raise ConfigValidationError(
                    "partition.scatter_property must not be empty", key="partition.scatter_property"
                )
        if "sample_size" in data:
            settings.sample_size = _ensure_positive_int(data["sample_size"], "partition.sample_size")
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return {"scatter_property": self.scatter_property, "sample_size": self.sample_size}


@dataclass
class SinkSettings:
    project: str
    dataset: str
    base_url: str = "https://bigquery.googleapis.com/bigquery/v2"
    timeout_seconds: float = 30.0

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "SinkSettings":
        data = _ensure_dict(raw, "sink")
        for required in ("project", "dataset"):
            if not data.get(required):
                raise ConfigValidationError(f"Missing required key 'sink.{required}'", key=f"sink.{required}")
        settings = cls(
            project=_ensure_str(data["project"], "sink.project"),
            dataset=_ensure_str(data["dataset"], "sink.dataset"),
        )
        if "base_url" in data:
            settings.base_url = _ensure_str(data["base_url"], "sink.base_url")
        if "timeout_seconds" in data:
            settings.timeout_seconds = _ensure_non_negative_number(data["timeout_seconds"], "sink.timeout_seconds")
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project,
            "dataset": self.dataset,
            "base_url": self.base_url,
            "timeout_seconds": self.timeout_seconds,
        }


@dataclass
class AppConfig:
    sink: SinkSettings
    sync: SyncSettings = field(default_factory=SyncSettings)
    partition: PartitionSettings = field(default_factory=PartitionSettings)
    checkpoint_dir: Optional[str] = None
    max_workers: int = 4

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AppConfig":
        if not isinstance(raw, dict):
            raise ConfigValidationError("Config must be a dictionary")
        config = cls(
            sink=SinkSettings.from_dict(raw.get("sink")),
            sync=SyncSettings.from_dict(raw.get("sync")),
            partition=PartitionSettings.from_dict(raw.get("partition")),
        )
        if raw.get("checkpoint_dir") is not None:
            config.checkpoint_dir = _ensure_str(raw["checkpoint_dir"], "checkpoint_dir")
        if "max_workers" in raw:
            config.max_workers = _ensure_positive_int(raw["max_workers"], "max_workers")
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sink": self.sink.to_dict(),
            "sync": self.sync.to_dict(),
            "partition": self.partition.to_dict(),
            "checkpoint_dir": self.checkpoint_dir,
            "max_workers": self.max_workers,
        }
