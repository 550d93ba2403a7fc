"""Sinks that accept converted entity rows."""

from entitysync.sinks.base import Destination, InsertRow, RowError, Sink

__all__ = ["Destination", "InsertRow", "RowError", "Sink"]
