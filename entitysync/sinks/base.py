from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Destination:
    """Where rows land: ``project:dataset.table``."""

    project: str
    dataset: str
    table: Optional[str] = None

    def for_kind(self, kind: str) -> "Destination":
        """Default the table to the entity kind."""
        if self.table:
            return self
        return Destination(self.project, self.dataset, kind)

    def __str__(self) -> str:
        return f"{self.project}:{self.dataset}.{self.table or '*'}"


@dataclass
class InsertRow:
    """One row plus the idempotency id the sink may de-duplicate on."""

    insert_id: str
    json: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"insertId": self.insert_id, "json": self.json}


@dataclass
class RowError:
    """Errors the sink reported for the row at ``index`` of a request."""

    index: int
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def __str__(self) -> str:
        reasons = "; ".join(
            f"{e.get('location') or '-'}: {e.get('message') or e.get('reason') or e}" for e in self.errors
        )
        return f"row {self.index}: {reasons}"


class Sink(ABC):
    """Abstract base class for all sinks.

    Implementations must return:

      - an empty list when every row was accepted;
      - otherwise one RowError per rejected row.

    Transport failures are raised as IngestionError.
    """

    @abstractmethod
    def ingest_rows(self, destination: Destination, rows: List[InsertRow]) -> List[RowError]:
        ...

    def close(self) -> None:
        return None

    def __enter__(self) -> "Sink":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
