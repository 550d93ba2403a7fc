"""Streaming ingestion into BigQuery through the tabledata.insertAll API."""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Pattern

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from entitysync.codec import encode_entity, parse_timestamp
from entitysync.config_models import SinkSettings
from entitysync.entity import Entity
from entitysync.exceptions import IngestionError
from entitysync.sinks.base import Destination, InsertRow, RowError, Sink

logger = logging.getLogger(__name__)

INSERT_ALL_REQUEST_KIND = "bigquery#tableDataInsertAllRequest"
DEFAULT_BASE_URL = "https://bigquery.googleapis.com/bigquery/v2"
INSERT_ALL_PATH = "/projects/{project}/datasets/{dataset}/tables/{table}/insertAll"

BLOB_PLACEHOLDER = "(blob)"
TIMESTAMP_FIELD = "__timestamp__"

_INVALID_FIELD_CHARS = re.compile(r"[^a-zA-Z0-9_]")
_MATCH_NOTHING = re.compile(r"^$")


def make_field_name(name: str) -> str:
    """Replace characters BigQuery rejects in column names with '_'."""
    return _INVALID_FIELD_CHARS.sub("_", name)


def compile_exclude(pattern: Optional[str]) -> Pattern:
    """Compile the exclude expression; blank or invalid excludes nothing."""
    pattern = (pattern or "").strip(" \t\n")
    if not pattern:
        return _MATCH_NOTHING
    try:
        return re.compile(pattern)
    except re.error as e:
        logger.warning(f"Unable to parse exclude regexp '{pattern}': {e}")
        return _MATCH_NOTHING


def _flatten_array(values: List[Any]) -> str:
    # Repeated values do not map to a column type; store them as JSON text
    if not values:
        return ""
    first = values[0]
    if isinstance(first, dict) and first.get("type") == "blob":
        return BLOB_PLACEHOLDER
    return json.dumps(values)


def document_to_row(
    document: Dict[str, Any],
    exclude: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Shape an entity document into a flat row of column values."""
    exclude_re = compile_exclude(exclude)
    row: Dict[str, Any] = {}

    for name, raw in document.items():
        if exclude_re.search(name):
            continue

        if isinstance(raw, list):
            value = _flatten_array(raw)
        elif isinstance(raw, dict):
            value_type = raw.get("type")
            if value_type == "blob":
                value = BLOB_PLACEHOLDER
            elif value_type == "date":
                try:
                    parse_timestamp(raw.get("value"))
                except (TypeError, ValueError) as e:
                    logger.warning(f"Ignoring invalid timestamp field: {name}: {raw} (err={e})")
                    continue
                value = raw["value"]
            else:
                value = raw.get("value")
        else:
            value = raw

        field_name = make_field_name(name)
        if field_name in row:
            logger.warning(f"Property {name} maps to column {field_name} already set by another property; overwriting")
        row[field_name] = value

    now = now or datetime.now(timezone.utc)
    row[TIMESTAMP_FIELD] = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return row


def entity_to_row(entity: Entity, exclude: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Encode an entity and shape it into a sink row."""
    return document_to_row(encode_entity(entity), exclude=exclude, now=now)


class BigQuerySink(Sink):
    """Sink posting rows to ``insertAll``.

    Credentials are the caller's concern: pass an already authorized
    ``requests.Session`` or the headers to send.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 30,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self.headers = {"Accept": "application/json", "Content-Type": "application/json"}
        self.headers.update(headers or {})
        self._own_session = session is None
        self.session = session if session is not None else requests.Session()

    @classmethod
    def from_settings(
        cls,
        settings: SinkSettings,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> "BigQuerySink":
        """Build a sink from the ``sink`` section of the config."""
        return cls(
            base_url=settings.base_url,
            timeout_seconds=settings.timeout_seconds,
            session=session,
            headers=headers,
        )

    def insert_all_url(self, destination: Destination) -> str:
        return self.base_url.rstrip("/") + INSERT_ALL_PATH.format(
            project=destination.project,
            dataset=destination.dataset,
            table=destination.table,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((requests.exceptions.ConnectionError, requests.exceptions.Timeout)),
        reraise=True
    )
    def _post(self, url: str, payload: Dict[str, Any]) -> requests.Response:
        """POST with retry on connection failures and timeouts."""
        logger.debug(f"Posting {len(payload['rows'])} rows to {url}")
        resp = self.session.post(url, data=json.dumps(payload), headers=self.headers, timeout=self.timeout_seconds)
        resp.raise_for_status()
        return resp

    def ingest_rows(self, destination: Destination, rows: List[InsertRow]) -> List[RowError]:
        if not rows:
            logger.info("Ignoring ingestion of 0 rows")
            return []
        if not destination.table:
            raise IngestionError("Destination has no table", destination=str(destination))

        url = self.insert_all_url(destination)
        payload = {
            "kind": INSERT_ALL_REQUEST_KIND,
            "rows": [r.to_dict() for r in rows],
        }

        try:
            resp = self._post(url, payload)
            result = resp.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Request error for {len(rows)} rows: {e}")
            raise IngestionError(
                "insertAll request failed",
                destination=str(destination),
                row_count=len(rows),
                original_error=e,
            ) from e
        except ValueError as e:
            raise IngestionError(
                "insertAll returned an invalid response",
                destination=str(destination),
                row_count=len(rows),
                original_error=e,
            ) from e

        if result is None:
            result = {}
        if not isinstance(result, dict):
            raise IngestionError(
                f"insertAll returned an unexpected {type(result).__name__} response",
                destination=str(destination),
                row_count=len(rows),
            )
        row_errors = [
            RowError(index=int(item.get("index", -1)), errors=list(item.get("errors") or []))
            for item in result.get("insertErrors") or []
        ]
        if row_errors:
            logger.warning(f"Insert errors for {len(row_errors)} of {len(rows)} rows into {destination}")
        return row_errors

    def close(self) -> None:
        if self._own_session:
            self.session.close()
