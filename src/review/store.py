"""Document store backends for reviewed scan records.

The store is an external collaborator; ``DocumentStore`` fixes the
boundary. ``HttpDocumentStore`` talks to the document API over httpx,
``InMemoryDocumentStore`` keeps records in process for local runs and
tests.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

import httpx

from src.errors import PersistenceError
from src.utils.config import ServiceConfig
from src.utils.logger import get_logger

logger = get_logger(__name__)

STATUS_COMPLETED = "completed"
STATUS_REVIEWED = "reviewed"

DEFAULT_RECENT_LIMIT = 20

SCANS_PATH = "/api/scan-pipeline/scans"


@dataclass(frozen=True)
class ScanRecord:
    """Persisted scan as the document store holds it."""

    id: str
    org_id: str
    template_key: str | None
    storage_path: str | None
    extracted_data: dict[str, str]
    status: str
    created_by: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    created_at: datetime | None = None
    original_filename: str | None = None


class DocumentStore(ABC):
    """Boundary of the persisted-document backend."""

    @abstractmethod
    def save_review(
        self,
        scan_id: str,
        extracted_data: dict[str, str],
        reviewer_id: str,
        reviewed_at: datetime,
    ) -> ScanRecord:
        """Overwrite a record's data and mark it reviewed."""

    @abstractmethod
    def confirm(self, scan_id: str) -> bool:
        """Mark an externally submitted record reviewed.

        Returns:
            ``True`` if the status changed, ``False`` if it was already
            reviewed.
        """

    @abstractmethod
    def list_recent(self, org_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> list[ScanRecord]:
        """Return the organization's most recently created records, newest first."""


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe in-process store; writes to one record are serialized."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, ScanRecord] = {}

    def put(self, record: ScanRecord) -> None:
        with self._lock:
            self._records[record.id] = record

    def get(self, scan_id: str) -> ScanRecord | None:
        with self._lock:
            return self._records.get(scan_id)

    def save_review(
        self,
        scan_id: str,
        extracted_data: dict[str, str],
        reviewer_id: str,
        reviewed_at: datetime,
    ) -> ScanRecord:
        with self._lock:
            record = self._records.get(scan_id)
            if record is None:
                raise PersistenceError(f"Scan record not found: {scan_id}")
            record = replace(
                record,
                extracted_data=dict(extracted_data),
                status=STATUS_REVIEWED,
                reviewed_by=reviewer_id,
                reviewed_at=reviewed_at,
            )
            self._records[scan_id] = record
        return record

    def confirm(self, scan_id: str) -> bool:
        with self._lock:
            record = self._records.get(scan_id)
            if record is None:
                raise PersistenceError(f"Scan record not found: {scan_id}")
            if record.status == STATUS_REVIEWED:
                return False
            self._records[scan_id] = replace(record, status=STATUS_REVIEWED)
        return True

    def list_recent(self, org_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> list[ScanRecord]:
        with self._lock:
            records = [r for r in self._records.values() if r.org_id == org_id]
        records.sort(
            key=lambda r: r.created_at.timestamp() if r.created_at else float("-inf"),
            reverse=True,
        )
        return records[:limit]


class HttpDocumentStore(DocumentStore):
    """Document store reached through the document API.

    Args:
        config: Base URL, timeouts and API key of the document API.
        client: Pre-built httpx client, mainly for tests.
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.config = config or ServiceConfig()
        headers = {"Authorization": f"Bearer {self.config.api_key}"} if self.config.api_key else {}
        self._client = client or httpx.Client(
            base_url=self.config.base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(
                self.config.timeout_seconds,
                connect=self.config.connect_timeout_seconds,
            ),
        )

    def close(self) -> None:
        self._client.close()

    def save_review(
        self,
        scan_id: str,
        extracted_data: dict[str, str],
        reviewer_id: str,
        reviewed_at: datetime,
    ) -> ScanRecord:
        body = {
            "scanId": scan_id,
            "extractedData": extracted_data,
            "reviewerId": reviewer_id,
            "reviewedAt": reviewed_at.isoformat(),
        }
        data = self._post(f"{SCANS_PATH}/{scan_id}/review", body)
        return _record_from_response(data, scan_id, extracted_data, reviewer_id, reviewed_at)

    def confirm(self, scan_id: str) -> bool:
        data = self._post("/api/upload/confirm", {"scan_id": scan_id})
        return not data.get("already_confirmed", False)

    def list_recent(self, org_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> list[ScanRecord]:
        data = self._request("GET", SCANS_PATH, params={"org_id": org_id, "limit": limit})
        rows = data.get("scans")
        if not isinstance(rows, list):
            raise PersistenceError("Scan listing has no scan list")
        return [_record_from_row(row) for row in rows if isinstance(row, dict)][:limit]

    def _post(self, path: str, body: dict) -> dict:
        return self._request("POST", path, json=body)

    def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Document store request failed: %s", e)
            raise PersistenceError(f"Document store unreachable: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not resp.is_success:
            detail = data.get("error") or data.get("detail") or f"HTTP {resp.status_code}"
            logger.error("Document store error %d: %s", resp.status_code, detail)
            raise PersistenceError(str(detail))
        return data


def _record_from_response(
    data: dict,
    scan_id: str,
    extracted_data: dict[str, str],
    reviewer_id: str,
    reviewed_at: datetime,
) -> ScanRecord:
    """Build the record from the API's answer, falling back to what was sent."""
    raw = data.get("scan") if isinstance(data.get("scan"), dict) else {}
    return ScanRecord(
        id=str(raw.get("id", scan_id)),
        org_id=str(raw.get("org_id", "")),
        template_key=raw.get("template_key"),
        storage_path=raw.get("storage_path"),
        extracted_data=raw.get("extracted_data") or dict(extracted_data),
        status=raw.get("status", STATUS_REVIEWED),
        created_by=raw.get("created_by"),
        reviewed_by=raw.get("reviewed_by", reviewer_id),
        reviewed_at=reviewed_at,
    )


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _record_from_row(row: dict) -> ScanRecord:
    """Build a record from one row of the scan listing."""
    data = row.get("extracted_data")
    if not isinstance(data, dict):
        data = {}
    return ScanRecord(
        id=str(row.get("id", "")),
        org_id=str(row.get("org_id", "")),
        template_key=row.get("template_key"),
        storage_path=row.get("storage_path"),
        extracted_data={str(k): "" if v is None else str(v) for k, v in data.items()},
        status=str(row.get("status", STATUS_COMPLETED)),
        created_by=row.get("created_by"),
        reviewed_by=row.get("reviewed_by"),
        reviewed_at=_parse_time(row.get("reviewed_at")),
        created_at=_parse_time(row.get("created_at")),
        original_filename=row.get("original_filename"),
    )
