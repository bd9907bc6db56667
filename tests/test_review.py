"""Tests for operator review, saving and external confirmation."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import pytest

from conftest import INVALID_CUI, VALID_CUI, FakeExtractionClient, invoice_success, service_failure
from src.batch.coordinator import BatchCoordinator
from src.batch.state import ItemStatus
from src.errors import PersistenceError, ReviewError
from src.review.adapter import ReviewAdapter
from src.review.store import (
    STATUS_COMPLETED,
    STATUS_REVIEWED,
    HttpDocumentStore,
    InMemoryDocumentStore,
    ScanRecord,
)
from src.templates.registry import AUTO_DETECT


def _record(scan_id: str, status: str = STATUS_COMPLETED) -> ScanRecord:
    return ScanRecord(
        id=scan_id,
        org_id="org-1",
        template_key="invoice_ro",
        storage_path=f"org-1/{scan_id}.png",
        extracted_data={},
        status=status,
        created_by="user-1",
    )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    s = InMemoryDocumentStore()
    for scan_id in ("scan-1", "scan-2"):
        s.put(_record(scan_id))
    return s


@pytest.fixture
def adapter(store: InMemoryDocumentStore) -> ReviewAdapter:
    return ReviewAdapter(store)


@pytest.fixture
def processed_batch(make_batch):
    """Two-item invoice batch: first completed, second failed."""
    batch = make_batch(2)
    client = FakeExtractionClient([invoice_success("scan-1"), service_failure()])
    BatchCoordinator(client, sleep=lambda s: None).run(batch)
    return batch


class TestEditField:
    def test_invalid_edit_flags_only_that_field(self, processed_batch, adapter) -> None:
        item = processed_batch.items[0]
        template = processed_batch.resolver.active_template
        processed_batch.tracker.update_review(
            item.id, dict(item.extracted_data), {"moneda": "Value must be one of: RON, EUR, USD"}
        )

        edited = adapter.edit_field(
            processed_batch.tracker, item.id, "furnizor_cui", INVALID_CUI, template
        )

        assert edited.extracted_data["furnizor_cui"] == INVALID_CUI
        assert edited.validation_errors["furnizor_cui"] == "Invalid CUI check digit"
        assert edited.validation_errors["moneda"] == "Value must be one of: RON, EUR, USD"
        assert edited.scan_id == "scan-1"
        assert edited.status is ItemStatus.COMPLETED

    def test_fixing_value_clears_error(self, processed_batch, adapter) -> None:
        item = processed_batch.items[0]
        template = processed_batch.resolver.active_template
        tracker = processed_batch.tracker

        adapter.edit_field(tracker, item.id, "furnizor_cui", INVALID_CUI, template)
        edited = adapter.edit_field(tracker, item.id, "furnizor_cui", VALID_CUI, template)

        assert "furnizor_cui" not in edited.validation_errors

    def test_unknown_field_rejected(self, processed_batch, adapter) -> None:
        item = processed_batch.items[0]
        with pytest.raises(ReviewError):
            adapter.edit_field(
                processed_batch.tracker,
                item.id,
                "not_a_field",
                "x",
                processed_batch.resolver.active_template,
            )

    def test_failed_item_cannot_be_edited(self, processed_batch, adapter) -> None:
        item = processed_batch.items[1]
        with pytest.raises(ReviewError):
            adapter.edit_field(
                processed_batch.tracker,
                item.id,
                "furnizor_cui",
                VALID_CUI,
                processed_batch.resolver.active_template,
            )

    def test_unstructured_edit_not_validated(self, make_batch, adapter) -> None:
        batch = make_batch(1, template_key=AUTO_DETECT)
        outcome = invoice_success(extracted_data={"serie": "XY"}, detected_type="passport")
        BatchCoordinator(FakeExtractionClient([outcome]), sleep=lambda s: None).run(batch)
        item = batch.items[0]

        edited = adapter.edit_field(batch.tracker, item.id, "serie", "???", None)

        assert edited.extracted_data == {"serie": "???"}
        assert edited.validation_errors == {}


class TestSave:
    def test_save_persists_invalid_edit(self, processed_batch, adapter, store) -> None:
        item = processed_batch.items[0]
        template = processed_batch.resolver.active_template
        adapter.edit_field(processed_batch.tracker, item.id, "furnizor_cui", INVALID_CUI, template)

        assert adapter.can_save(item)
        record = adapter.save(processed_batch.tracker.get(item.id), "reviewer-7")

        assert record is not None
        stored = store.get("scan-1")
        assert stored.status == STATUS_REVIEWED
        assert stored.extracted_data["furnizor_cui"] == INVALID_CUI
        assert stored.reviewed_by == "reviewer-7"
        assert stored.reviewed_at is not None

    def test_save_is_idempotent(self, processed_batch, adapter, store) -> None:
        item = processed_batch.items[0]
        adapter.save(item, "reviewer-7")
        first = store.get("scan-1").extracted_data
        adapter.save(item, "reviewer-7")
        assert store.get("scan-1").extracted_data == first

    def test_failed_item_save_is_noop(self, processed_batch) -> None:
        store = MagicMock()
        adapter = ReviewAdapter(store)
        item = processed_batch.items[1]

        assert not adapter.can_save(item)
        assert adapter.save(item, "reviewer-7") is None
        store.save_review.assert_not_called()

    def test_pending_item_save_is_noop(self, make_batch) -> None:
        store = MagicMock()
        item = make_batch(1).items[0]
        assert ReviewAdapter(store).save(item, "reviewer-7") is None
        store.save_review.assert_not_called()

    def test_missing_record_raises(self, processed_batch) -> None:
        adapter = ReviewAdapter(InMemoryDocumentStore())
        with pytest.raises(PersistenceError):
            adapter.save(processed_batch.items[0], "reviewer-7")


class TestConfirmExternal:
    def test_confirm_flips_status_only(self, adapter, store) -> None:
        store.put(
            ScanRecord(
                id="ext-1",
                org_id="org-1",
                template_key=None,
                storage_path="uploads/ext-1.jpg",
                extracted_data={"nume": "Ion"},
                status=STATUS_COMPLETED,
            )
        )
        assert adapter.confirm_external("ext-1") is True
        record = store.get("ext-1")
        assert record.status == STATUS_REVIEWED
        assert record.extracted_data == {"nume": "Ion"}

    def test_confirm_twice_is_noop(self, adapter, store) -> None:
        assert adapter.confirm_external("scan-2") is True
        assert adapter.confirm_external("scan-2") is False

    def test_confirm_unknown_raises(self, adapter) -> None:
        with pytest.raises(PersistenceError):
            adapter.confirm_external("missing")


class TestReviewView:
    def test_structured_view(self, processed_batch, adapter) -> None:
        item = processed_batch.items[0]
        view = adapter.review_view(item, processed_batch.resolver.active_template)

        assert view.structured
        assert view.template_key == "invoice_ro"
        assert view.can_save
        assert [f.key for f in view.fields][:2] == ["numar_document", "data_document"]
        cui = next(f for f in view.fields if f.key == "furnizor_cui")
        assert cui.validation_rule == "cui"
        assert cui.error is None

    def test_failed_item_view(self, processed_batch, adapter) -> None:
        item = processed_batch.items[1]
        view = adapter.review_view(item, processed_batch.resolver.active_template)
        assert view.status is ItemStatus.FAILED
        assert "HTTP 500" in view.error
        assert not view.can_save
        assert all(f.value == "" for f in view.fields)

    def test_unstructured_view(self, make_batch, adapter) -> None:
        batch = make_batch(1, template_key=AUTO_DETECT)
        outcome = invoice_success(extracted_data={"nume": "Ion"}, detected_type="passport")
        BatchCoordinator(FakeExtractionClient([outcome]), sleep=lambda s: None).run(batch)

        view = adapter.review_view(batch.items[0], None)

        assert not view.structured
        assert view.template_key is None
        assert [(f.key, f.value) for f in view.fields] == [("nume", "Ion")]


class TestLateBinding:
    """Items completed before an auto-detect batch binds its template."""

    @pytest.fixture
    def late_bound_batch(self, make_batch):
        batch = make_batch(2, template_key=AUTO_DETECT)
        client = FakeExtractionClient(
            [
                invoice_success("scan-1", detected_type="passport", extracted_data={"serie": "XY"}),
                invoice_success("scan-2", detected_type="invoice_ro"),
            ]
        )
        BatchCoordinator(client, sleep=lambda s: None).run(batch)
        return batch

    def test_early_item_keeps_raw_view(self, late_bound_batch, adapter) -> None:
        early = late_bound_batch.items[0]
        template = late_bound_batch.resolver.template_for_item(early)

        view = adapter.review_view(early, template)

        assert late_bound_batch.resolver.active_template.key == "invoice_ro"
        assert not view.structured
        assert [(f.key, f.value) for f in view.fields] == [("serie", "XY")]

    def test_early_item_own_field_editable(self, late_bound_batch, adapter) -> None:
        early = late_bound_batch.items[0]
        template = late_bound_batch.resolver.template_for_item(early)

        edited = adapter.edit_field(late_bound_batch.tracker, early.id, "serie", "ZZ", template)

        assert edited.extracted_data == {"serie": "ZZ"}
        assert edited.template_key is None

    def test_binding_item_is_structured(self, late_bound_batch, adapter) -> None:
        item = late_bound_batch.items[1]
        view = adapter.review_view(item, late_bound_batch.resolver.template_for_item(item))
        assert view.structured
        assert view.template_key == "invoice_ro"


class TestReceivedDocuments:
    def _put(self, store: InMemoryDocumentStore, scan_id: str, org_id: str, day: int) -> None:
        store.put(
            ScanRecord(
                id=scan_id,
                org_id=org_id,
                template_key=None,
                storage_path=f"uploads/{scan_id}.jpg",
                extracted_data={},
                status=STATUS_COMPLETED,
                created_at=datetime(2024, 3, day, tzinfo=timezone.utc),
            )
        )

    def test_newest_first_within_org(self) -> None:
        store = InMemoryDocumentStore()
        self._put(store, "old", "org-1", 1)
        self._put(store, "new", "org-1", 3)
        self._put(store, "other", "org-2", 5)

        records = ReviewAdapter(store).received_documents("org-1")

        assert [r.id for r in records] == ["new", "old"]

    def test_limit(self) -> None:
        store = InMemoryDocumentStore()
        for day in range(1, 26):
            self._put(store, f"scan-{day}", "org-1", day)

        records = store.list_recent("org-1")

        assert len(records) == 20
        assert records[0].id == "scan-25"
        assert len(store.list_recent("org-1", limit=3)) == 3


class TestHttpDocumentStore:
    def _store(self, response: httpx.Response) -> tuple[HttpDocumentStore, MagicMock]:
        client = MagicMock()
        client.request.return_value = response
        return HttpDocumentStore(client=client), client

    def test_save_review_request(self) -> None:
        store, client = self._store(httpx.Response(200, json={"success": True}))
        reviewed_at = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)

        record = store.save_review("scan-1", {"a": "1"}, "reviewer-7", reviewed_at)

        method, path = client.request.call_args.args
        body = client.request.call_args.kwargs["json"]
        assert method == "POST"
        assert path == "/api/scan-pipeline/scans/scan-1/review"
        assert body == {
            "scanId": "scan-1",
            "extractedData": {"a": "1"},
            "reviewerId": "reviewer-7",
            "reviewedAt": "2024-03-15T12:00:00+00:00",
        }
        assert record.status == STATUS_REVIEWED
        assert record.reviewed_by == "reviewer-7"

    def test_save_error_raises(self) -> None:
        store, _ = self._store(httpx.Response(403, json={"error": "Forbidden"}))
        with pytest.raises(PersistenceError, match="Forbidden"):
            store.save_review("scan-1", {}, "r", datetime.now(timezone.utc))

    def test_unreachable_raises(self) -> None:
        client = MagicMock()
        client.request.side_effect = httpx.ConnectError("refused")
        with pytest.raises(PersistenceError):
            HttpDocumentStore(client=client).confirm("scan-1")

    def test_confirm(self) -> None:
        store, client = self._store(httpx.Response(200, json={"success": True}))
        assert store.confirm("scan-9") is True
        assert client.request.call_args.kwargs["json"] == {"scan_id": "scan-9"}

    def test_list_recent(self) -> None:
        store, client = self._store(
            httpx.Response(
                200,
                json={
                    "success": True,
                    "scans": [
                        {
                            "id": "ext-1",
                            "org_id": "org-1",
                            "status": "completed",
                            "storage_path": "org-1/ext-1.jpg",
                            "original_filename": "aviz.jpg",
                            "created_at": "2024-03-15T10:30:00+00:00",
                            "extracted_data": {"total": 12.5, "nota": None},
                        }
                    ],
                },
            )
        )

        records = store.list_recent("org-1", limit=5)

        assert client.request.call_args.args == ("GET", "/api/scan-pipeline/scans")
        assert client.request.call_args.kwargs["params"] == {"org_id": "org-1", "limit": 5}
        assert len(records) == 1
        record = records[0]
        assert record.original_filename == "aviz.jpg"
        assert record.created_at == datetime(2024, 3, 15, 10, 30, tzinfo=timezone.utc)
        assert record.extracted_data == {"total": "12.5", "nota": ""}

    def test_list_recent_without_list_raises(self) -> None:
        store, _ = self._store(httpx.Response(200, json={"success": True}))
        with pytest.raises(PersistenceError):
            store.list_recent("org-1")

    def test_confirm_already_confirmed(self) -> None:
        store, _ = self._store(
            httpx.Response(200, json={"success": True, "already_confirmed": True})
        )
        assert store.confirm("scan-9") is False
