"""Operator review: local field edits and the save/confirm handoff.

Edits stay in memory and re-validate only the edited field. Saving
writes the current data to the document store and is only offered for
completed items that carry a scan id; validation errors never block it.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from src.batch.state import DocumentItem, DocumentStateTracker, ItemStatus
from src.errors import ReviewError
from src.templates.registry import Template
from src.utils.logger import get_logger
from src.validation.rules_engine import RulesEngine

from .store import DEFAULT_RECENT_LIMIT, DocumentStore, ScanRecord

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReviewField:
    """One row of the review form."""

    key: str
    label: str
    value: str
    type: str = "text"
    options: tuple[str, ...] | None = None
    validation_rule: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ReviewView:
    """What the operator sees for one item.

    ``structured`` is false when no concrete template applies and the
    fields are raw key/value pairs without validation.
    """

    item_id: str
    filename: str
    status: ItemStatus
    structured: bool
    template_key: str | None
    fields: list[ReviewField]
    confidence_score: float | None = None
    detected_type: str | None = None
    error: str | None = None
    can_save: bool = False


class ReviewAdapter:
    """Applies operator edits and persists reviewed items.

    Args:
        store: Document store receiving saves and confirmations.
        rules_engine: Validator used to re-check edited fields.
    """

    def __init__(self, store: DocumentStore, rules_engine: RulesEngine | None = None) -> None:
        self.store = store
        self.rules_engine = rules_engine or RulesEngine()

    @staticmethod
    def can_save(item: DocumentItem) -> bool:
        return item.status is ItemStatus.COMPLETED and bool(item.scan_id)

    def edit_field(
        self,
        tracker: DocumentStateTracker,
        item_id: str,
        key: str,
        value: str,
        template: Template | None,
    ) -> DocumentItem:
        """Change one field of a completed item and re-validate it.

        Only ``key``'s entry in the item's validation errors is touched.
        Without a concrete template the value is stored unvalidated.

        Raises:
            ReviewError: If the item is not completed, or the key is not a
                field of the template.
        """
        item = tracker.get(item_id)
        if item.status is not ItemStatus.COMPLETED or item.extracted_data is None:
            raise ReviewError(f"Item {item_id} is {item.status} and cannot be edited")

        errors = dict(item.validation_errors)
        if template is not None:
            field = template.get_field(key)
            if field is None:
                raise ReviewError(f"'{key}' is not a field of template '{template.key}'")
            error = self.rules_engine.validate(field, value)
            if error is None:
                errors.pop(key, None)
            else:
                errors[key] = error
        else:
            errors.pop(key, None)

        data = dict(item.extracted_data)
        data[key] = value
        return tracker.update_review(item_id, data, errors)

    def save(self, item: DocumentItem, reviewer_id: str) -> ScanRecord | None:
        """Persist the item's current data as reviewed.

        Returns:
            The stored record, or ``None`` without contacting the store when
            the item has no scan id to save against.

        Raises:
            PersistenceError: If the store rejects the write.
        """
        if not self.can_save(item):
            logger.debug("Save skipped for item %s (%s, no scan id)", item.id, item.status)
            return None

        record = self.store.save_review(
            item.scan_id,
            dict(item.extracted_data or {}),
            reviewer_id,
            datetime.now(timezone.utc),
        )
        if item.validation_errors:
            logger.info(
                "Saved scan %s with %d unresolved validation errors",
                item.scan_id,
                len(item.validation_errors),
            )
        else:
            logger.info("Saved scan %s", item.scan_id)
        return record

    def confirm_external(self, scan_id: str) -> bool:
        """Confirm a document submitted outside the batch flow.

        Only the record's status changes. Returns ``False`` when it was
        already confirmed.
        """
        changed = self.store.confirm(scan_id)
        logger.info("Confirm scan %s: %s", scan_id, "confirmed" if changed else "already reviewed")
        return changed

    def received_documents(self, org_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> list[ScanRecord]:
        """List the organization's recent scans, so external ones can be confirmed."""
        return self.store.list_recent(org_id, limit)

    def review_view(self, item: DocumentItem, template: Template | None) -> ReviewView:
        """Assemble the review form for one item."""
        data = item.extracted_data or {}
        errors = item.validation_errors

        if template is not None:
            fields = [
                ReviewField(
                    key=f.key,
                    label=f.label,
                    value=data.get(f.key, ""),
                    type=f.type,
                    options=f.options,
                    validation_rule=f.validation_rule,
                    error=errors.get(f.key),
                )
                for f in template.fields
            ]
        else:
            fields = [ReviewField(key=k, label=k, value=v) for k, v in data.items()]

        return ReviewView(
            item_id=item.id,
            filename=item.payload.filename,
            status=item.status,
            structured=template is not None,
            template_key=template.key if template is not None else None,
            fields=fields,
            confidence_score=item.confidence_score,
            detected_type=item.detected_type,
            error=item.error,
            can_save=self.can_save(item),
        )
