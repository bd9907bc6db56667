"""Sequential, rate-limited dispatch of a batch to the extraction service.

Items are extracted strictly in order with one request in flight. A
fixed pause separates consecutive calls to stay under the service's
rate limit. Each item's failure is recorded on that item alone; the
loop always carries on to the next one.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

from src.extraction.client import ExtractionClient, ExtractionFailure, ExtractionSuccess
from src.templates.registry import Template
from src.utils.config import BatchConfig
from src.utils.logger import get_logger
from src.validation.rules_engine import RulesEngine

from .intake import Batch
from .state import BatchStats, Completed, DocumentItem, FailureKind, ItemStatus

logger = get_logger(__name__)

DEFAULT_INTER_ITEM_DELAY = 0.5


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one coordinator run."""

    batch_id: str
    stats: BatchStats
    active_template: Template | None
    cancelled: bool = False


class BatchCoordinator:
    """Drives a batch through the extraction client one item at a time.

    Args:
        client: Extraction service client.
        rules_engine: Validates extracted values against the template.
        inter_item_delay: Seconds to wait between two consecutive items.
        sleep: Sleep function, replaceable in tests.
    """

    def __init__(
        self,
        client: ExtractionClient,
        rules_engine: RulesEngine | None = None,
        inter_item_delay: float = DEFAULT_INTER_ITEM_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.rules_engine = rules_engine or RulesEngine()
        self.inter_item_delay = inter_item_delay
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        client: ExtractionClient,
        config: BatchConfig,
        rules_engine: RulesEngine | None = None,
    ) -> "BatchCoordinator":
        return cls(client, rules_engine, inter_item_delay=config.inter_item_delay_seconds)

    def run(self, batch: Batch) -> BatchResult:
        """Extract every pending item of the batch in order.

        Cancellation (``batch.cancel()``) is honoured between items only;
        an in-flight call always runs to completion. Items not reached
        stay pending.

        Raises:
            BatchAlreadyStartedError: If the batch was already dispatched.
        """
        batch.mark_started()
        return self.dispatch(batch)

    def dispatch(self, batch: Batch) -> BatchResult:
        """Extract a batch the caller has already marked started.

        Callers that hand the run to a background worker mark the batch
        first, so a second start or a late item removal is refused before
        any extraction happens.
        """
        if not batch.started:
            raise ValueError(f"Batch {batch.id} must be marked started before dispatch")
        items = [i for i in batch.items if i.status is ItemStatus.PENDING]
        logger.info(
            "Starting batch %s: %d items, template '%s'",
            batch.id,
            len(items),
            batch.template_key,
        )

        cancelled = False
        try:
            for index, item in enumerate(items):
                if batch.cancel_event.is_set():
                    cancelled = True
                    logger.info(
                        "Batch %s cancelled with %d items not dispatched",
                        batch.id,
                        len(items) - index,
                    )
                    break

                self._process_item(batch, item)

                if index < len(items) - 1 and self.inter_item_delay > 0:
                    self._sleep(self.inter_item_delay)
        finally:
            batch.finished = True

        stats = batch.tracker.stats
        logger.info(
            "Batch %s finished: %d completed, %d failed, %d pending",
            batch.id,
            stats.completed,
            stats.failed,
            stats.pending,
        )
        return BatchResult(
            batch_id=batch.id,
            stats=stats,
            active_template=batch.resolver.active_template,
            cancelled=cancelled,
        )

    def _process_item(self, batch: Batch, item: DocumentItem) -> None:
        tracker = batch.tracker
        tracker.mark_processing(item.id)

        try:
            outcome = self.client.extract(
                item.payload,
                batch.template_key,
                batch.organization_id,
                item.payload.filename,
            )
            if isinstance(outcome, ExtractionSuccess):
                completed = self._completed_state(batch, outcome)
        except Exception as exc:
            logger.exception("Unexpected error extracting %s", item.payload.filename)
            tracker.mark_failed(item.id, str(exc) or type(exc).__name__, FailureKind.INTERNAL)
            return

        if isinstance(outcome, ExtractionFailure):
            logger.error(
                "Extraction failed for %s (%s): %s",
                item.payload.filename,
                outcome.kind,
                outcome.message,
            )
            tracker.mark_failed(item.id, outcome.message, outcome.kind)
            return

        tracker.mark_completed(item.id, completed)
        logger.info(
            "Extracted %s: %d fields, confidence %.1f",
            item.payload.filename,
            len(outcome.extracted_data),
            outcome.confidence_score,
        )

    def _completed_state(self, batch: Batch, outcome: ExtractionSuccess) -> Completed:
        """Build the completed state, binding the batch template if detected.

        Explicit batches keep only the template's fields, filling missing
        ones with empty strings. Auto-detected items keep whatever fields
        the service returned.
        """
        resolver = batch.resolver
        detected_type = resolver.accept_detected_type(outcome.detected_type)
        resolver.observe(detected_type)

        data = dict(outcome.extracted_data)
        errors = dict(outcome.validation_errors)

        template = resolver.template_for(detected_type)
        if template is not None:
            if not resolver.auto_detect:
                data = {key: data.get(key, "") for key in template.field_keys}
            # Local validation replaces the service's verdict on template fields.
            errors = {
                k: v
                for k, v in errors.items()
                if k in data and template.get_field(k) is None
            }
            errors.update(self.rules_engine.validate_all(template, data))

        return Completed(
            extracted_data=data,
            confidence_score=outcome.confidence_score,
            scan_id=outcome.scan_id,
            validation_errors=errors,
            detected_type=detected_type,
            template_key=template.key if template is not None else None,
        )
