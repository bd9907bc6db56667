"""Per-item lifecycle state and aggregate batch statistics.

Each item carries exactly one state variant. Completed and failed
items hold their own payloads, so a failed item can never carry a
scan id and a completed one always does. The tracker applies
transitions and keeps ``BatchStats`` in step under a single lock, then
notifies observers of the change.
"""

import threading
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field, replace
from enum import StrEnum

from src.errors import InvalidTransitionError
from src.utils.logger import get_logger

logger = get_logger(__name__)


class ItemStatus(StrEnum):
    """Lifecycle status of a document item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureKind(StrEnum):
    """Why an extraction call failed."""

    TRANSPORT = "transport"
    SERVICE_ERROR = "service_error"
    MALFORMED_RESPONSE = "malformed_response"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Pending:
    """Accepted and waiting for dispatch."""

    status = ItemStatus.PENDING


@dataclass(frozen=True)
class Processing:
    """Extraction call in flight."""

    status = ItemStatus.PROCESSING


@dataclass(frozen=True)
class Completed:
    """Terminal success state with everything the service returned.

    ``template_key`` names the template the data was validated against,
    or is ``None`` when the item completed without one and is reviewed as
    raw key/value pairs.
    """

    extracted_data: dict[str, str]
    confidence_score: float
    scan_id: str
    validation_errors: dict[str, str] = field(default_factory=dict)
    detected_type: str | None = None
    template_key: str | None = None

    status = ItemStatus.COMPLETED


@dataclass(frozen=True)
class Failed:
    """Terminal failure state."""

    reason: str
    kind: FailureKind = FailureKind.SERVICE_ERROR

    status = ItemStatus.FAILED


ItemState = Pending | Processing | Completed | Failed

_ALLOWED: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.PENDING: frozenset({ItemStatus.PROCESSING}),
    ItemStatus.PROCESSING: frozenset({ItemStatus.COMPLETED, ItemStatus.FAILED}),
    ItemStatus.COMPLETED: frozenset(),
    ItemStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class DocumentPayload:
    """Raw image content of one accepted file."""

    content: bytes
    filename: str
    media_type: str = "image/jpeg"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class DocumentItem:
    """One unit of work in a batch.

    The flat accessors below are views of ``state``; they return ``None``
    whenever the current variant does not carry the value.
    """

    id: str
    payload: DocumentPayload
    state: ItemState = field(default_factory=Pending)

    @property
    def status(self) -> ItemStatus:
        return self.state.status

    @property
    def is_terminal(self) -> bool:
        return self.status in (ItemStatus.COMPLETED, ItemStatus.FAILED)

    @property
    def extracted_data(self) -> dict[str, str] | None:
        return self.state.extracted_data if isinstance(self.state, Completed) else None

    @property
    def confidence_score(self) -> float | None:
        return self.state.confidence_score if isinstance(self.state, Completed) else None

    @property
    def scan_id(self) -> str | None:
        return self.state.scan_id if isinstance(self.state, Completed) else None

    @property
    def validation_errors(self) -> dict[str, str]:
        if isinstance(self.state, Completed):
            return self.state.validation_errors
        return {}

    @property
    def detected_type(self) -> str | None:
        return self.state.detected_type if isinstance(self.state, Completed) else None

    @property
    def template_key(self) -> str | None:
        return self.state.template_key if isinstance(self.state, Completed) else None

    @property
    def error(self) -> str | None:
        return self.state.reason if isinstance(self.state, Failed) else None


@dataclass(frozen=True)
class BatchStats:
    """Aggregate counters; ``pending`` is derived."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    processing: int = 0

    @property
    def pending(self) -> int:
        return self.total - self.completed - self.failed - self.processing

    @property
    def resolved(self) -> bool:
        return self.total == self.completed + self.failed

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "processing": self.processing,
            "pending": self.pending,
        }


@dataclass(frozen=True)
class StateChange:
    """Event emitted after every item transition."""

    item_id: str
    previous: ItemStatus
    current: ItemStatus
    stats: BatchStats


Observer = Callable[[StateChange], None]


class DocumentStateTracker:
    """Holds the batch's items and applies their transitions.

    Only the batch coordinator writes; any number of readers may call
    ``items``, ``get`` or ``stats`` while a batch is running.

    Args:
        items: Items in dispatch order. All must be pending.
    """

    def __init__(self, items: Iterable[DocumentItem] = ()) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, DocumentItem] = {}
        self._observers: list[Observer] = []
        self._stats = BatchStats()
        for item in items:
            self.add(item)

    def add(self, item: DocumentItem) -> None:
        """Register a new pending item."""
        if item.status is not ItemStatus.PENDING:
            raise InvalidTransitionError(f"Item {item.id} must be pending when added")
        with self._lock:
            if item.id in self._items:
                raise ValueError(f"Duplicate item id: {item.id}")
            self._items[item.id] = item
            self._stats = replace(self._stats, total=self._stats.total + 1)

    def remove(self, item_id: str) -> DocumentItem:
        """Drop a pending item. Dispatched items cannot be removed."""
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise KeyError(item_id)
            if item.status is not ItemStatus.PENDING:
                raise InvalidTransitionError(
                    f"Item {item_id} is {item.status} and cannot be removed"
                )
            del self._items[item_id]
            self._stats = replace(self._stats, total=self._stats.total - 1)
            return item

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[DocumentItem]:
        return iter(self.items)

    @property
    def items(self) -> list[DocumentItem]:
        with self._lock:
            return list(self._items.values())

    def get(self, item_id: str) -> DocumentItem:
        """Return an item by id.

        Raises:
            KeyError: If the id is unknown.
        """
        return self._items[item_id]

    @property
    def stats(self) -> BatchStats:
        return self._stats

    def counts_consistent(self) -> bool:
        """Check that the counters match the sum of item states."""
        with self._lock:
            counts = {status: 0 for status in ItemStatus}
            for item in self._items.values():
                counts[item.status] += 1
            stats = self._stats
        return (
            stats.total == len(self._items)
            and stats.completed == counts[ItemStatus.COMPLETED]
            and stats.failed == counts[ItemStatus.FAILED]
            and stats.processing == counts[ItemStatus.PROCESSING]
            and stats.pending == counts[ItemStatus.PENDING]
        )

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer and return a function that removes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def mark_processing(self, item_id: str) -> StateChange:
        return self._transition(item_id, Processing())

    def mark_completed(self, item_id: str, result: Completed) -> StateChange:
        return self._transition(item_id, result)

    def mark_failed(self, item_id: str, reason: str, kind: FailureKind) -> StateChange:
        return self._transition(item_id, Failed(reason=reason, kind=kind))

    def update_review(
        self,
        item_id: str,
        extracted_data: dict[str, str],
        validation_errors: dict[str, str],
    ) -> DocumentItem:
        """Replace a completed item's data after an operator edit.

        The status, scan id and confidence are kept as they are.
        """
        with self._lock:
            item = self._items[item_id]
            if not isinstance(item.state, Completed):
                raise InvalidTransitionError(f"Item {item_id} is {item.status}, not completed")
            item.state = replace(
                item.state,
                extracted_data=extracted_data,
                validation_errors=validation_errors,
            )
            return item

    def _transition(self, item_id: str, new_state: ItemState) -> StateChange:
        with self._lock:
            item = self._items[item_id]
            previous = item.status
            current = new_state.status
            if current not in _ALLOWED[previous]:
                raise InvalidTransitionError(
                    f"Item {item_id}: illegal transition {previous} -> {current}"
                )

            item.state = new_state
            self._stats = self._apply(self._stats, previous, current)
            change = StateChange(item_id, previous, current, self._stats)

        logger.debug("Item %s: %s -> %s", item_id, previous, current)
        self._notify(change)
        return change

    @staticmethod
    def _apply(stats: BatchStats, previous: ItemStatus, current: ItemStatus) -> BatchStats:
        counters = {
            "completed": stats.completed,
            "failed": stats.failed,
            "processing": stats.processing,
        }
        if previous.value in counters:
            counters[previous.value] -= 1
        if current.value in counters:
            counters[current.value] += 1
        return replace(stats, **counters)

    def _notify(self, change: StateChange) -> None:
        for observer in list(self._observers):
            try:
                observer(change)
            except Exception:
                logger.exception("State observer failed for item %s", change.item_id)
