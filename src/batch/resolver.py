"""Binds a batch to its active template.

In explicit mode the active template is fixed at dispatch. In
auto-detect mode it starts unresolved and is bound, once, to the first
detected type that exists in the registry.
"""

from src.templates.registry import AUTO_DETECT, Template, TemplateRegistry
from src.utils.logger import get_logger

from .state import DocumentItem, ItemStatus

logger = get_logger(__name__)


class TemplateResolver:
    """Tracks the active template of one batch.

    Args:
        registry: Template catalogue used to look up detected types.
        dispatch_key: Concrete template key or ``auto_detect``.

    Raises:
        UnknownTemplateError: If ``dispatch_key`` is neither ``auto_detect``
            nor a registered key.
    """

    def __init__(self, registry: TemplateRegistry, dispatch_key: str) -> None:
        self.registry = registry
        self.dispatch_key = dispatch_key
        self._dispatch_template = registry.get(dispatch_key)
        self._active: Template | None = (
            None if self.auto_detect else self._dispatch_template
        )

    @property
    def auto_detect(self) -> bool:
        return self.dispatch_key == AUTO_DETECT

    @property
    def active_template(self) -> Template | None:
        """The concrete template for review, or ``None`` while unresolved."""
        return self._active

    @property
    def resolved(self) -> bool:
        return self._active is not None

    def accept_detected_type(self, detected_type: str | None) -> str | None:
        """Filter a detected type reported by the service.

        Explicit batches never carry a detected type, so anything the
        service sends there is dropped.
        """
        if not self.auto_detect:
            return None
        return detected_type or None

    def observe(self, detected_type: str | None) -> Template | None:
        """Consider a detected type from a completed extraction.

        The first registered type binds the batch; later detections,
        matching or not, leave the binding as it is.

        Returns:
            The template bound by this call, or ``None`` if nothing changed.
        """
        if not self.auto_detect or self._active is not None or not detected_type:
            return None

        template = self.registry.find(detected_type)
        if template is None:
            logger.info("Detected type '%s' is not a registered template", detected_type)
            return None

        self._active = template
        logger.info("Auto-detect bound batch to template '%s'", template.key)
        return template

    def template_for(self, detected_type: str | None) -> Template | None:
        """Template to validate a newly completed extraction with.

        Uses the batch's active template when bound, else the item's own
        detected type if that is registered. ``None`` means the item is
        shown as raw key/value pairs.
        """
        if self._active is not None:
            return self._active
        return self.registry.find(detected_type)

    def template_for_item(self, item: DocumentItem) -> Template | None:
        """Template to review and edit one item with.

        A completed item keeps the template it was validated against when
        it completed, so an item finished before an auto-detect binding
        stays on its raw fields. Other items follow the batch.
        """
        if item.status is ItemStatus.COMPLETED:
            return self.registry.find(item.template_key)
        return self._active
