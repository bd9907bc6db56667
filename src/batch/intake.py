"""Batch intake: file acceptance and pre-dispatch batch assembly."""

import io
import threading
import uuid
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from src.errors import BatchAlreadyStartedError, IntakeError
from src.templates.registry import TemplateRegistry
from src.utils.logger import get_logger

from .resolver import TemplateResolver
from .state import DocumentItem, DocumentPayload, DocumentStateTracker

logger = get_logger(__name__)

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024

_MEDIA_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
}

SUPPORTED_EXTENSIONS = ("*.png", "*.jpg", "*.jpeg", "*.gif", "*.webp")


def sniff_media_type(content: bytes) -> str:
    """Identify an image's media type from its bytes.

    Formats the extraction service does not name explicitly are sent
    as JPEG.

    Raises:
        IntakeError: If the bytes are not a readable image.
    """
    try:
        with Image.open(io.BytesIO(content)) as img:
            fmt = img.format or ""
    except (UnidentifiedImageError, OSError) as exc:
        raise IntakeError("File is not a readable image") from exc
    return _MEDIA_TYPES.get(fmt.upper(), "image/jpeg")


def accept_file(
    filename: str,
    content: bytes,
    max_size: int = DEFAULT_MAX_FILE_SIZE,
) -> DocumentItem:
    """Turn an uploaded file into a pending batch item.

    Raises:
        IntakeError: If the file is empty, too large, or not an image.
    """
    if not content:
        raise IntakeError(f"{filename}: file is empty")
    if len(content) > max_size:
        raise IntakeError(
            f"{filename}: file too large ({len(content)} bytes, max {max_size})"
        )
    try:
        media_type = sniff_media_type(content)
    except IntakeError as exc:
        raise IntakeError(f"{filename}: {exc}") from exc

    item = DocumentItem(
        id=uuid.uuid4().hex,
        payload=DocumentPayload(content=content, filename=filename, media_type=media_type),
    )
    logger.debug("Accepted %s (%d bytes, %s) as %s", filename, len(content), media_type, item.id)
    return item


def find_documents(input_dir: Path) -> list[Path]:
    """Find all supported image files in a directory, sorted by name."""
    files: list[Path] = []
    for ext in SUPPORTED_EXTENSIONS:
        files.extend(input_dir.glob(ext))
        files.extend(input_dir.glob(ext.upper()))
    return sorted(set(files))


class Batch:
    """An ordered group of documents bound to one template and organization.

    Items can be added and removed until the batch is dispatched.

    Args:
        template_key: Concrete template key or ``auto_detect``.
        organization_id: Organization scope for every extraction call.
        registry: Used to reject unknown template keys up front.
        max_file_size: Per-file size limit in bytes.
    """

    def __init__(
        self,
        template_key: str,
        organization_id: str,
        registry: TemplateRegistry,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        batch_id: str | None = None,
    ) -> None:
        self.resolver = TemplateResolver(registry, template_key)
        self.id = batch_id or uuid.uuid4().hex
        self.template_key = template_key
        self.organization_id = organization_id
        self.registry = registry
        self.max_file_size = max_file_size
        self.tracker = DocumentStateTracker()
        self.started = False
        self.finished = False
        self.cancel_event = threading.Event()
        self._lock = threading.Lock()

    def add_file(self, filename: str, content: bytes) -> DocumentItem:
        item = accept_file(filename, content, self.max_file_size)
        with self._lock:
            self._ensure_not_started()
            self.tracker.add(item)
        return item

    def add_files(self, files: list[tuple[str, bytes]]) -> tuple[list[DocumentItem], list[str]]:
        """Accept several files, collecting rejections instead of stopping.

        Returns:
            The accepted items and one message per rejected file.
        """
        accepted: list[DocumentItem] = []
        rejected: list[str] = []
        for filename, content in files:
            try:
                accepted.append(self.add_file(filename, content))
            except IntakeError as exc:
                logger.warning("Rejected file: %s", exc)
                rejected.append(str(exc))
        return accepted, rejected

    def add_paths(self, paths: list[Path]) -> tuple[list[DocumentItem], list[str]]:
        return self.add_files([(p.name, p.read_bytes()) for p in paths])

    def remove_item(self, item_id: str) -> DocumentItem:
        """Remove an item before dispatch."""
        with self._lock:
            self._ensure_not_started()
            return self.tracker.remove(item_id)

    def cancel(self) -> None:
        """Ask a running batch to stop before its next item."""
        self.cancel_event.set()

    def mark_started(self) -> None:
        """Close the batch to changes; only the first caller succeeds."""
        with self._lock:
            self._ensure_not_started()
            self.started = True

    @property
    def items(self) -> list[DocumentItem]:
        return self.tracker.items

    def _ensure_not_started(self) -> None:
        if self.started:
            raise BatchAlreadyStartedError(f"Batch {self.id} has already been dispatched")
