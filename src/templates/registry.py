"""Read-only catalogue of extraction templates.

Templates are loaded once per session, either from a YAML file or from
the extraction service's template listing, and are never mutated after
construction so concurrent batches can share one registry.
"""

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.errors import TemplateLoadError, UnknownTemplateError
from src.utils.logger import get_logger

logger = get_logger(__name__)

AUTO_DETECT = "auto_detect"

# Display order of categories in the template picker.
CATEGORY_ORDER: tuple[str, ...] = (
    "ssm",
    "psi",
    "medical",
    "equipment",
    "general",
    "accounting",
)

FIELD_TYPES = frozenset({"text", "textarea", "number", "select", "date"})


@dataclass(frozen=True)
class TemplateField:
    """One field of a template schema."""

    key: str
    label: str
    type: str = "text"
    options: tuple[str, ...] | None = None
    validation_rule: str | None = None


@dataclass(frozen=True)
class Template:
    """Schema describing one class of document."""

    key: str
    name: str
    category: str
    fields: tuple[TemplateField, ...] = ()
    id: str | None = None
    extraction_prompt: str | None = None

    @property
    def is_auto_detect(self) -> bool:
        return self.key == AUTO_DETECT

    @property
    def field_keys(self) -> list[str]:
        return [f.key for f in self.fields]

    def get_field(self, key: str) -> TemplateField | None:
        for f in self.fields:
            if f.key == key:
                return f
        return None


AUTO_DETECT_TEMPLATE = Template(
    key=AUTO_DETECT,
    name="Auto-detect",
    category="general",
    id=AUTO_DETECT,
)


def _parse_field(raw: Mapping[str, Any]) -> TemplateField:
    """Build a field from its catalogue entry.

    Accepts both ``validation_rule`` and the service's ``validation`` key.
    """
    try:
        key = str(raw["key"])
    except KeyError as exc:
        raise TemplateLoadError(f"Template field without key: {raw!r}") from exc

    field_type = str(raw.get("type") or "text")
    if field_type not in FIELD_TYPES:
        logger.warning("Field '%s' has unknown type '%s', treating as text", key, field_type)
        field_type = "text"

    options = raw.get("options")
    return TemplateField(
        key=key,
        label=str(raw.get("label") or key),
        type=field_type,
        options=tuple(str(o) for o in options) if options else None,
        validation_rule=raw.get("validation_rule") or raw.get("validation") or None,
    )


def parse_template(raw: Mapping[str, Any]) -> Template:
    """Build a template from a catalogue entry.

    Both the local spelling (``key``, ``name``) and the service listing's
    spelling (``template_key``, ``name_ro``) are understood.

    Raises:
        TemplateLoadError: If the entry has no key.
    """
    key = raw.get("key") or raw.get("template_key")
    if not key:
        raise TemplateLoadError(f"Template without key: {raw!r}")
    if key == AUTO_DETECT:
        raise TemplateLoadError(f"'{AUTO_DETECT}' is reserved and cannot be registered")

    return Template(
        key=str(key),
        name=str(raw.get("name") or raw.get("name_ro") or key),
        category=str(raw.get("category") or "general"),
        fields=tuple(_parse_field(f) for f in raw.get("fields") or []),
        id=str(raw["id"]) if raw.get("id") is not None else None,
        extraction_prompt=raw.get("extraction_prompt"),
    )


class TemplateRegistry:
    """Immutable lookup of templates by key.

    Args:
        templates: Templates to register. Later duplicates of a key are
            ignored with a warning.
    """

    def __init__(self, templates: Iterable[Template] = ()) -> None:
        entries: dict[str, Template] = {}
        for template in templates:
            if template.key in entries:
                logger.warning("Duplicate template key '%s' ignored", template.key)
                continue
            entries[template.key] = template
        self._templates: Mapping[str, Template] = entries

    @classmethod
    def from_entries(cls, entries: Iterable[Mapping[str, Any]]) -> "TemplateRegistry":
        """Build a registry from raw catalogue entries (file or service listing)."""
        return cls(parse_template(e) for e in entries)

    @classmethod
    def from_yaml(cls, path: Path) -> "TemplateRegistry":
        """Load templates from a YAML catalogue.

        The file holds a top-level ``templates`` list. A missing file
        yields an empty registry, in which case only auto-detect batches
        can be dispatched.

        Raises:
            TemplateLoadError: If the file cannot be parsed.
        """
        if not path.exists():
            logger.warning("No templates file at %s, registry is empty", path)
            return cls()

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise TemplateLoadError(f"Invalid templates file {path}: {exc}") from exc

        registry = cls.from_entries(data.get("templates") or [])
        logger.info("Loaded %d templates from %s", len(registry), path)
        return registry

    def __len__(self) -> int:
        return len(self._templates)

    def __iter__(self) -> Iterator[Template]:
        return iter(self._templates.values())

    def __contains__(self, key: object) -> bool:
        return key in self._templates

    def find(self, key: str | None) -> Template | None:
        """Return the template for ``key`` or ``None`` when unregistered."""
        if key is None:
            return None
        return self._templates.get(key)

    def get(self, key: str) -> Template:
        """Return the template bound to a dispatch key.

        ``auto_detect`` resolves to the sentinel template.

        Raises:
            UnknownTemplateError: If the key is not registered.
        """
        if key == AUTO_DETECT:
            return AUTO_DETECT_TEMPLATE
        template = self._templates.get(key)
        if template is None:
            raise UnknownTemplateError(f"Unknown template: {key}")
        return template

    def by_category(self) -> dict[str, list[Template]]:
        """Group templates by category, known categories first.

        Categories without templates are omitted; unknown categories are
        appended in first-seen order.
        """
        grouped: dict[str, list[Template]] = {}
        for template in self._templates.values():
            grouped.setdefault(template.category, []).append(template)

        ordered = {c: grouped[c] for c in CATEGORY_ORDER if c in grouped}
        for category, templates in grouped.items():
            ordered.setdefault(category, templates)
        return ordered
