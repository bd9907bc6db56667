"""Advisory validation of extracted template fields.

Checks a field's value against its declared type (number, select, date)
and an optional named rule such as a CUI or CNP checksum. Results are
surfaced to the operator as inline messages and never block a save.
"""

from collections.abc import Callable, Mapping
from datetime import datetime

from src.templates.registry import Template, TemplateField
from src.utils.logger import get_logger

from .validators import (
    parse_amount,
    validate_cnp,
    validate_cui,
    validate_email,
    validate_iban,
    validate_positive_amount,
)

logger = get_logger(__name__)

Rule = Callable[[str], str | None]

ISO_DATE_FORMAT = "%Y-%m-%d"


class RulesEngine:
    """Field validator with pluggable named rules.

    Type checks run first; when the value passes them, the field's
    ``validation_rule`` (if any) is applied. Empty values are never
    flagged since a missing field is for the operator to fill in.

    Args:
        extra_rules: Additional named rules, overriding built-ins with the
            same name.
    """

    def __init__(self, extra_rules: Mapping[str, Rule] | None = None) -> None:
        self._rules: dict[str, Rule] = {
            "cui": validate_cui,
            "cnp": validate_cnp,
            "iban": validate_iban,
            "email": validate_email,
            "positive_amount": validate_positive_amount,
        }
        if extra_rules:
            self._rules.update(extra_rules)

    @property
    def rule_names(self) -> list[str]:
        return sorted(self._rules)

    def register_rule(self, name: str, rule: Rule) -> None:
        """Register or replace a named validation rule."""
        self._rules[name] = rule

    def validate(self, field: TemplateField, raw_value: str | None) -> str | None:
        """Validate one field value.

        Args:
            field: Field schema from the active template.
            raw_value: Extracted or edited value; ``None`` counts as empty.

        Returns:
            An error message, or ``None`` when the value is acceptable.
        """
        value = (raw_value or "").strip()
        if not value:
            return None

        error = self._check_type(field, value)
        if error is not None:
            return error

        if field.validation_rule:
            rule = self._rules.get(field.validation_rule)
            if rule is None:
                logger.warning(
                    "Unknown validation rule '%s' on field '%s'",
                    field.validation_rule,
                    field.key,
                )
                return None
            return rule(value)

        return None

    def validate_all(self, template: Template, data: Mapping[str, str]) -> dict[str, str]:
        """Validate every field of a template against extracted data.

        Keys present in ``data`` but not in the template are ignored.

        Returns:
            Mapping of field key to error message for failing fields only.
        """
        errors: dict[str, str] = {}
        for field in template.fields:
            error = self.validate(field, data.get(field.key, ""))
            if error is not None:
                errors[field.key] = error

        logger.debug(
            "Validated %d fields of '%s': %d errors",
            len(template.fields),
            template.key,
            len(errors),
        )
        return errors

    def _check_type(self, field: TemplateField, value: str) -> str | None:
        if field.type == "number":
            if parse_amount(value) is None:
                return f"Expected a number: {value}"
        elif field.type == "select":
            if field.options and value not in field.options:
                return f"Value must be one of: {', '.join(field.options)}"
        elif field.type == "date":
            try:
                datetime.strptime(value, ISO_DATE_FORMAT)
            except ValueError:
                return f"Expected a date as YYYY-MM-DD: {value}"
        return None
