"""Checksum and format validators for Romanian document identifiers.

Each validator takes the raw string and returns an error message, or
``None`` when the value is acceptable.
"""

import re
from decimal import Decimal, InvalidOperation

_CUI_KEY = "753217532"
_CNP_KEY = "279146358279"
_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")


def validate_cui(value: str) -> str | None:
    """Validate a Romanian fiscal code (CUI/CIF).

    The optional ``RO`` VAT prefix is ignored. The last digit is a check
    digit computed over the zero-padded body with the key 753217532.
    """
    cleaned = re.sub(r"\s", "", value).upper()
    if cleaned.startswith("RO"):
        cleaned = cleaned[2:]

    if not re.fullmatch(r"[0-9]+", cleaned):
        return "CUI must contain only digits"
    if not 2 <= len(cleaned) <= 10:
        return "CUI must have between 2 and 10 digits"

    body = cleaned[:-1].zfill(9)
    total = sum(int(d) * int(k) for d, k in zip(body, _CUI_KEY))
    check = total * 10 % 11
    if check == 10:
        check = 0

    if check != int(cleaned[-1]):
        return "Invalid CUI check digit"
    return None


def validate_cnp(value: str) -> str | None:
    """Validate a Romanian personal numeric code (CNP).

    Thirteen digits, the first one non-zero, the last a check digit over
    the key 279146358279 (remainder 10 maps to 1).
    """
    cleaned = re.sub(r"\s", "", value)
    if not re.fullmatch(r"[0-9]{13}", cleaned):
        return "CNP must have exactly 13 digits"
    if cleaned[0] == "0":
        return "CNP cannot start with 0"

    total = sum(int(d) * int(k) for d, k in zip(cleaned[:12], _CNP_KEY))
    check = total % 11
    if check == 10:
        check = 1

    if check != int(cleaned[12]):
        return "Invalid CNP check digit"
    return None


def validate_iban(value: str) -> str | None:
    """Validate an IBAN with the ISO 13616 mod-97 check."""
    cleaned = re.sub(r"\s", "", value).upper()
    if not re.fullmatch(r"[A-Z]{2}[0-9]{2}[A-Z0-9]{10,30}", cleaned):
        return f"Invalid IBAN format: {value}"

    rearranged = cleaned[4:] + cleaned[:4]
    digits = "".join(str(int(ch, 36)) for ch in rearranged)
    if int(digits) % 97 != 1:
        return "Invalid IBAN checksum"
    return None


def validate_email(value: str) -> str | None:
    if _EMAIL_PATTERN.match(value.strip()):
        return None
    return f"Invalid email: {value}"


def parse_amount(value: str) -> Decimal | None:
    """Parse an amount written with either decimal separator.

    ``1.234,56``, ``1,234.56`` and ``1234.56`` all parse; currency
    markers and spaces are dropped. Returns ``None`` if unparsable.
    """
    cleaned = re.sub(r"[\s$€]|RON|LEI", "", value, flags=re.IGNORECASE)
    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount


def validate_positive_amount(value: str) -> str | None:
    amount = parse_amount(value)
    if amount is None:
        return f"Invalid amount format: {value}"
    if amount <= 0:
        return f"Amount must be positive: {amount}"
    return None
