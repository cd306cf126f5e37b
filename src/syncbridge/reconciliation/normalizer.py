"""Canonical forms for names, addresses and tracked field values.

All functions are pure and idempotent: normalizing an already-normalized
value returns it unchanged.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from src.syncbridge.reconciliation.errors import ConflictDetectionError

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_ADDRESS_PUNCT = re.compile(r"[.,#-]")
_WHITESPACE = re.compile(r"\s+")
_STREET_SUFFIXES = re.compile(
    r"\b(street|st|avenue|ave|road|rd|drive|dr|lane|ln|boulevard|blvd|court|ct|place|pl|way)\b"
)


@dataclass(frozen=True)
class NormalizedFields:
    """Normalized projection of a record used by the scorer."""

    name: str = ""
    address: str = ""
    city: str = ""
    project_number: str = ""


def normalize_name(raw: str | None) -> str:
    """Lowercase and drop everything that is not an ASCII letter or digit."""
    if not raw:
        return ""
    return _NON_ALNUM.sub("", raw.lower())


def normalize_address(raw: str | None) -> str:
    """Lowercase, strip punctuation, collapse whitespace and drop street suffixes.

    >>> normalize_address("123 Main St.")
    '123 main'
    """
    if not raw:
        return ""
    value = _ADDRESS_PUNCT.sub("", raw.lower())
    value = _WHITESPACE.sub(" ", value)
    value = _STREET_SUFFIXES.sub("", value)
    return _WHITESPACE.sub(" ", value).strip()


def normalize_city(raw: str | None) -> str:
    if not raw:
        return ""
    return _WHITESPACE.sub(" ", raw.lower()).strip()


def normalize_identifier(raw: str | None) -> str:
    """Trim an identifier such as a project number. Case is significant."""
    if raw is None:
        return ""
    return str(raw).strip()


def normalize_value(value: Any, field: str | None = None) -> str:
    """Canonical string form of a tracked field value for comparison.

    Numbers compare by value ("50000" equals 50000.0). Strings compare
    case-insensitively with collapsed whitespace. Containers and other
    objects cannot be compared and raise ConflictDetectionError.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        raise ConflictDetectionError(f"Cannot compare boolean value for {field}", field=field)
    if isinstance(value, (int, float, Decimal)):
        return _format_number(Decimal(str(value)))
    if isinstance(value, str):
        text = _WHITESPACE.sub(" ", value).strip().lower()
        try:
            return _format_number(Decimal(text.replace(",", "").lstrip("$")))
        except InvalidOperation:
            return text
    raise ConflictDetectionError(
        f"Cannot compare value of type {type(value).__name__} for {field}", field=field
    )


def _format_number(number: Decimal) -> str:
    if not number.is_finite():
        return str(number).lower()
    # normalize() turns 100 into 1E+2; "f" writes it back out in full at any magnitude
    return format(number.normalize(), "f")


def normalize_record(record: Any) -> NormalizedFields:
    """Build the NormalizedFields projection of an external record."""
    return NormalizedFields(
        name=normalize_name(record.name),
        address=normalize_address(record.street_address),
        city=normalize_city(record.city),
        project_number=normalize_identifier(record.project_number),
    )
