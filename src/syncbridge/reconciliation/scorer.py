"""Fuzzy similarity score between two normalized records.

Score components (integers, summed):

- name: +100 exact, otherwise on containment by length ratio
  shorter/longer: > 0.7 -> +70, > 0.5 -> +50, else +30
- address: +80 exact, +40 on containment
- locality: +20 when both cities are present and agree, either by equality
  or by one side's address naming the other's city

Empty components never contribute. Scores are symmetric.
"""

from __future__ import annotations

import re

from src.syncbridge.reconciliation.normalizer import NormalizedFields

DEFAULT_FUZZY_THRESHOLD = 70

NAME_EXACT = 100
NAME_CONTAINS_HIGH = 70
NAME_CONTAINS_MID = 50
NAME_CONTAINS_LOW = 30
ADDRESS_EXACT = 80
ADDRESS_CONTAINS = 40
LOCALITY_BONUS = 20


def _contains(a: str, b: str) -> bool:
    return a in b or b in a


def name_score(a: str, b: str) -> int:
    if not a or not b:
        return 0
    if a == b:
        return NAME_EXACT
    if not _contains(a, b):
        return 0
    ratio = min(len(a), len(b)) / max(len(a), len(b))
    if ratio > 0.7:
        return NAME_CONTAINS_HIGH
    if ratio > 0.5:
        return NAME_CONTAINS_MID
    return NAME_CONTAINS_LOW


def address_score(a: str, b: str) -> int:
    if not a or not b:
        return 0
    if a == b:
        return ADDRESS_EXACT
    if _contains(a, b):
        return ADDRESS_CONTAINS
    return 0


def _mentions(address: str, city: str) -> bool:
    return bool(address) and re.search(rf"\b{re.escape(city)}\b", address) is not None


def locality_score(a: NormalizedFields, b: NormalizedFields) -> int:
    if not a.city or not b.city:
        return 0
    if a.city == b.city or _mentions(b.address, a.city) or _mentions(a.address, b.city):
        return LOCALITY_BONUS
    return 0


def score_breakdown(a: NormalizedFields, b: NormalizedFields) -> dict[str, int]:
    """Per-component scores plus ``total``."""
    parts = {
        "name": name_score(a.name, b.name),
        "address": address_score(a.address, b.address),
        "locality": locality_score(a, b),
    }
    parts["total"] = sum(parts.values())
    return parts


def score(a: NormalizedFields, b: NormalizedFields) -> int:
    return score_breakdown(a, b)["total"]
