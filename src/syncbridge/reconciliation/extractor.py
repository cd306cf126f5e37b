"""Cross-reference extraction from embedded integration payloads.

Providers expose links to other systems in several shapes. Each shape is a
small independent class; ``extract_cross_ref_id`` tries them in a fixed
order and returns the first non-empty identifier:

1. ``embedded_cross_refs`` as a list of tagged entries
   (``[{"type": "pm", "relation_id": "pm-77"}]``)
2. ``embedded_cross_refs`` as an object keyed by system
   (``{"procore": {"project_id": "77"}}``)
3. flat conventionally-named properties (``properties["pm_project_id"]``)
4. a nested ``external_ids`` list, tagged by ``source``/``type``/``provider``

Malformed entries are skipped; a shape never raises for unexpected input.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Protocol

import structlog

from src.syncbridge.reconciliation.schemas import SourceSystem

logger = structlog.get_logger(__name__)

# Names a system goes by inside integration payloads.
SYSTEM_ALIASES: dict[SourceSystem, tuple[str, ...]] = {
    SourceSystem.CRM: ("crm", "hubspot"),
    SourceSystem.PM: ("pm", "procore"),
    SourceSystem.PHOTO: ("photo", "companycam"),
}

_TAG_KEYS = ("type", "provider", "name", "source", "system")
_RELATION_KEYS = ("relation_id", "relationId")
_EXTERNAL_KEYS = ("external_id", "externalId", "project_id", "projectId", "deal_id", "dealId")
_ID_KEYS = ("id",)
_ENTRY_KEY_ORDER = (_RELATION_KEYS, _EXTERNAL_KEYS, _ID_KEYS)


def _clean(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def _read_entry_id(entry: Mapping[str, Any]) -> str | None:
    """Read relation id, then external/project/deal id, then plain id."""
    for keys in _ENTRY_KEY_ORDER:
        for key in keys:
            found = _clean(entry.get(key))
            if found:
                return found
    return None


def _entry_targets(entry: Mapping[str, Any], aliases: tuple[str, ...]) -> bool:
    for key in _TAG_KEYS:
        tag = entry.get(key)
        if isinstance(tag, str) and tag.strip().lower() in aliases:
            return True
    return False


def _tagged_list_lookup(entries: Iterable[Any], aliases: tuple[str, ...]) -> str | None:
    for entry in entries:
        if isinstance(entry, Mapping) and _entry_targets(entry, aliases):
            found = _read_entry_id(entry)
            if found:
                return found
    return None


def _keyed_object_lookup(payload: Mapping[str, Any], aliases: tuple[str, ...]) -> str | None:
    lowered = {str(k).lower(): v for k, v in payload.items()}
    for alias in aliases:
        entry = lowered.get(alias)
        if isinstance(entry, Mapping):
            found = _read_entry_id(entry)
            if found:
                return found
        else:
            found = _clean(entry)
            if found:
                return found
    return None


class CrossRefShape(Protocol):
    """One way a record can carry a reference to another system."""

    name: str

    def try_extract(self, record: Any, target: SourceSystem) -> str | None: ...


class TaggedListShape:
    """``embedded_cross_refs`` is a list of entries tagged with the target system."""

    name = "tagged_list"

    def try_extract(self, record: Any, target: SourceSystem) -> str | None:
        refs = record.embedded_cross_refs
        if not isinstance(refs, list):
            return None
        return _tagged_list_lookup(refs, SYSTEM_ALIASES[target])


class KeyedObjectShape:
    """``embedded_cross_refs`` is an object keyed by system name."""

    name = "keyed_object"

    def try_extract(self, record: Any, target: SourceSystem) -> str | None:
        refs = record.embedded_cross_refs
        if not isinstance(refs, Mapping):
            return None
        return _keyed_object_lookup(refs, SYSTEM_ALIASES[target])


class FlatPropertyShape:
    """Conventionally named properties such as ``pm_project_id`` or ``hubspot_deal_id``.

    Also accepts an ``integrations`` list/object nested under ``properties``.
    """

    name = "flat_property"

    _SUFFIXES = ("_project_id", "_deal_id", "_id")

    def try_extract(self, record: Any, target: SourceSystem) -> str | None:
        props = record.properties
        if not isinstance(props, Mapping):
            return None
        aliases = SYSTEM_ALIASES[target]
        for alias in aliases:
            for suffix in self._SUFFIXES:
                found = _clean(props.get(f"{alias}{suffix}"))
                if found:
                    return found

        nested = props.get("integrations")
        if isinstance(nested, list):
            return _tagged_list_lookup(nested, aliases)
        if isinstance(nested, Mapping):
            return _keyed_object_lookup(nested, aliases)
        return None


class ExternalIdsShape:
    """A nested ``external_ids`` list using the same tag-matching rule."""

    name = "external_ids"

    def try_extract(self, record: Any, target: SourceSystem) -> str | None:
        aliases = SYSTEM_ALIASES[target]
        containers: list[Any] = []
        if isinstance(record.properties, Mapping):
            containers.append(record.properties.get("external_ids"))
        if isinstance(record.embedded_cross_refs, Mapping):
            containers.append(record.embedded_cross_refs.get("external_ids"))
        for entries in containers:
            if isinstance(entries, list):
                found = _tagged_list_lookup(entries, aliases)
                if found:
                    return found
        return None


DEFAULT_SHAPES: tuple[CrossRefShape, ...] = (
    TaggedListShape(),
    KeyedObjectShape(),
    FlatPropertyShape(),
    ExternalIdsShape(),
)


def extract_cross_ref_id(
    record: Any,
    target: SourceSystem,
    shapes: Iterable[CrossRefShape] = DEFAULT_SHAPES,
) -> str | None:
    """Return the target-system id embedded in ``record``, or None.

    Reads only ``record`` and performs no I/O.
    """
    for shape in shapes:
        found = shape.try_extract(record, target)
        if found:
            logger.debug(
                "extractor.cross_ref_found",
                system=record.system.value,
                external_id=record.external_id,
                target=target.value,
                shape=shape.name,
            )
            return found
    return None
