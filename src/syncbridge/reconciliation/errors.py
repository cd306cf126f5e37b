"""Reconciliation error taxonomy.

Only ConfigurationError aborts a bulk pass (for the provider that raised it).
Every other kind is caught per record and reported in the run summary.
"""

from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""


class ConfigurationError(ReconciliationError):
    """A record provider has no credential or is otherwise unusable."""

    def __init__(self, message: str, system: str | None = None) -> None:
        super().__init__(message)
        self.system = system


class RecordError(ReconciliationError):
    """A single record has a malformed shape."""

    def __init__(self, message: str, system: str | None = None, external_id: str | None = None) -> None:
        super().__init__(message)
        self.system = system
        self.external_id = external_id


class ConstraintViolation(ReconciliationError):
    """The mapping store refused a write that would break uniqueness."""

    def __init__(self, message: str, system: str | None = None, external_id: str | None = None) -> None:
        super().__init__(message)
        self.system = system
        self.external_id = external_id


class ConflictDetectionError(ReconciliationError):
    """A tracked field could not be compared between two records."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class MappingNotFoundError(ReconciliationError):
    def __init__(self, mapping_id: str) -> None:
        super().__init__(f"Mapping {mapping_id} not found")
        self.mapping_id = mapping_id


class RecordNotFoundError(ReconciliationError):
    def __init__(self, system: str, external_id: str) -> None:
        super().__init__(f"{system} record {external_id} not found")
        self.system = system
        self.external_id = external_id


class LinkConflictError(ReconciliationError):
    """A manual link would detach a record that is already linked elsewhere."""
