"""Abstract collaborators of the reconciliation engine.

The engine depends only on these interfaces. SQL-backed implementations
live in ``repository.py``; tests substitute in-memory doubles.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.syncbridge.reconciliation.schemas import (
    MappingCreate,
    MappingFilter,
    MappingPage,
    MappingRead,
    MappingUpdate,
    RecordPage,
    RunRead,
    RunStatus,
    SourceSystem,
)


class RecordProvider(ABC):
    """Read access to one external system's mirrored records.

    Raises:
        ConfigurationError: When the provider is not configured (e.g. no token).
    """

    system: SourceSystem

    @abstractmethod
    async def list_records(self, limit: int, offset: int) -> RecordPage:
        """Return one page of records ordered by external id."""
        ...

    @abstractmethod
    async def get_record(self, external_id: str) -> Any | None:
        """Return a single record, or None when it is not mirrored."""
        ...

    async def list_all(self, page_size: int = 500) -> RecordPage:
        """Drain every page into one RecordPage, rejected rows included.

        Offsets advance by ``page_size``: a page holds fewer records than
        requested when some of its rows were rejected.
        """
        combined = RecordPage()
        offset = 0
        while True:
            page = await self.list_records(limit=page_size, offset=offset)
            combined.data.extend(page.data)
            combined.rejected.extend(page.rejected)
            combined.total = page.total
            offset += page_size
            if offset >= page.total:
                return combined


class MappingStore(ABC):
    """Persistence for MappingRecords.

    Implementations must enforce that each (system, external_id) appears in
    at most one mapping and raise ConstraintViolation otherwise.
    """

    @abstractmethod
    async def find_by_external_id(self, system: SourceSystem, external_id: str) -> MappingRead | None:
        ...

    @abstractmethod
    async def get(self, mapping_id: str) -> MappingRead | None:
        ...

    @abstractmethod
    async def create(self, data: MappingCreate) -> MappingRead:
        ...

    @abstractmethod
    async def update(self, mapping_id: str, data: MappingUpdate) -> MappingRead:
        """Apply the fields explicitly set on ``data``.

        A side id may be set only while that side is empty or already holds
        the same id; the check and the write happen atomically. Clearing a
        side (setting it to None) is always allowed.

        Raises:
            MappingNotFoundError: Unknown mapping id.
            ConstraintViolation: The update would duplicate a linked id or
                replace a side another writer filled.
        """
        ...

    @abstractmethod
    async def list_mappings(self, filters: MappingFilter) -> MappingPage:
        ...


class AuditSink(ABC):
    """Append-only record of reconciliation actions."""

    @abstractmethod
    async def record_event(
        self,
        action: str,
        entity_type: str,
        entity_id: str | None,
        status: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        ...


class RunStore(ABC):
    """Durable progress of bulk-match runs, keyed by run id."""

    @abstractmethod
    async def start(self, run: RunRead) -> None:
        ...

    @abstractmethod
    async def update_progress(self, run_id: str, processed: int, total: int) -> None:
        ...

    @abstractmethod
    async def finish(
        self,
        run_id: str,
        status: RunStatus,
        summary: dict[str, Any],
        error_message: str | None = None,
    ) -> None:
        ...

    @abstractmethod
    async def get(self, run_id: str) -> RunRead | None:
        ...


class IdentifierWriteBack(ABC):
    """Pushes a newly linked identifier into the master system's record."""

    @abstractmethod
    async def write_identifier(
        self,
        master_system: SourceSystem,
        master_id: str,
        counterpart_system: SourceSystem,
        counterpart_id: str,
        project_number: str | None = None,
    ) -> None:
        ...
