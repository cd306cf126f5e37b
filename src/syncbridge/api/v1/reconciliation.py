"""REST API endpoints for cross-system reconciliation.

Bulk matching, manual links, unlinking, mapping listing with conflicts,
and the coverage/unmatched/duplicate reports. All endpoints require an API
key and use the ReconciliationEngine stored on app.state.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field

from src.syncbridge.api.deps import get_reconciliation_engine, require_api_key
from src.syncbridge.api.middleware.logging import RUN_ID_HEADER
from src.syncbridge.reconciliation.errors import (
    ConfigurationError,
    LinkConflictError,
    MappingNotFoundError,
    RecordNotFoundError,
)
from src.syncbridge.reconciliation.schemas import (
    BulkMatchResult,
    DuplicateGroup,
    MappingFilter,
    MappingPage,
    MappingRead,
    MatchPreview,
    MatchType,
    OverviewRead,
    RunRead,
    SourceSystem,
    UnmatchedReport,
)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class BulkMatchRequest(BaseModel):
    """Request body for a bulk-match pass. Omitted fields use configured defaults."""

    source_system: SourceSystem | None = None
    target_systems: list[SourceSystem] | None = None
    dry_run: bool = False


class ManualLinkRequest(BaseModel):
    """Request body for linking two records by hand."""

    source_system: SourceSystem
    source_id: str = Field(min_length=1)
    target_system: SourceSystem
    target_id: str = Field(min_length=1)
    write_back: bool = True


class UnlinkResponse(BaseModel):
    success: bool = True
    mapping: MappingRead


# ── Error Mapping ────────────────────────────────────────────────────────────


def _to_http(exc: Exception) -> HTTPException:
    if isinstance(exc, (MappingNotFoundError, RecordNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, LinkConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


# ── Bulk Match ───────────────────────────────────────────────────────────────


@router.post("/bulk-match", response_model=BulkMatchResult)
async def run_bulk_match(
    body: BulkMatchRequest,
    request: Request,
    response: Response,
    api_key: str = Depends(require_api_key),
) -> BulkMatchResult:
    """Run one bulk-match pass and return its summary.

    Partial failures are reported inside the result (success=false) rather
    than as an HTTP error. The run id is also returned in X-Run-ID.
    """
    engine = get_reconciliation_engine(request)
    result = await engine.run_bulk_match(
        source=body.source_system,
        targets=body.target_systems,
        dry_run=body.dry_run,
    )
    response.headers[RUN_ID_HEADER] = result.run_id
    return result


@router.get("/runs/{run_id}", response_model=RunRead)
async def get_run(
    run_id: str,
    request: Request,
    api_key: str = Depends(require_api_key),
) -> RunRead:
    """Progress and summary of a bulk-match run."""
    engine = get_reconciliation_engine(request)
    run = await engine.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Run {run_id} not found")
    return run


# ── Mappings ─────────────────────────────────────────────────────────────────


@router.post("/mappings/manual", response_model=MappingRead, status_code=status.HTTP_201_CREATED)
async def create_manual_link(
    body: ManualLinkRequest,
    request: Request,
    api_key: str = Depends(require_api_key),
) -> MappingRead:
    """Link two records chosen by an operator.

    Returns 404 when either record is unknown and 409 when a record is
    already linked elsewhere.
    """
    engine = get_reconciliation_engine(request)
    try:
        return await engine.manual_link(
            body.source_system,
            body.source_id,
            body.target_system,
            body.target_id,
            write_back=body.write_back,
        )
    except (RecordNotFoundError, LinkConflictError, ConfigurationError) as exc:
        raise _to_http(exc) from exc


@router.get("/mappings", response_model=MappingPage)
async def list_mappings(
    request: Request,
    system: SourceSystem | None = Query(default=None),
    match_type: MatchType | None = Query(default=None),
    has_conflicts: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    api_key: str = Depends(require_api_key),
) -> MappingPage:
    """Paginated mappings, each with its conflict list."""
    engine = get_reconciliation_engine(request)
    filters = MappingFilter(
        system=system,
        match_type=match_type,
        has_conflicts=has_conflicts,
        limit=limit,
        offset=offset,
    )
    return await engine.list_mappings(filters)


@router.get("/mappings/{mapping_id}", response_model=MappingRead)
async def get_mapping(
    mapping_id: str,
    request: Request,
    api_key: str = Depends(require_api_key),
) -> MappingRead:
    engine = get_reconciliation_engine(request)
    try:
        return await engine.get_mapping(mapping_id)
    except MappingNotFoundError as exc:
        raise _to_http(exc) from exc


@router.delete("/mappings/{mapping_id}", response_model=UnlinkResponse)
async def unlink_mapping(
    mapping_id: str,
    request: Request,
    system: SourceSystem | None = Query(default=None),
    api_key: str = Depends(require_api_key),
) -> UnlinkResponse:
    """Detach records from a mapping. The row and its audit history are kept."""
    engine = get_reconciliation_engine(request)
    try:
        mapping = await engine.unlink(mapping_id, system=system)
    except MappingNotFoundError as exc:
        raise _to_http(exc) from exc
    return UnlinkResponse(mapping=mapping)


# ── Reports ──────────────────────────────────────────────────────────────────


@router.get("/overview", response_model=OverviewRead)
async def get_overview(
    request: Request,
    api_key: str = Depends(require_api_key),
) -> OverviewRead:
    engine = get_reconciliation_engine(request)
    return await engine.overview()


@router.get("/unmatched/{system}", response_model=UnmatchedReport)
async def get_unmatched(
    system: SourceSystem,
    request: Request,
    api_key: str = Depends(require_api_key),
) -> UnmatchedReport:
    """Records of one system that no mapping references."""
    engine = get_reconciliation_engine(request)
    try:
        return await engine.unmatched(system)
    except ConfigurationError as exc:
        raise _to_http(exc) from exc


@router.get("/duplicates/{system}", response_model=list[DuplicateGroup])
async def get_duplicates(
    system: SourceSystem,
    request: Request,
    api_key: str = Depends(require_api_key),
) -> list[DuplicateGroup]:
    engine = get_reconciliation_engine(request)
    try:
        return await engine.find_duplicates(system)
    except ConfigurationError as exc:
        raise _to_http(exc) from exc


@router.get("/preview/{system}/{external_id}", response_model=MatchPreview)
async def preview_match(
    system: SourceSystem,
    external_id: str,
    request: Request,
    target: SourceSystem = Query(default=SourceSystem.PM),
    api_key: str = Depends(require_api_key),
) -> MatchPreview:
    """What a bulk pass would decide for one record. Writes nothing."""
    engine = get_reconciliation_engine(request)
    try:
        return await engine.preview_match(system, external_id, target)
    except (RecordNotFoundError, LinkConflictError, ConfigurationError) as exc:
        raise _to_http(exc) from exc
