"""Builds a ReconciliationEngine wired to the SQL collaborators.

Shared by the API lifespan and the command-line scripts so both run the
engine with the same configuration.
"""

from __future__ import annotations

import structlog

from src.syncbridge.config import Settings
from src.syncbridge.reconciliation.engine import EngineConfig, ReconciliationEngine
from src.syncbridge.reconciliation.repository import (
    MirroredIdentifierWriteBack,
    MirroredRecordProvider,
    SessionFactory,
    SqlAuditSink,
    SqlMappingStore,
    SqlRunStore,
)
from src.syncbridge.reconciliation.schemas import SourceSystem

logger = structlog.get_logger(__name__)


def build_engine(settings: Settings, session_factory: SessionFactory) -> ReconciliationEngine:
    """Create an engine over the database behind ``session_factory``."""
    config = EngineConfig.from_settings(settings)
    providers = {
        system: MirroredRecordProvider(
            system,
            session_factory,
            credential=settings.get_provider_token(system.value),
        )
        for system in SourceSystem
    }
    missing = [s.value for s in SourceSystem if not settings.get_provider_token(s.value)]
    if missing:
        logger.warning("reconciliation.providers_without_token", systems=missing)

    logger.info(
        "reconciliation.engine_configured",
        master_system=config.master_system.value,
        fuzzy_threshold=config.fuzzy_threshold,
        default_source=config.default_source.value,
        default_targets=[t.value for t in config.default_targets],
    )
    return ReconciliationEngine(
        mapping_store=SqlMappingStore(session_factory),
        providers=providers,
        audit_sink=SqlAuditSink(session_factory),
        run_store=SqlRunStore(session_factory),
        write_back=MirroredIdentifierWriteBack(session_factory),
        config=config,
    )
