"""
Solace-AI CDS Service - Engine Entry Point.
Logging setup and the managed lifecycle of the clinical decision support engine.
"""
from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator
import structlog

from .config import CDSConfig, CDSServiceConfig, get_cds_config
from .domain.alerts import AlertService
from .domain.orchestrator import CDSOrchestrator
from .infrastructure.interaction_lookup import InteractionLookup
from .infrastructure.reference_data import ReferenceDataSource
from .infrastructure.snapshot_reader import ClinicalSnapshotReader

logger = structlog.get_logger(__name__)


def configure_logging(settings: CDSServiceConfig) -> None:
    """Configure structured logging for the CDS service."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.debug:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(settings.log_level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def cds_engine(snapshot_reader: ClinicalSnapshotReader,
                     config: CDSConfig | None = None,
                     alert_service: AlertService | None = None,
                     reference_source: ReferenceDataSource | None = None,
                     interaction_lookup: InteractionLookup | None = None) -> AsyncIterator[CDSOrchestrator]:
    """Build, initialize and finally shut down an orchestrator bound to the given reader."""
    config = config or get_cds_config()
    configure_logging(config.service)
    logger.info("cds_service_starting", environment=config.service.environment,
                version=config.service.version)
    orchestrator = CDSOrchestrator(snapshot_reader, config=config, alert_service=alert_service,
                                   reference_source=reference_source, interaction_lookup=interaction_lookup)
    await orchestrator.initialize()
    try:
        yield orchestrator
    finally:
        await orchestrator.shutdown()
        logger.info("cds_service_stopped")
