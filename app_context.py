"""
Process-wide application context.

Everything that would otherwise be a module-level singleton (settings, the
store handle, services) is built once here and handed to the HTTP layer and
the sweeper.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config.settings import Settings
from encryption.decoder import PayloadDecoder
from health.service import HealthCheckService
from ingestion.service import IngestionService
from retention.sweeper import RetentionSweeper
from storage.location_store import LocationStore
from telemetry.service import TelemetryService

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    store: LocationStore
    ingestion: IngestionService
    sweeper: RetentionSweeper
    health: HealthCheckService
    decoder: Optional[PayloadDecoder] = None
    telemetry: Optional[TelemetryService] = None

    def close(self) -> None:
        """Stop the sweeper and release the database connection."""
        self.sweeper.shutdown()
        self.store.close()


def build_context(settings: Settings, telemetry: Optional[TelemetryService] = None) -> AppContext:
    """
    Build and initialize the application context.

    The schema is created here, so an unusable database aborts startup
    with a StoreError instead of failing the first request.
    """
    store = LocationStore(settings.db_path, ttl_seconds=settings.db_ttl)
    store.init_schema()

    decoder = None
    if settings.encryption_enabled:
        decoder = PayloadDecoder(settings.encryption_key, settings.encryption_key_derivation)

    ingestion = IngestionService(
        store,
        decoder=decoder,
        encryption_enabled=settings.encryption_enabled,
        telemetry=telemetry,
    )
    sweeper = RetentionSweeper(
        store,
        interval_seconds=settings.cleanup_interval_seconds,
        telemetry=telemetry,
    )
    health = HealthCheckService(store, sweeper=sweeper)

    logger.info(
        "Application context ready",
        extra={"extra_data": {
            "db_path": settings.db_path,
            "auth_enabled": settings.auth_enabled,
            "encryption_enabled": settings.encryption_enabled,
        }}
    )
    return AppContext(
        settings=settings,
        store=store,
        ingestion=ingestion,
        sweeper=sweeper,
        health=health,
        decoder=decoder,
        telemetry=telemetry,
    )
