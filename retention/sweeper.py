"""
Retention sweeper that evicts expired location records.

Scheduled sweeps run on an APScheduler background thread, independent of
request handling. A failed scheduled sweep is logged and the next one still
runs. On-demand sweeps (``run_now``) report failures to the caller.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from errors.exceptions import StoreError
from middleware.request_id import request_id_var
from storage.location_store import LocationStore
from telemetry.service import TelemetryService, get_telemetry_service

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 3600
JOB_ID = "retention-sweep"


class RetentionSweeper:
    """
    Periodically calls ``LocationStore.evict_expired``.

    Args:
        store: The store to evict from
        interval_seconds: Seconds between scheduled sweeps; zero or negative
            disables scheduling (``run_now`` still works)
        telemetry: Optional telemetry service (uses the global one if omitted)
    """

    def __init__(
        self,
        store: LocationStore,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
        telemetry: Optional[TelemetryService] = None,
    ):
        self.store = store
        self.interval_seconds = interval_seconds
        self.telemetry = telemetry or get_telemetry_service()
        self._scheduler: Optional[BackgroundScheduler] = None
        self.last_run: Optional[datetime] = None
        self.last_deleted: Optional[int] = None
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Start the background schedule. The first sweep runs one interval from now."""
        if self.running:
            return
        if self.interval_seconds <= 0:
            logger.info("Retention sweeps are not scheduled (interval <= 0)")
            return

        scheduler = BackgroundScheduler(timezone=timezone.utc)
        scheduler.add_job(
            self.sweep,
            "interval",
            seconds=self.interval_seconds,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=self.interval_seconds),
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Retention sweeper started",
            extra={"extra_data": {
                "interval_seconds": self.interval_seconds,
                "ttl_seconds": self.store.ttl_seconds,
            }}
        )

    def shutdown(self) -> None:
        """Stop the schedule without waiting for a running sweep."""
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Retention sweeper stopped")

    def _evict(self) -> int:
        started = time.perf_counter()
        self.last_run = datetime.now(timezone.utc)
        try:
            deleted = self.store.evict_expired()
        except Exception as e:
            self.last_error = str(e)
            raise
        self.last_deleted = deleted
        self.last_error = None

        if self.telemetry:
            self.telemetry.record_metric(
                "retention_sweep_duration_ms",
                round((time.perf_counter() - started) * 1000, 3),
                tags={"deleted": str(deleted)}
            )
        return deleted

    def sweep(self) -> int:
        """
        Scheduled entry point.

        Returns:
            Number of records deleted, or 0 when the sweep failed.
        """
        token = request_id_var.set(JOB_ID)
        try:
            deleted = self._evict()
        except StoreError as e:
            logger.error(
                "Retention sweep failed",
                extra={"extra_data": {"error": e.message, "details": e.details}}
            )
            return 0
        except Exception as e:
            logger.error(
                f"Retention sweep failed unexpectedly: {e}",
                extra={"extra_data": {"error_type": type(e).__name__}},
                exc_info=True,
            )
            return 0
        finally:
            request_id_var.reset(token)

        if deleted > 0:
            logger.info(
                f"Retention sweep removed {deleted} records",
                extra={"extra_data": {"deleted": deleted}}
            )
        else:
            logger.debug("Retention sweep found no expired records")
        return deleted

    def run_now(self) -> int:
        """
        Sweep immediately on behalf of a caller.

        Returns:
            Number of records deleted.

        Raises:
            StoreError: If eviction fails.
        """
        deleted = self._evict()
        logger.info(
            f"On-demand cleanup removed {deleted} records",
            extra={"extra_data": {"deleted": deleted}}
        )
        if self.telemetry:
            self.telemetry.log_audit_event(
                event_type="retention_sweep",
                resource_type="locations",
                action="delete",
                details={"deleted": deleted, "ttl_seconds": self.store.ttl_seconds},
            )
        return deleted

    def status(self) -> dict:
        """Sweeper state for health reporting."""
        return {
            "scheduled": self.running,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_deleted": self.last_deleted,
            "last_error": self.last_error,
        }
