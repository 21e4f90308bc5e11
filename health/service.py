"""
Health check service for the OwnTracks backend.

This module provides the HealthCheckService class that reports on the
location store and the retention sweeper. ``/health`` returns store
statistics, ``/health/live`` only proves the process answers, and
``/health/ready`` pings the database with a timeout.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Any

from retention.sweeper import RetentionSweeper
from storage.location_store import LocationStore

logger = logging.getLogger(__name__)

CRITICAL_DEPENDENCIES = ("database",)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DependencyHealth:
    """
    Health status of a single dependency.

    Attributes:
        name: The name of the dependency (e.g., "database", "retention")
        healthy: Whether the dependency is healthy and responding
        response_time_ms: The time taken to check the dependency in milliseconds
        error: Optional error message if the dependency check failed
    """
    name: str
    healthy: bool
    response_time_ms: float
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "name": self.name,
            "healthy": self.healthy,
            "response_time_ms": round(self.response_time_ms, 2),
        }
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class HealthStatus:
    """
    Overall readiness of the service.

    Attributes:
        status: Overall status - "healthy", "degraded", or "unhealthy"
        timestamp: When the check was performed (UTC)
        dependencies: List of individual dependency health statuses
    """
    status: str
    timestamp: datetime
    dependencies: list[DependencyHealth] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.status != "unhealthy"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "dependencies": [dep.to_dict() for dep in self.dependencies],
        }


class HealthCheckService:
    """
    Service for checking the health of the store and the sweeper.

    Attributes:
        store: The location store to check
        sweeper: Optional retention sweeper whose last run is reported
        check_timeout: Timeout in seconds for the database ping (default: 5.0)
    """

    def __init__(
        self,
        store: LocationStore,
        sweeper: Optional[RetentionSweeper] = None,
        check_timeout: float = 5.0
    ):
        self.store = store
        self.sweeper = sweeper
        self.check_timeout = check_timeout

    async def check_health(self) -> dict[str, Any]:
        """
        Health summary with store statistics.

        The status is "ok" when the statistics could be read and "error"
        otherwise; the caller maps "error" to a 503.
        """
        loop = asyncio.get_running_loop()
        response: dict[str, Any] = {
            "status": "ok",
            "alive": True,
            "timestamp": _utc_now_iso(),
        }
        try:
            stats = await asyncio.wait_for(
                loop.run_in_executor(None, self.store.stats),
                timeout=self.check_timeout
            )
            response["database"] = stats.to_response()
        except Exception as e:
            logger.error(
                f"Health check could not read store statistics: {e}",
                extra={"extra_data": {"error_type": type(e).__name__}}
            )
            response["status"] = "error"
            response["database"] = None

        if self.sweeper is not None:
            response["retention"] = self.sweeper.status()
        return response

    async def check_liveness(self) -> dict[str, Any]:
        """
        Simple liveness check - process is running.

        Does not touch the database.
        """
        return {
            "status": "alive",
            "timestamp": _utc_now_iso()
        }

    async def check_readiness(self) -> HealthStatus:
        """
        Check all dependencies for readiness.

        Returns:
            HealthStatus: The aggregate status with per-dependency results
        """
        dependencies = [await self._check_database()]
        if self.sweeper is not None:
            dependencies.append(self._check_retention())

        return HealthStatus(
            status=self._determine_overall_status(dependencies),
            timestamp=datetime.now(timezone.utc),
            dependencies=dependencies
        )

    async def _check_database(self) -> DependencyHealth:
        """Ping the SQLite database with the configured timeout."""
        start_time = time.perf_counter()
        loop = asyncio.get_running_loop()

        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, self.store.ping),
                timeout=self.check_timeout
            )
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.debug(f"Database health check passed in {elapsed_ms:.2f}ms")
            return DependencyHealth(name="database", healthy=True, response_time_ms=elapsed_ms)

        except asyncio.TimeoutError:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            error_msg = f"Database health check timed out after {self.check_timeout} seconds"
            logger.warning(error_msg)
            return DependencyHealth(
                name="database",
                healthy=False,
                response_time_ms=elapsed_ms,
                error=error_msg
            )

        except Exception as e:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            error_msg = f"Database health check failed: {str(e)}"
            logger.error(error_msg)
            return DependencyHealth(
                name="database",
                healthy=False,
                response_time_ms=elapsed_ms,
                error=error_msg
            )

    def _check_retention(self) -> DependencyHealth:
        """The sweeper is healthy unless its last run failed."""
        error = self.sweeper.last_error
        return DependencyHealth(
            name="retention",
            healthy=error is None,
            response_time_ms=0.0,
            error=f"Last retention sweep failed: {error}" if error else None
        )

    def _determine_overall_status(self, dependencies: list[DependencyHealth]) -> str:
        """
        Determine the overall health status based on dependency health.

        - "healthy": All dependencies are healthy
        - "degraded": Only non-critical dependencies are unhealthy
        - "unhealthy": The database is unhealthy
        """
        unhealthy = [dep.name for dep in dependencies if not dep.healthy]
        if not unhealthy:
            return "healthy"
        if any(name in CRITICAL_DEPENDENCIES for name in unhealthy):
            return "unhealthy"
        return "degraded"
