"""
Health check module for the OwnTracks backend.

This module provides health check services reporting on the location
store and the retention sweeper.
"""

from health.service import (
    HealthCheckService,
    HealthStatus,
    DependencyHealth,
)

__all__ = [
    "HealthCheckService",
    "HealthStatus",
    "DependencyHealth",
]
