"""
Telemetry module for structured logging and observability.

This module provides:
- JSONFormatter for structured JSON log output
- PrettyFormatter for single-line development output
- TelemetryService for centralized logging, metrics and audit records
"""

from telemetry.service import (
    JSONFormatter,
    PrettyFormatter,
    TelemetryService,
    build_formatter,
    get_telemetry_service,
    initialize_telemetry,
)

__all__ = [
    "JSONFormatter",
    "PrettyFormatter",
    "TelemetryService",
    "build_formatter",
    "get_telemetry_service",
    "initialize_telemetry",
]
