"""
Telemetry service for structured logging and observability.

This module provides structured JSON logging with request correlation, a
human readable formatter for local development, and lightweight metric and
audit records emitted through the logging pipeline.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Optional, Dict

from middleware.request_id import request_id_var


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line, the default ``log_format``.

    Always carries timestamp, level, message, logger and request_id (the
    sweeper sets it to its job id). Keys passed as
    ``extra={"extra_data": {...}}``, such as a record id or device, are
    merged in at the top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a log record as a JSON string.

        Args:
            record: The log record to format

        Returns:
            JSON-formatted string containing the log entry
        """
        log_data: Dict[str, Any] = {
            "timestamp": _utc_timestamp(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "request_id": request_id_var.get(""),
        }

        if record.module:
            log_data["module"] = record.module
        if record.funcName and record.funcName != "<module>":
            log_data["function"] = record.funcName
        if record.lineno:
            log_data["line"] = record.lineno

        if hasattr(record, "extra_data") and record.extra_data:
            log_data.update(record.extra_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            log_data["stack_trace"] = record.stack_info

        return json.dumps(log_data, default=str)


class PrettyFormatter(logging.Formatter):
    """
    Single-line human readable formatter, selected with ``log_format=pretty``.

    ``12:00:01.123 INFO  storage.location_store  Location stored  id=4 device=phone``
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        line = f"{timestamp} {record.levelname:<5} {record.name}  {record.getMessage()}"

        context = {}
        request_id = request_id_var.get("")
        if request_id:
            context["request_id"] = request_id
        if hasattr(record, "extra_data") and record.extra_data:
            context.update(record.extra_data)
        if context:
            line += "  " + " ".join(f"{key}={value}" for key, value in context.items())

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def build_formatter(log_format: str) -> logging.Formatter:
    """Return the formatter for a ``log_format`` setting value."""
    if log_format == "pretty":
        return PrettyFormatter()
    return JSONFormatter()


class TelemetryService:
    """
    Centralized telemetry service for logging, metrics and audit records.

    Installs the configured formatter on the root logger so every module's
    ``logging.getLogger(__name__)`` output is structured the same way.
    """

    def __init__(self, settings: Optional[Any] = None, stream=None):
        """
        Initialize the telemetry service.

        Args:
            settings: Application settings providing log_level and log_format
            stream: Output stream for the root handler (defaults to stdout)
        """
        self.settings = settings
        self._stream = stream or sys.stdout
        self._logger = None
        self._setup_logging()

    def _setup_logging(self) -> None:
        """
        Configure the root logger.

        Replaces existing root handlers with a single stream handler using
        the formatter selected by settings.
        """
        log_level_str = getattr(self.settings, "log_level", None) or "INFO"
        log_format = getattr(self.settings, "log_format", None) or "json"

        log_level = getattr(logging, log_level_str.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)

        # Remove existing handlers to avoid duplicate logs
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        stream_handler = logging.StreamHandler(self._stream)
        stream_handler.setLevel(log_level)
        stream_handler.setFormatter(build_formatter(log_format))
        root_logger.addHandler(stream_handler)

        # uvicorn installs its own handlers; route them through ours instead
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            uvicorn_logger = logging.getLogger(name)
            uvicorn_logger.handlers = []
            uvicorn_logger.propagate = True

        self._logger = logging.getLogger("telemetry")
        self._logger.info("Telemetry service initialized", extra={
            "extra_data": {"log_level": log_level_str, "log_format": log_format}
        })

    def log_audit_event(
        self,
        event_type: str,
        resource_type: str,
        action: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log an audit event for operations that remove or alter stored data.

        Args:
            event_type: Type of audit event (e.g., "retention_sweep")
            resource_type: Type of resource being acted upon
            action: Action being performed (e.g., "delete")
            resource_id: ID of the specific resource, if any
            details: Additional details about the event
        """
        audit_data = {
            "audit_event": True,
            "event_type": event_type,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "action": action,
        }

        if details:
            audit_data["details"] = details

        self._logger.info(
            f"Audit: {event_type} - {action} on {resource_type}",
            extra={"extra_data": audit_data}
        )

    def record_metric(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """
        Record a custom metric as a debug-level structured log entry.

        Args:
            name: Name of the metric
            value: Metric value
            tags: Optional tags for metric dimensions
        """
        metric_data = {
            "metric_name": name,
            "metric_value": value,
        }

        if tags:
            metric_data["tags"] = tags

        self._logger.debug(
            f"Metric: {name}={value}",
            extra={"extra_data": metric_data}
        )


# Global telemetry service instance
_telemetry_service: Optional[TelemetryService] = None


def get_telemetry_service() -> Optional[TelemetryService]:
    """
    Get the global telemetry service instance.

    Returns:
        The telemetry service instance, or None if not initialized
    """
    return _telemetry_service


def initialize_telemetry(settings: Optional[Any] = None) -> TelemetryService:
    """
    Initialize the global telemetry service.

    Args:
        settings: Application settings for configuration

    Returns:
        The initialized telemetry service
    """
    global _telemetry_service
    _telemetry_service = TelemetryService(settings)
    return _telemetry_service
