"""
Ingestion service for OwnTracks location reports.

This module turns one inbound HTTP body into at most one stored location
record: parse, decrypt when needed, validate, backfill and persist. Reads of
stored records pass straight through to the location store.

Only ``location`` reports are stored. ``transition`` and ``waypoint(s)``
reports are acknowledged and logged; unknown message types are acknowledged
so newer clients keep working.
"""

import asyncio
import functools
import json
import logging
import math
import time
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import BaseModel

from config.settings import ConfigurationError
from encryption.decoder import PayloadDecoder, is_encrypted
from errors.exceptions import AppException, ValidationError, internal_error
from storage.location_store import (
    SQLITE_INT_MAX,
    SQLITE_INT_MIN,
    LocationStore,
    serialize_raw,
)
from storage.models import LocationRecord
from telemetry.service import TelemetryService, get_telemetry_service

logger = logging.getLogger(__name__)

DEVICE_HEADER = "x-limit-d"
ACKNOWLEDGED_TYPES = frozenset({"transition", "waypoint", "waypoints"})

RawBody = Union[bytes, str, dict, list, None]


class IngestResult(BaseModel):
    """
    Outcome of ingesting one report.

    Attributes:
        success: Whether the report was accepted
        id: Id of the stored record, for persisted location reports
        message_type: The report's ``_type`` tag
        persisted: Whether a record was written
        empty: True when the body was empty and nothing was processed
    """
    success: bool = True
    id: Optional[int] = None
    message_type: Optional[str] = None
    persisted: bool = False
    empty: bool = False

    def to_response(self) -> Union[dict, list]:
        """Response body for the ingestion endpoint. Empty pings get ``[]``."""
        if self.empty:
            return []
        response: dict[str, Any] = {"success": self.success}
        if self.id is not None:
            response["id"] = self.id
        return response


def parse_body(raw_body: RawBody) -> Any:
    """
    Normalize an inbound body.

    Bytes are decoded as UTF-8. Text that parses as JSON becomes the parsed
    value; any other text is returned as a stripped string. Empty input
    returns None.
    """
    if raw_body is None:
        return None
    if isinstance(raw_body, (bytes, bytearray)):
        try:
            raw_body = bytes(raw_body).decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationError("Request body is not valid UTF-8")
    if isinstance(raw_body, str):
        text = raw_body.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text
    return raw_body


def header_value(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    """Case-insensitive header lookup returning a stripped, non-empty value."""
    if not headers:
        return None
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name and value and value.strip():
            return value.strip()
    return None


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(float(value))
    except OverflowError:
        return False


class IngestionService:
    """
    Orchestrates decode, validate and persist for inbound reports.

    Holds no state between requests. Blocking store calls run in the
    default thread pool executor.

    Args:
        store: The location store records are written to
        decoder: Payload decoder, required when encryption is enabled
        encryption_enabled: Whether encrypted bodies are decrypted
        telemetry: Optional telemetry service (uses the global one if omitted)
        clock: Returns the current time, used to default missing timestamps
    """

    def __init__(
        self,
        store: LocationStore,
        decoder: Optional[PayloadDecoder] = None,
        encryption_enabled: bool = False,
        telemetry: Optional[TelemetryService] = None,
        clock: Callable[[], float] = time.time,
    ):
        if encryption_enabled and decoder is None:
            raise ConfigurationError(
                "Encryption is enabled but no payload decoder is configured",
                missing_fields=["encryption_key"],
            )
        self.store = store
        self.decoder = decoder
        self.encryption_enabled = encryption_enabled
        self.telemetry = telemetry or get_telemetry_service()
        self._clock = clock

    async def _run_store(self, func: Callable, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def ingest(
        self,
        raw_body: RawBody,
        headers: Optional[Mapping[str, str]] = None,
    ) -> IngestResult:
        """
        Ingest a single report.

        Args:
            raw_body: Raw request body, or an already parsed JSON value
            headers: Request headers; ``X-Limit-D`` supplies a fallback device id

        Returns:
            IngestResult describing what happened

        Raises:
            DecodeError: If an encrypted body cannot be decrypted
            ValidationError: If the report is malformed
            StoreError: If the record could not be written
            AppException: INTERNAL_ERROR for any unexpected failure
        """
        start_time = time.perf_counter()

        body = parse_body(raw_body)
        if body is None:
            logger.debug("Empty report acknowledged")
            return IngestResult(empty=True)

        try:
            if self.encryption_enabled and is_encrypted(body):
                body = self.decoder.decode(body)

            if not isinstance(body, dict):
                raise ValidationError(
                    "Invalid payload: expected a JSON object",
                    details={"type": type(body).__name__},
                )

            message_type = body.get("_type")
            if message_type == "location":
                result = await self._ingest_location(body, headers)
            elif message_type in ACKNOWLEDGED_TYPES:
                logger.info(
                    f"{message_type.capitalize()} report received",
                    extra={"extra_data": {"message_type": message_type, "event": body.get("event")}}
                )
                result = IngestResult(message_type=message_type)
            else:
                logger.debug(
                    "Unhandled message type acknowledged",
                    extra={"extra_data": {"message_type": message_type}}
                )
                result = IngestResult(message_type=message_type if isinstance(message_type, str) else None)

        except AppException:
            raise
        except Exception as e:
            logger.error(
                f"Failed to process report: {e}",
                extra={"extra_data": {"error_type": type(e).__name__}},
                exc_info=True,
            )
            raise internal_error() from e

        if self.telemetry:
            self.telemetry.record_metric(
                "ingest_duration_ms",
                round((time.perf_counter() - start_time) * 1000, 3),
                tags={"message_type": str(result.message_type), "persisted": str(result.persisted)}
            )
        return result

    async def _ingest_location(
        self,
        payload: dict[str, Any],
        headers: Optional[Mapping[str, str]],
    ) -> IngestResult:
        lat, lon = payload.get("lat"), payload.get("lon")
        if not (_is_finite_number(lat) and _is_finite_number(lon)):
            raise ValidationError(
                "Invalid location data: lat and lon are required",
                details={"fields": ["lat", "lon"]},
            )

        tst = payload.get("tst")
        if tst is not None and not (
            _is_finite_number(tst) and SQLITE_INT_MIN <= int(tst) <= SQLITE_INT_MAX
        ):
            raise ValidationError(
                "Invalid location data: tst must be a number",
                details={"fields": ["tst"]},
            )

        # Captured before any server-side backfill
        raw_json = serialize_raw(payload)

        record = dict(payload)
        record["tst"] = int(tst) if tst is not None else int(self._clock())

        device = header_value(headers, DEVICE_HEADER)
        if device and not record.get("device"):
            record["device"] = device

        record_id = await self._run_store(self.store.insert, record, raw_json=raw_json)

        logger.info(
            "Location stored",
            extra={"extra_data": {
                "id": record_id,
                "message_type": "location",
                "device": record.get("device"),
                "tst": record["tst"],
            }}
        )
        return IngestResult(id=record_id, message_type="location", persisted=True)

    async def list_locations(
        self,
        limit: Optional[int] = None,
        device: Optional[str] = None,
    ) -> list[LocationRecord]:
        """Newest-first records, optionally for one device."""
        return await self._run_store(self.store.query, limit, device)

    async def get_location(self, record_id: int) -> Optional[LocationRecord]:
        """A single record, or None when no record has this id."""
        return await self._run_store(self.store.get_by_id, record_id)
