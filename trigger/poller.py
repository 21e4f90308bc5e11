"""
Polling trigger for new location records.

Periodically reads ``GET /locations`` from a running backend and hands each
record newer than the last one seen to a callback, either for every new
record or only when the device moved far enough since the last emitted
position.
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from trigger.geo import haversine_distance_m

logger = logging.getLogger(__name__)

NEW_LOCATION = "newLocation"
SIGNIFICANT_MOVEMENT = "significantMovement"
EVENTS = (NEW_LOCATION, SIGNIFICANT_MOVEMENT)
POLL_LIMIT = 100

LocationCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


def merge_raw_payload(record: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay the parsed ``raw_json`` onto the stored record; unparsable raw data is ignored."""
    raw = record.get("raw_json")
    if not raw:
        return dict(record)
    try:
        parsed = json.loads(raw)
    except ValueError:
        return dict(record)
    if not isinstance(parsed, dict):
        return dict(record)
    return {**record, **parsed}


class LocationPoller:
    """
    Emits new location records from a backend's ``/locations`` endpoint.

    Args:
        base_url: Backend root URL, e.g. ``http://localhost:3000``
        event: ``newLocation`` or ``significantMovement``
        device_filter: Only poll records for this device
        min_distance_m: Minimum movement for ``significantMovement``
        poll_interval_seconds: Delay between polls in ``run``
        username: Basic auth username, if the backend requires it
        password: Basic auth password
        on_location: Called with each emitted record (sync or async)
        client: Preconfigured ``httpx.AsyncClient`` (with ``base_url`` set) to use instead of creating one
    """

    def __init__(
        self,
        base_url: str,
        event: str = NEW_LOCATION,
        device_filter: Optional[str] = None,
        min_distance_m: float = 100.0,
        poll_interval_seconds: float = 60.0,
        username: Optional[str] = None,
        password: Optional[str] = None,
        on_location: Optional[LocationCallback] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        if event not in EVENTS:
            raise ValueError(f"event must be one of: {', '.join(EVENTS)}")
        self.base_url = base_url.rstrip("/")
        self.event = event
        self.device_filter = device_filter or None
        self.min_distance_m = min_distance_m
        self.poll_interval_seconds = poll_interval_seconds
        self.on_location = on_location

        auth = httpx.BasicAuth(username, password or "") if username else None
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=self.base_url, auth=auth, timeout=timeout)

        self.last_seen_id = 0
        self.last_position: Optional[tuple[float, float]] = None
        self._stopped = asyncio.Event()

    async def _fetch(self) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": POLL_LIMIT}
        if self.device_filter:
            params["device"] = self.device_filter
        response = await self.client.get("/locations", params=params)
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict) or not body.get("success"):
            return []
        return body.get("data") or []

    def _should_emit(self, record: Dict[str, Any]) -> bool:
        if self.event == NEW_LOCATION:
            return True
        if self.last_position is None:
            return True
        distance = haversine_distance_m(
            self.last_position[0], self.last_position[1], record["lat"], record["lon"]
        )
        return distance >= self.min_distance_m

    async def poll_once(self) -> List[Dict[str, Any]]:
        """
        Fetch once and emit records newer than the last seen id.

        Returns:
            The emitted records (stored fields merged with the raw payload).
            Request and response errors are logged and yield an empty list.
        """
        try:
            records = await self._fetch()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                f"Location poll failed: {e}",
                extra={"extra_data": {"base_url": self.base_url, "error_type": type(e).__name__}}
            )
            return []

        fresh = sorted(
            (r for r in records if isinstance(r.get("id"), int) and r["id"] > self.last_seen_id),
            key=lambda r: r["id"],
        )

        emitted = []
        for record in fresh:
            if self._should_emit(record):
                self.last_position = (record["lat"], record["lon"])
                merged = merge_raw_payload(record)
                emitted.append(merged)
                if self.on_location is not None:
                    result = self.on_location(merged)
                    if inspect.isawaitable(result):
                        await result
            self.last_seen_id = max(self.last_seen_id, record["id"])

        if emitted:
            logger.info(
                f"Emitted {len(emitted)} location records",
                extra={"extra_data": {"event": self.event, "last_seen_id": self.last_seen_id}}
            )
        return emitted

    async def run(self) -> None:
        """Poll immediately, then every ``poll_interval_seconds`` until ``stop`` is called."""
        while not self._stopped.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()

    async def aclose(self) -> None:
        self.stop()
        if self._owns_client:
            await self.client.aclose()
