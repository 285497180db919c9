"""Health bridge provider: reads HealthKit data relayed by the companion app.

The iOS companion app exposes the device's health store over a small local
REST API (the "bridge").  Anchored queries, authorization and statistics
queries map one-to-one onto bridge endpoints.

Environment variables:
    HEALTH_BRIDGE_URL   — Base URL of the bridge (default http://127.0.0.1:8765)
    HEALTH_BRIDGE_TOKEN — Bearer token shared with the companion app

Endpoints used:
    GET  /v1/samples/{type}     — anchored query; params anchor, start, end, limit
                                  → {"added": [...], "deleted": [uuid, ...], "anchor": str | null}
    POST /v1/authorization      — {"types": [...]} → {"granted": bool}
    GET  /v1/statistics/{metric} — params start, end → {"average": float | null}
    GET  /v1/habits             — params start, end
                                  → {"steps", "exerciseMinutes", "daylightMinutes"}
    GET  /v1/workouts           — params start, end → {"workouts": [...]}

Status mapping:
    204                → NoDataAvailable
    401 / 403          → AuthorizationDenied
    404 / 501          → ProviderUnavailable (type not supported on this device)
    other non-2xx      → ProviderError
    transport timeout  → ProviderTimeout
"""

from __future__ import annotations

import logging
import os
from datetime import datetime

import httpx

from sleepsolver.sleep.base import (
    SLEEP_ANALYSIS,
    WRIST_TEMPERATURE,
    DateRange,
    HabitMetrics,
    ProviderPage,
    SampleProvider,
    SleepStage,
    StageSample,
    Workout,
    WristTemperature,
    time_of_day,
)
from sleepsolver.sleep.errors import (
    AuthorizationDenied,
    NoDataAvailable,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
)
from sleepsolver.sleep.identity import iso8601_utc

logger = logging.getLogger("sleepsolver.sleep.health_bridge")

_DEFAULT_BRIDGE_URL = "http://127.0.0.1:8765"


class HealthBridgeProvider(SampleProvider):
    """Sample provider backed by the companion app's health bridge.

    Args:
        base_url:    Bridge base URL (HEALTH_BRIDGE_URL env var).
        token:       Bearer token (HEALTH_BRIDGE_TOKEN env var).
        timeout:     Per-request timeout in seconds for the default client.
        http_client: Optional pre-configured httpx client (for testing).
    """

    PROVIDER_ID = "health_bridge"
    DISPLAY_NAME = "Apple Health (bridge)"

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = (base_url or os.environ.get("HEALTH_BRIDGE_URL", _DEFAULT_BRIDGE_URL)).rstrip("/")
        self._token = token or os.environ.get("HEALTH_BRIDGE_TOKEN", "")
        self._timeout = timeout
        self._http_client = http_client

    # ------------------------------------------------------------------
    # SampleProvider
    # ------------------------------------------------------------------

    async def request_authorization(self, sample_types: list[str]) -> bool:
        body = await self._post("/v1/authorization", {"types": list(sample_types)})
        granted = bool(body.get("granted", False))
        logger.info("Bridge authorization for %s: %s", sample_types, "granted" if granted else "denied")
        return granted

    async def fetch_interval_samples(
        self,
        sample_type: str,
        date_range: DateRange | None = None,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> ProviderPage:
        params: dict[str, str | int] = {}
        if cursor:
            params["anchor"] = cursor
        if date_range is not None:
            params["start"] = iso8601_utc(date_range.start)
            params["end"] = iso8601_utc(date_range.end)
        if limit is not None:
            params["limit"] = limit

        body = await self._get(f"/v1/samples/{sample_type}", params)

        if sample_type == SLEEP_ANALYSIS:
            parse = self._parse_stage_sample
        elif sample_type == WRIST_TEMPERATURE:
            parse = self._parse_temperature
        else:
            raise ProviderUnavailable(f"Unsupported sample type: {sample_type}")

        added = []
        for raw in body.get("added") or []:
            record = parse(raw)
            if record is None:
                logger.warning("Skipping malformed %s record: %r", sample_type, raw.get("uuid"))
                continue
            added.append(record)

        deleted = [str(ref) for ref in body.get("deleted") or []]
        return ProviderPage(added=added, deleted=deleted, new_cursor=body.get("anchor"))

    async def fetch_average(
        self, metric: str, start: datetime, end: datetime
    ) -> float | None:
        body = await self._get(
            f"/v1/statistics/{metric}",
            {"start": iso8601_utc(start), "end": iso8601_utc(end)},
        )
        return self._safe_float(body.get("average"))

    async def fetch_habit_metrics(self, start: datetime, end: datetime) -> HabitMetrics:
        body = await self._get(
            "/v1/habits", {"start": iso8601_utc(start), "end": iso8601_utc(end)}
        )
        return HabitMetrics(
            steps=self._safe_float(body.get("steps")) or 0.0,
            exercise_minutes=self._safe_float(body.get("exerciseMinutes")) or 0.0,
            daylight_minutes=self._safe_float(body.get("daylightMinutes")) or 0.0,
        )

    async def fetch_workouts(self, start: datetime, end: datetime) -> list[Workout]:
        body = await self._get(
            "/v1/workouts", {"start": iso8601_utc(start), "end": iso8601_utc(end)}
        )
        workouts = []
        for raw in body.get("workouts") or []:
            workout = self._parse_workout(raw)
            if workout is None:
                logger.warning("Skipping malformed workout: %r", raw.get("uuid"))
                continue
            workouts.append(workout)
        return workouts

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _parse_stage_sample(self, raw: dict) -> StageSample | None:
        start = self._parse_iso_datetime(raw.get("startDate"))
        end = self._parse_iso_datetime(raw.get("endDate"))
        uuid = raw.get("uuid")
        try:
            stage = SleepStage(int(raw.get("value")))
        except (TypeError, ValueError):
            return None
        if not uuid or start is None or end is None:
            return None
        return StageSample(
            uuid=str(uuid),
            stage=stage,
            start=start,
            end=end,
            source=raw.get("sourceBundleId") or "",
            product_type=raw.get("productType") or "",
            time_zone=raw.get("timeZone"),
        )

    def _parse_temperature(self, raw: dict) -> WristTemperature | None:
        recorded_at = self._parse_iso_datetime(raw.get("startDate"))
        value = self._safe_float(raw.get("value"))
        uuid = raw.get("uuid")
        if not uuid or recorded_at is None or value is None:
            return None
        return WristTemperature(uuid=str(uuid), recorded_at=recorded_at, value=value)

    def _parse_workout(self, raw: dict) -> Workout | None:
        start = self._parse_iso_datetime(raw.get("startDate"))
        duration = self._safe_float(raw.get("duration"))
        uuid = raw.get("uuid")
        if not uuid or start is None or duration is None:
            return None
        return Workout(
            uuid=str(uuid),
            start=start,
            workout_type=raw.get("workoutType") or "other",
            duration=duration,
            time_of_day=time_of_day(start, raw.get("timeZone")),
            calories=self._safe_float(raw.get("calories")) or 0.0,
            distance=self._safe_float(raw.get("distance")) or 0.0,
            average_heart_rate=self._safe_float(raw.get("averageHeartRate")) or 0.0,
        )

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _build_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _get(self, path: str, params: dict) -> dict:
        return await self._send("GET", path, params=params)

    async def _post(self, path: str, payload: dict) -> dict:
        return await self._send("POST", path, payload=payload)

    async def _send(
        self, method: str, path: str, params: dict | None = None, payload: dict | None = None
    ) -> dict:
        """Issue a request and map failures onto the provider error taxonomy."""
        url = f"{self._base_url}{path}"
        headers = self._build_headers()
        try:
            if self._http_client:
                response = await self._call(self._http_client, method, url, params, payload, headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._call(client, method, url, params, payload, headers)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderError(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if status == 204:
            raise NoDataAvailable(path)
        if status in (401, 403):
            raise AuthorizationDenied(f"{path} returned {status}")
        if status in (404, 501):
            raise ProviderUnavailable(f"{path} returned {status}")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(f"{path} returned {status}") from exc
        return response.json() or {}

    @staticmethod
    async def _call(
        client: httpx.AsyncClient,
        method: str,
        url: str,
        params: dict | None,
        payload: dict | None,
        headers: dict[str, str],
    ) -> httpx.Response:
        if method == "POST":
            return await client.post(url, json=payload, headers=headers)
        return await client.get(url, params=params, headers=headers)
