"""Tests for the HTTP surface: sync trigger, status, sessions and health."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from sleepsolver.routers import health, sleep
from sleepsolver.sleep.base import (
    HEART_RATE,
    HEART_RATE_VARIABILITY,
    OXYGEN_SATURATION,
    RESPIRATORY_RATE,
    SLEEP_ANALYSIS,
    HabitMetrics,
    ProviderPage,
    Workout,
)
from sleepsolver.sleep.config_loader import PipelineConfig
from sleepsolver.sleep.store import InMemoryStore
from sleepsolver.sleep.sync.coordinator import SyncCoordinator
from sleepsolver.sleep.tests.conftest import (
    PERFECT_NIGHT_PLAN,
    TEST_DATE,
    FakeProvider,
    at,
    make_night,
)


@pytest.fixture
def client(
    fake_provider: FakeProvider, store: InMemoryStore, pipeline_config: PipelineConfig
) -> Iterator[TestClient]:
    fake_provider.averages = {
        HEART_RATE: 52.0,
        HEART_RATE_VARIABILITY: 61.5,
        OXYGEN_SATURATION: 0.97,
        RESPIRATORY_RATE: 14.2,
    }
    app = FastAPI()
    app.include_router(health.router)
    app.include_router(sleep.router, prefix="/api/v1")
    app.state.store = store
    app.state.coordinator = SyncCoordinator(fake_provider, store, pipeline_config)
    with TestClient(app) as test_client:
        yield test_client


class TestSyncEndpoints:
    def test_sync_then_read_session(self, client: TestClient, fake_provider: FakeProvider) -> None:
        fake_provider.queue(
            SLEEP_ANALYSIS,
            ProviderPage(added=make_night("n", at(22), PERFECT_NIGHT_PLAN), new_cursor="c1"),
        )
        response = client.post("/api/v1/sync", json={"mode": "incremental"})
        assert response.status_code == 200
        body = response.json()
        assert body["accepted"] is True
        assert body["run_id"].startswith("incremental_sync_")
        assert [s["name"] for s in body["steps"]] == [
            "sleep_ingest",
            "temperature_ingest",
            "resolve_sessions",
            "finalize_sessions",
        ]

        session = client.get(f"/api/v1/sessions/{TEST_DATE.isoformat()}")
        assert session.status_code == 200
        data = session.json()
        assert data["ownership_day"] == TEST_DATE.isoformat()
        assert data["sleep_score"] == 100
        assert data["is_finalized"] is True
        hrv = next(m for m in data["recovery"] if m["z_score"] is None)
        assert hrv["status"] == "insufficient_data"

    def test_background_sync_rate_limited(self, client: TestClient) -> None:
        first = client.post("/api/v1/sync", json={"priority": "background"})
        assert first.json()["accepted"] is True

        second = client.post("/api/v1/sync", json={"priority": "background"})
        assert second.status_code == 200
        assert second.json()["run_id"] is None
        assert second.json()["accepted"] is False
        assert second.json()["status"] == "rate_limited"

    def test_status_after_sync(self, client: TestClient) -> None:
        client.post("/api/v1/sync")
        status = client.get("/api/v1/sync/status").json()

        assert status["is_syncing"] is False
        assert status["progress"] == 1.0
        assert status["last_sync_at"] is not None
        assert status["in_flight"] == []


class TestSessionEndpoints:
    def test_missing_session(self, client: TestClient) -> None:
        assert client.get("/api/v1/sessions/2026-01-01").status_code == 404

    def test_range_validation(self, client: TestClient) -> None:
        assert client.get("/api/v1/sessions?start=2026-02-10&end=2026-02-01").status_code == 400
        assert client.get("/api/v1/sessions?start=2024-01-01&end=2026-02-01").status_code == 400

    def test_empty_range(self, client: TestClient) -> None:
        response = client.get("/api/v1/sessions?start=2026-02-01&end=2026-02-10")
        assert response.status_code == 200
        assert response.json() == []

    def test_activity_linked_to_session(
        self, client: TestClient, fake_provider: FakeProvider
    ) -> None:
        fake_provider.queue(
            SLEEP_ANALYSIS,
            ProviderPage(added=make_night("n", at(22), PERFECT_NIGHT_PLAN), new_cursor="c1"),
        )
        fake_provider.habits = HabitMetrics(steps=9100, exercise_minutes=41, daylight_minutes=75)
        fake_provider.workouts = [
            Workout(uuid="W-1", start=at(7), workout_type="running", duration=1800, time_of_day="Morning")
        ]
        client.post("/api/v1/sync")

        body = client.get(f"/api/v1/sessions/{TEST_DATE.isoformat()}/activity").json()
        assert body["day"] == TEST_DATE.isoformat()
        assert body["habits"]["steps"] == 9100
        assert body["habits"]["daylight_minutes"] == 75
        assert [w["uuid"] for w in body["workouts"]] == ["W-1"]
        assert body["workouts"][0]["time_of_day"] == "Morning"

    def test_activity_for_unknown_day(self, client: TestClient) -> None:
        body = client.get("/api/v1/sessions/2026-01-01/activity").json()
        assert body == {"day": "2026-01-01", "habits": None, "workouts": []}

    def test_availability(self, client: TestClient) -> None:
        body = client.get("/api/v1/availability/2026-01-01").json()
        assert body == {"day": "2026-01-01", "availability": "missing", "is_available": False}


class TestHealth:
    def test_health_reports_store(self, client: TestClient) -> None:
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
