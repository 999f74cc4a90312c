"""API tests for GET /api/v1/metrics and GET /health."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from src.routers.tests.conftest import CLIENT_ID, TRAINER_ID, Pipeline, auth_headers
from src.wearables.base import UnifiedMetric
from src.wearables.tests.conftest import TEST_DATE

URL = "/api/v1/metrics"


def _row(user_id, metric_name: str, value: float, source: str, priority: int, confidence: int, day=TEST_DATE):
    return UnifiedMetric(
        user_id=user_id,
        metric_name=metric_name,
        category="heart",
        value=value,
        unit="bpm",
        source=source,
        provider="whoop" if source == "whoop" else "terra",
        measurement_date=day,
        priority=priority,
        confidence_score=confidence,
    )


@pytest.fixture
def seeded(pipeline: Pipeline) -> Pipeline:
    for row in (
        _row(CLIENT_ID, "Resting Heart Rate", 64, "whoop", 1, 95),
        _row(CLIENT_ID, "Resting Heart Rate", 52, "garmin", 3, 85),
        _row(CLIENT_ID, "Resting Heart Rate", 55, "garmin", 3, 85, day=TEST_DATE + timedelta(days=1)),
        _row(CLIENT_ID, "Steps", 10432, "garmin", 1, 95),
        _row(TRAINER_ID, "Resting Heart Rate", 48, "whoop", 1, 95),
    ):
        pipeline.store.metrics[row.dedup_key] = row
    return pipeline


class TestResolvedMetrics:
    def test_one_row_per_metric_and_day(self, client: TestClient, seeded: Pipeline) -> None:
        response = client.get(URL, headers=auth_headers(CLIENT_ID))

        assert response.status_code == 200
        rows = [(r["measurement_date"], r["metric_name"], r["source"], r["value"]) for r in response.json()]
        assert rows == [
            ("2026-02-23", "Resting Heart Rate", "whoop", 64.0),
            ("2026-02-23", "Steps", "garmin", 10432.0),
            ("2026-02-24", "Resting Heart Rate", "garmin", 55.0),
        ]

    def test_filters(self, client: TestClient, seeded: Pipeline) -> None:
        response = client.get(
            URL,
            params={"start_date": "2026-02-24", "end_date": "2026-02-24", "metric_name": "Resting Heart Rate"},
            headers=auth_headers(CLIENT_ID),
        )

        assert [r["value"] for r in response.json()] == [55.0]

    def test_only_own_rows(self, client: TestClient, seeded: Pipeline) -> None:
        response = client.get(URL, headers=auth_headers(TRAINER_ID))
        assert [r["value"] for r in response.json()] == [48.0]

    def test_inverted_range(self, client: TestClient) -> None:
        response = client.get(
            URL,
            params={"start_date": "2026-02-24", "end_date": "2026-02-01"},
            headers=auth_headers(CLIENT_ID),
        )
        assert response.status_code == 400

    def test_requires_auth(self, client: TestClient) -> None:
        assert client.get(URL).status_code == 401


class TestHealth:
    def test_health_without_database(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert body["database"] == "unreachable"
        assert body["signature_validation"] == {"whoop": "enabled", "terra": "enabled"}
