"""
Tests for the Strava webhook endpoints.

The POST handler must answer 200 for every structurally valid event, whatever
happens downstream.
"""
import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from strava_weather.deps import get_processor, get_retry_policy
from strava_weather.main import app
from strava_weather.services.activity_processor import ActivityProcessor, ErrorKind, ProcessingResult
from strava_weather.services.webhook_retry import RetryPolicy

client = TestClient(app)


def event(**overrides):
    body = {
        "object_type": "activity",
        "object_id": 123456,
        "aspect_type": "create",
        "owner_id": 98765,
        "subscription_id": 1,
        "event_time": int(time.time()),
    }
    body.update(overrides)
    return body


@pytest.fixture
def fake_processor():
    processor = AsyncMock()
    processor.process_activity.return_value = ProcessingResult(success=True, activity_id="123456")
    return processor


@pytest.fixture(autouse=True)
def _overrides(fake_processor):
    app.dependency_overrides[get_processor] = lambda: fake_processor
    app.dependency_overrides[get_retry_policy] = lambda: RetryPolicy(retry_delays_s=(0.0, 0.0))
    yield
    app.dependency_overrides.clear()


class TestVerification:
    def test_matching_token_echoes_challenge(self):
        response = client.get(
            "/api/strava/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "test-verify-token", "hub.challenge": "abc123"},
        )

        assert response.status_code == 200
        assert response.json() == {"hub.challenge": "abc123"}

    @pytest.mark.parametrize(
        "mode,token",
        [
            ("subscribe", "wrong"),
            ("subscribe", "test-verify"),
            ("subscribe", "test-verify-token-extra"),
            ("unsubscribe", "test-verify-token"),
            (None, None),
        ],
    )
    def test_rejects_bad_handshake(self, mode, token):
        params = {"hub.challenge": "abc123"}
        if mode:
            params["hub.mode"] = mode
        if token:
            params["hub.verify_token"] = token

        response = client.get("/api/strava/webhook", params=params)

        assert response.status_code == 403
        assert response.json() == {"error": "Verification failed"}


class TestEventIntake:
    def test_malformed_event_is_acknowledged(self, fake_processor):
        response = client.post("/api/strava/webhook", json={"object_type": "bike"})

        assert response.status_code == 200
        assert response.json() == {"message": "Invalid event acknowledged"}
        fake_processor.process_activity.assert_not_called()

    def test_non_json_body_is_acknowledged(self):
        response = client.post(
            "/api/strava/webhook", content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 200

    @pytest.mark.parametrize("overrides", [{"aspect_type": "update"}, {"object_type": "athlete"}])
    def test_ignores_other_events(self, make_user, fake_processor, overrides):
        make_user()

        response = client.post("/api/strava/webhook", json=event(**overrides))

        assert response.status_code == 200
        assert response.json() == {"message": "Event acknowledged"}
        fake_processor.process_activity.assert_not_called()

    def test_unknown_athlete_is_acknowledged(self, fake_processor):
        response = client.post("/api/strava/webhook", json=event(owner_id=1))

        assert response.status_code == 200
        fake_processor.process_activity.assert_not_called()

    def test_disabled_user_is_acknowledged(self, make_user, fake_processor):
        make_user(weather_enabled=False)

        response = client.post("/api/strava/webhook", json=event())

        assert response.status_code == 200
        assert response.json() == {"message": "Event acknowledged"}
        fake_processor.process_activity.assert_not_called()

    def test_processes_new_activity(self, make_user, fake_processor):
        user = make_user()

        response = client.post("/api/strava/webhook", json=event())

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Webhook processed"
        assert body["activityId"] == "123456"
        assert body["attempts"] == 1
        assert body["success"] is True
        assert body["skipped"] is False
        assert isinstance(body["processingTimeMs"], int)
        fake_processor.process_activity.assert_awaited_once_with("123456", user.id)

    def test_not_found_retried_three_times_then_acknowledged(self, make_user, fake_processor):
        make_user()
        fake_processor.process_activity.return_value = ProcessingResult(
            success=False,
            activity_id="123456",
            error="Resource not found or not accessible",
            error_kind=ErrorKind.NOT_FOUND,
        )

        response = client.post("/api/strava/webhook", json=event())

        assert response.status_code == 200
        assert response.json()["attempts"] == 3
        assert response.json()["success"] is False
        assert fake_processor.process_activity.await_count == 3

    def test_processor_exception_still_returns_200(self, make_user, fake_processor):
        make_user()
        fake_processor.process_activity.side_effect = RuntimeError("database went away")

        response = client.post("/api/strava/webhook", json=event())

        assert response.status_code == 200
        assert response.json()["success"] is False


def test_end_to_end_enrichment(make_user, strava, weather):
    """Known weather-enabled user, valid token, activity with GPS and no weather yet."""
    make_user()
    app.dependency_overrides[get_processor] = lambda: ActivityProcessor(strava, weather)

    response = client.post("/api/strava/webhook", json=event())

    assert response.status_code == 200
    assert response.json()["success"] is True
    description = strava.update_activity.await_args.args[2]["description"]
    assert description.startswith("Morning run\n\n")
    assert description.endswith("Partly cloudy, 15°C, Feels like 13°C, Humidity 65%, Wind 3.5m/s from SW")


def test_status_reports_configuration():
    response = client.get("/api/strava/webhook/status")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["configured"] is True
    assert data["endpoint"].endswith("/api/strava/webhook")
