"""
Pytest configuration and fixtures

Environment is pinned before anything from strava_weather is imported: settings
are read once at import time. The database is an in-memory SQLite shared by
every session and recreated for each test.
"""
import os

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENCRYPTION_KEY"] = "test-encryption-key"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["STRAVA_CLIENT_ID"] = "12345"
os.environ["STRAVA_CLIENT_SECRET"] = "test-client-secret"
os.environ["STRAVA_WEBHOOK_VERIFY_TOKEN"] = "test-verify-token"
os.environ["OPENWEATHERMAP_API_KEY"] = "test-owm-key"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["RATE_LIMIT_ENABLED"] = "false"

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from strava_weather.database import Base, SessionLocal, engine
from strava_weather.models import User, UserPreference, utcnow
from strava_weather.services.strava_client import TokenData
from strava_weather.services.weather import WeatherData


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    """Create a weather-enabled user with a token valid for six hours."""
    counter = {"n": 0}

    def _make(preferences=None, **overrides) -> User:
        counter["n"] += 1
        fields = {
            "strava_athlete_id": str(98765 + counter["n"] - 1),
            "access_token": "access-token",
            "refresh_token": "refresh-token",
            "token_expires_at": utcnow() + timedelta(hours=6),
            "weather_enabled": True,
            "first_name": "Ada",
            "last_name": "Runner",
        }
        fields.update(overrides)
        user = User(**fields)
        db.add(user)
        if preferences is not None:
            user.preferences = UserPreference(**preferences)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def weather_data():
    return WeatherData(
        temperature=15,
        temperature_feel=13,
        humidity=65,
        pressure=1013,
        wind_speed=3.5,
        wind_direction=225,
        wind_gust=None,
        cloud_cover=40,
        visibility=10,
        condition="Clouds",
        description="partly cloudy",
        icon="02d",
        uv_index=2.5,
        timestamp="2024-01-15T07:30:00+00:00",
    )


@pytest.fixture
def activity():
    return {
        "id": 123456,
        "name": "Morning Run",
        "type": "Run",
        "start_date": "2024-01-15T07:30:00Z",
        "start_latlng": [52.52, 13.405],
        "description": "Morning run",
    }


@pytest.fixture
def strava(activity):
    """Activity client double: tokens pass through unchanged, activity fetch returns the fixture."""
    client = AsyncMock()

    async def passthrough(access_token, refresh_token, expires_at):
        return TokenData(access_token, refresh_token, expires_at, was_refreshed=False)

    client.ensure_valid_token.side_effect = passthrough
    client.get_activity.return_value = activity
    client.update_activity.return_value = {}
    return client


@pytest.fixture
def weather(weather_data):
    resolver = AsyncMock()
    resolver.get_weather_for_activity.return_value = weather_data
    return resolver
