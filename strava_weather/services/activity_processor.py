"""
Activity enrichment pipeline.

load user -> ensure valid token -> fetch activity -> skip checks -> weather ->
compose description -> write back.

process_activity() never raises: every outcome, including unexpected exceptions,
comes back as a ProcessingResult so the webhook and the manual API can share it.
"""
import asyncio
import logging
import time
import weakref
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.orm import Session, load_only

from ..database import SessionLocal
from ..models import User, utcnow
from .strava_client import (
    StravaAPIError,
    StravaClient,
    StravaForbiddenError,
    StravaNotFoundError,
    StravaRateLimitError,
    StravaUnauthorizedError,
    TokenRefreshError,
)
from .weather import WeatherData, WeatherResolver, WeatherServiceError
from .weather_description import WeatherPreferences, compose_description, has_weather_data

logger = logging.getLogger(__name__)

SKIP_WEATHER_DISABLED = "Weather updates disabled"
SKIP_ALREADY_HAS_WEATHER = "Already has weather data"
SKIP_NO_GPS = "No GPS coordinates"


class ErrorKind(str, Enum):
    USER_NOT_FOUND = "user_not_found"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    WEATHER = "weather"
    UPSTREAM = "upstream"
    INTERNAL = "internal"


class ProcessingResult(BaseModel):
    success: bool
    activity_id: str
    weather_data: Optional[WeatherData] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    skipped: bool = False
    reason: Optional[str] = None

    @property
    def retryable(self) -> bool:
        """Only a missing activity is worth retrying; it may not have propagated yet."""
        return self.error_kind == ErrorKind.NOT_FOUND


def classify_error(error: Exception) -> ErrorKind:
    if isinstance(error, StravaNotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(error, (StravaUnauthorizedError, TokenRefreshError)):
        return ErrorKind.UNAUTHORIZED
    if isinstance(error, StravaForbiddenError):
        return ErrorKind.FORBIDDEN
    if isinstance(error, StravaRateLimitError):
        return ErrorKind.RATE_LIMITED
    if isinstance(error, StravaAPIError):
        return ErrorKind.UPSTREAM
    if isinstance(error, WeatherServiceError):
        return ErrorKind.WEATHER
    return ErrorKind.INTERNAL


def parse_start_latlng(value: Any) -> Optional[tuple]:
    """Return (lat, lon) or None unless value is exactly two numbers."""
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return None
    lat, lon = value
    for coord in (lat, lon):
        if isinstance(coord, bool) or not isinstance(coord, (int, float)):
            return None
    return float(lat), float(lon)


def parse_start_date(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class ActivityProcessor:
    def __init__(
        self,
        strava_client: StravaClient,
        weather_resolver: WeatherResolver,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.strava = strava_client
        self.weather = weather_resolver
        self.session_factory = session_factory
        # Entries live only while some request holds or waits on the lock
        self._token_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    async def process_activity(self, activity_id, user_id: str, force_update: bool = False) -> ProcessingResult:
        activity_id = str(activity_id)
        started = time.monotonic()
        logger.info(f"Processing activity {activity_id} for user {user_id} (force_update={force_update})")

        db = self.session_factory()
        try:
            result = await self._process(db, activity_id, user_id, force_update)
        except Exception as e:
            db.rollback()
            kind = classify_error(e)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            if kind == ErrorKind.INTERNAL:
                logger.exception(f"Activity {activity_id} processing failed after {elapsed_ms}ms: {e}")
            else:
                logger.warning(f"Activity {activity_id} processing failed after {elapsed_ms}ms ({kind.value}): {e}")
            return ProcessingResult(
                success=False,
                activity_id=activity_id,
                error=str(e) or e.__class__.__name__,
                error_kind=kind,
            )
        finally:
            db.close()

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if result.skipped:
            logger.info(f"Activity {activity_id} skipped after {elapsed_ms}ms: {result.reason}")
        elif result.success:
            logger.info(f"Activity {activity_id} enriched in {elapsed_ms}ms")
        return result

    async def _process(self, db: Session, activity_id: str, user_id: str, force_update: bool) -> ProcessingResult:
        user = (
            db.query(User)
            .options(load_only(
                User.id, User.access_token, User.refresh_token, User.token_expires_at, User.weather_enabled
            ))
            .filter(User.id == user_id)
            .first()
        )
        if not user:
            logger.error(f"User {user_id} not found")
            return ProcessingResult(
                success=False, activity_id=activity_id, error="User not found", error_kind=ErrorKind.USER_NOT_FOUND
            )

        if not user.weather_enabled:
            return ProcessingResult(
                success=False, activity_id=activity_id, skipped=True, reason=SKIP_WEATHER_DISABLED
            )

        access_token = await self._ensure_valid_token(db, user)

        activity = await self.strava.get_activity(activity_id, access_token)

        if not force_update and has_weather_data(activity.get("description")):
            return ProcessingResult(
                success=True, activity_id=activity_id, skipped=True, reason=SKIP_ALREADY_HAS_WEATHER
            )

        coordinates = parse_start_latlng(activity.get("start_latlng"))
        if coordinates is None:
            return ProcessingResult(success=False, activity_id=activity_id, skipped=True, reason=SKIP_NO_GPS)

        lat, lon = coordinates
        start_time = parse_start_date(activity["start_date"])
        weather = await self.weather.get_weather_for_activity(lat, lon, start_time, activity_id)

        preferences = WeatherPreferences.from_model(user.preferences)
        description = compose_description(activity.get("description"), weather, preferences)

        await self.strava.update_activity(activity_id, access_token, {"description": description})

        return ProcessingResult(success=True, activity_id=activity_id, weather_data=weather)

    async def _ensure_valid_token(self, db: Session, user: User) -> str:
        """
        Return a usable access token, refreshing and persisting it when close to expiry.

        Refreshes for the same user are serialized in-process, and the write is
        conditional on the expiry we read so a concurrent writer elsewhere is not
        overwritten. If that writer won, its tokens are used instead of ours.
        """
        lock = self._token_locks.setdefault(user.id, asyncio.Lock())
        async with lock:
            # Another request may have refreshed while we waited for the lock
            db.refresh(user, ["access_token", "refresh_token", "token_expires_at"])
            previous_expiry = user.token_expires_at

            token = await self.strava.ensure_valid_token(user.access_token, user.refresh_token, previous_expiry)
            if not token.was_refreshed:
                return token.access_token

            result = db.execute(
                update(User)
                .where(User.id == user.id, User.token_expires_at == previous_expiry)
                .values(
                    access_token=token.access_token,
                    refresh_token=token.refresh_token,
                    token_expires_at=token.expires_at,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()

            if result.rowcount == 0:
                logger.warning(f"Tokens for user {user.id} were refreshed concurrently, using stored tokens")
                db.refresh(user, ["access_token", "refresh_token", "token_expires_at"])
                return user.access_token

            logger.info(f"Refreshed tokens persisted for user {user.id}")
            return token.access_token
