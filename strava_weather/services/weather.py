"""
Weather Resolver

Looks up the weather at an activity's start point using OpenWeatherMap One Call 3.0.

Endpoint choice by activity age:
- up to 1 hour old: current conditions
- 1 hour to 5 days: Time Machine (historical) for the exact start time
- anything else (older, or in the future): current conditions as a fallback;
  the returned timestamp is the fetch time, not the activity time

Results are cached in-process per (rounded coordinates, 15 minute bucket, activity id).
Output is always metric regardless of the units requested upstream.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from pydantic import BaseModel

from ..config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

COORDINATE_PRECISION = 4  # ~11m
TIME_BUCKET_SECONDS = 15 * 60
RECENT_ACTIVITY_THRESHOLD_HOURS = 1
HISTORICAL_LIMIT_HOURS = 120  # Time Machine limit
DEFAULT_VISIBILITY_M = 10000

MPH_TO_MS = 0.44704


class WeatherServiceError(Exception):
    """Any failure talking to the weather provider."""


class WeatherData(BaseModel):
    temperature: int  # °C
    temperature_feel: int  # °C
    humidity: int  # %
    pressure: int  # hPa
    wind_speed: float  # m/s
    wind_direction: int  # degrees
    wind_gust: Optional[float] = None  # m/s
    cloud_cover: int  # %
    visibility: int  # km
    condition: str
    description: str
    icon: str = ""
    uv_index: float = 0
    timestamp: str  # ISO 8601, time of the observation


class WeatherCache:
    """TTL cache keyed by string. Expiry is measured from insertion, not from weather time."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, WeatherData]] = {}

    def get(self, key: str) -> Optional[WeatherData]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: WeatherData) -> None:
        self._entries[key] = (self._clock(), value)

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at > self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info(f"Weather cache sweep removed {len(expired)} entries, {len(self._entries)} remaining")
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def cache_key(lat: float, lon: float, activity_time: datetime, activity_id: str) -> str:
    rounded_lat = round(lat, COORDINATE_PRECISION)
    rounded_lon = round(lon, COORDINATE_PRECISION)
    epoch = int(activity_time.timestamp())
    bucket = epoch - (epoch % TIME_BUCKET_SECONDS)
    return f"weather:{rounded_lat}:{rounded_lon}:{bucket}:{activity_id}"


def _to_celsius(value: float, units: str) -> float:
    if units == "imperial":
        return (value - 32) * 5 / 9
    if units == "standard":
        return value - 273.15
    return value


def _to_ms(value: float, units: str) -> float:
    if units == "imperial":
        return value * MPH_TO_MS
    return value


def normalize_weather(data: Dict[str, Any], units: str = "metric") -> WeatherData:
    """Convert a One Call observation into metric WeatherData."""
    weather = (data.get("weather") or [{}])[0]
    gust = data.get("wind_gust")
    return WeatherData(
        temperature=round(_to_celsius(data["temp"], units)),
        temperature_feel=round(_to_celsius(data.get("feels_like", data["temp"]), units)),
        humidity=round(data.get("humidity", 0)),
        pressure=round(data.get("pressure", 0)),
        wind_speed=round(_to_ms(data.get("wind_speed", 0), units), 1),
        wind_direction=round(data.get("wind_deg", 0)),
        wind_gust=round(_to_ms(gust, units), 1) if gust else None,
        cloud_cover=round(data.get("clouds", 0)),
        # visibility is reported in metres for every unit system
        visibility=round((data.get("visibility") or DEFAULT_VISIBILITY_M) / 1000),
        condition=weather.get("main", "Unknown"),
        description=weather.get("description", "unknown"),
        icon=weather.get("icon", ""),
        uv_index=data.get("uvi") or 0,
        timestamp=datetime.fromtimestamp(data["dt"], timezone.utc).isoformat(),
    )


class WeatherResolver:
    def __init__(
        self,
        config: Settings = default_settings,
        cache: Optional[WeatherCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config
        self.cache = cache if cache is not None else WeatherCache(config.WEATHER_CACHE_TTL_S)
        self.units = config.OPENWEATHERMAP_UNITS
        self._transport = transport
        self._now = now

    async def get_weather_for_activity(
        self, lat: float, lon: float, activity_time: datetime, activity_id: str
    ) -> WeatherData:
        if activity_time.tzinfo is None:
            activity_time = activity_time.replace(tzinfo=timezone.utc)

        key = cache_key(lat, lon, activity_time, activity_id)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Weather cache hit for activity {activity_id}")
            return cached

        hours_since_activity = (self._now() - activity_time).total_seconds() / 3600

        try:
            if 0 < hours_since_activity <= RECENT_ACTIVITY_THRESHOLD_HOURS:
                source = "current"
                weather = await self._get_current(lat, lon)
            elif RECENT_ACTIVITY_THRESHOLD_HOURS < hours_since_activity <= HISTORICAL_LIMIT_HOURS:
                source = "historical"
                weather = await self._get_historical(lat, lon, activity_time)
            else:
                source = "current-fallback"
                logger.warning(
                    f"Activity {activity_id} is {hours_since_activity:.1f}h old, outside Time Machine range; "
                    "using current weather"
                )
                weather = await self._get_current(lat, lon)
        except WeatherServiceError as e:
            logger.error(f"Failed to fetch weather data for activity {activity_id}: {e}")
            raise WeatherServiceError(f"Failed to fetch weather data: {e}") from e

        self.cache.set(key, weather)
        logger.info(
            f"Weather for activity {activity_id} from {source} ({hours_since_activity:.1f}h old): "
            f"{weather.temperature}°C, {weather.condition}"
        )
        return weather

    async def _get_current(self, lat: float, lon: float) -> WeatherData:
        params = {
            "lat": f"{lat:.6f}",
            "lon": f"{lon:.6f}",
            "appid": self.config.OPENWEATHERMAP_API_KEY,
            "units": self.units,
            "exclude": "minutely,hourly,daily,alerts",
        }
        data = await self._get(self.config.OPENWEATHERMAP_ONECALL_URL, params, "One Call API")
        return self._parse(lambda: data["current"])

    async def _get_historical(self, lat: float, lon: float, when: datetime) -> WeatherData:
        params = {
            "lat": f"{lat:.6f}",
            "lon": f"{lon:.6f}",
            "dt": str(int(when.timestamp())),
            "appid": self.config.OPENWEATHERMAP_API_KEY,
            "units": self.units,
        }
        data = await self._get(f"{self.config.OPENWEATHERMAP_ONECALL_URL}/timemachine", params, "Time Machine API")
        return self._parse(lambda: data["data"][0])

    def _parse(self, pick: Callable[[], Dict[str, Any]]) -> WeatherData:
        try:
            return normalize_weather(pick(), self.units)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise WeatherServiceError(f"Weather API error: unexpected response ({e})") from e

    async def _get(self, url: str, params: Dict[str, str], api_name: str) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.config.WEATHER_API_TIMEOUT_S, transport=self._transport) as client:
                response = await client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise WeatherServiceError("Weather API request timeout") from e
        except httpx.RequestError as e:
            raise WeatherServiceError(f"Weather API error: {e}") from e

        if response.status_code != 200:
            logger.error(f"{api_name} request failed: {response.status_code} - {response.text[:200]}")
            if response.status_code == 401:
                raise WeatherServiceError("Weather API authentication failed")
            if response.status_code == 429:
                raise WeatherServiceError("Weather API rate limit exceeded")
            raise WeatherServiceError(f"Weather API error: {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise WeatherServiceError("Weather API error: invalid JSON") from e


async def run_cache_sweeper(cache: WeatherCache, interval_seconds: float) -> None:
    """Periodically evict expired entries. Runs until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        cache.sweep()
