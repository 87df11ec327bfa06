"""
Description composer: turns an activity description plus weather into the text
written back to Strava.

Default line:
    "Partly cloudy, 15°C, Feels like 13°C, Humidity 65%, Wind 3.5m/s from SW"
"""
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .weather import WeatherData

logger = logging.getLogger(__name__)

# Any of these in a description means we (or the athlete) already added weather.
WEATHER_PATTERNS = [
    re.compile(r"°C"),
    re.compile(r"°F"),
    re.compile(r"Feels like"),
    re.compile(r"Humidity"),
    re.compile(r"m/s from"),
    re.compile(r"🌤️ Weather:"),
    re.compile(r"Weather:"),
]

WIND_DIRECTIONS = [
    "N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE",
    "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW",
]

_DETAILED_LINE = re.compile(
    r"\n*[A-Z][^,\n]+, -?\d+°[CF], Feels like .*?from [NSEW]+"
    r"(?:, UV index [\d.]+)?(?:, Visibility \d+km)?"
)
_SIMPLE_LINE = re.compile(r"\n*^[A-Z][^,\n]*, -?\d+°[CF]$", re.MULTILINE)
_EMOJI_BLOCK = re.compile(r"\n*🌤️ Weather:[\s\S]*$")
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")
_PLACEHOLDER = re.compile(r"\{(\w+)\}")


@dataclass
class WeatherPreferences:
    temperature_unit: str = "celsius"
    weather_format: str = "detailed"
    include_uv_index: bool = False
    include_visibility: bool = False
    custom_format: Optional[str] = None

    @classmethod
    def from_model(cls, preference) -> "WeatherPreferences":
        if preference is None:
            return cls()
        return cls(
            temperature_unit=preference.temperature_unit or "celsius",
            weather_format=preference.weather_format or "detailed",
            include_uv_index=bool(preference.include_uv_index),
            include_visibility=bool(preference.include_visibility),
            custom_format=preference.custom_format,
        )


def has_weather_data(description: Optional[str]) -> bool:
    if not description:
        return False
    return any(pattern.search(description) for pattern in WEATHER_PATTERNS)


def get_wind_direction_string(degrees: float) -> str:
    """Degrees to 16-point compass. Negative or >360 input is wrapped first (-45 -> NW)."""
    normalized = degrees % 360
    index = int(math.floor(normalized / 22.5 + 0.5)) % 16
    return WIND_DIRECTIONS[index]


def capitalize_first(text: str) -> str:
    return text[:1].upper() + text[1:]


def remove_existing_weather_data(description: str) -> str:
    cleaned = _EMOJI_BLOCK.sub("", description)
    cleaned = _DETAILED_LINE.sub("", cleaned)
    cleaned = _SIMPLE_LINE.sub("", cleaned)
    cleaned = _EXTRA_BLANK_LINES.sub("\n\n", cleaned)
    return cleaned.strip()


def _temperature(celsius: int, unit: str) -> str:
    if unit == "fahrenheit":
        return f"{round(celsius * 9 / 5 + 32)}°F"
    return f"{celsius}°C"


def render_custom_format(template: str, fields: Dict[str, Any]) -> Optional[str]:
    """
    Fill plain {name} placeholders from fields. Returns None for an unknown
    name or any other brace usage (indexing, attributes, format specs).
    """
    unknown = []

    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in fields:
            unknown.append(name)
            return ""
        return str(fields[name])

    remainder = _PLACEHOLDER.sub("", template)
    if "{" in remainder or "}" in remainder:
        return None

    line = _PLACEHOLDER.sub(replace, template)
    if unknown:
        return None
    return line


def format_weather_line(weather: WeatherData, preferences: Optional[WeatherPreferences] = None) -> str:
    prefs = preferences or WeatherPreferences()
    condition = capitalize_first(weather.description)
    wind_direction = get_wind_direction_string(weather.wind_direction)

    if prefs.custom_format:
        unit_symbol = "°F" if prefs.temperature_unit == "fahrenheit" else "°C"
        fields = {
            "condition": condition,
            "description": weather.description,
            "temperature": _temperature(weather.temperature, prefs.temperature_unit),
            "feels_like": _temperature(weather.temperature_feel, prefs.temperature_unit),
            "unit": unit_symbol,
            "humidity": weather.humidity,
            "pressure": weather.pressure,
            "wind_speed": weather.wind_speed,
            "wind_direction": wind_direction,
            "wind_gust": weather.wind_gust if weather.wind_gust is not None else "",
            "cloud_cover": weather.cloud_cover,
            "visibility": weather.visibility,
            "uv_index": weather.uv_index,
        }
        line = render_custom_format(prefs.custom_format, fields)
        if line is not None:
            return line
        logger.warning(f"Invalid custom weather format {prefs.custom_format[:50]!r}, using detailed format")
    elif prefs.weather_format == "simple":
        return f"{condition}, {_temperature(weather.temperature, prefs.temperature_unit)}"

    parts = [
        condition,
        _temperature(weather.temperature, prefs.temperature_unit),
        f"Feels like {_temperature(weather.temperature_feel, prefs.temperature_unit)}",
        f"Humidity {weather.humidity}%",
        f"Wind {weather.wind_speed}m/s from {wind_direction}",
    ]
    if prefs.include_uv_index:
        parts.append(f"UV index {weather.uv_index}")
    if prefs.include_visibility:
        parts.append(f"Visibility {weather.visibility}km")
    return ", ".join(parts)


def compose_description(
    original: Optional[str], weather: WeatherData, preferences: Optional[WeatherPreferences] = None
) -> str:
    """Strip any earlier weather line and append a fresh one after a blank line."""
    clean = remove_existing_weather_data(original or "")
    weather_line = format_weather_line(weather, preferences)
    if clean:
        return f"{clean}\n\n{weather_line}"
    return weather_line
