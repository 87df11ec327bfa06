import pytest

from strava_weather.services.weather import WeatherData
from strava_weather.services.weather_description import (
    WeatherPreferences,
    compose_description,
    format_weather_line,
    get_wind_direction_string,
    has_weather_data,
    remove_existing_weather_data,
)

DETAILED = "Partly cloudy, 15°C, Feels like 13°C, Humidity 65%, Wind 3.5m/s from SW"


class TestWindDirection:
    @pytest.mark.parametrize(
        "degrees,expected",
        [(0, "N"), (90, "E"), (225, "SW"), (360, "N"), (11.2, "N"), (11.25, "NNE"), (348.75, "N"), (-45, "NW")],
    )
    def test_compass_points(self, degrees, expected):
        assert get_wind_direction_string(degrees) == expected


class TestWeatherDetection:
    @pytest.mark.parametrize(
        "description",
        [DETAILED, "Cold one, 3°F", "🌤️ Weather: sunny", "Humidity was brutal", "Wind 3m/s from N"],
    )
    def test_detects_annotations(self, description):
        assert has_weather_data(description) is True

    @pytest.mark.parametrize("description", [None, "", "Easy recovery run with the club"])
    def test_plain_descriptions(self, description):
        assert has_weather_data(description) is False


class TestRemoval:
    def test_strips_detailed_line(self):
        assert remove_existing_weather_data(f"Tempo session\n\n{DETAILED}") == "Tempo session"

    def test_strips_detailed_line_with_extras(self):
        line = f"{DETAILED}, UV index 2.5, Visibility 10km"
        assert remove_existing_weather_data(f"Tempo\n\n{line}") == "Tempo"

    def test_strips_simple_line(self):
        assert remove_existing_weather_data("Long run\n\nClear sky, 59°F") == "Long run"

    def test_strips_emoji_block(self):
        text = "Hill repeats\n\n🌤️ Weather: Clear sky\nTemperature: 12°C\nWind: 2 m/s"
        assert remove_existing_weather_data(text) == "Hill repeats"

    def test_keeps_user_paragraphs(self):
        text = "Felt strong.\n\n\n\nNew shoes."
        assert remove_existing_weather_data(text) == "Felt strong.\n\nNew shoes."


class TestFormatting:
    def test_default_line(self, weather_data):
        assert format_weather_line(weather_data) == DETAILED

    def test_fahrenheit(self, weather_data):
        prefs = WeatherPreferences(temperature_unit="fahrenheit")
        assert format_weather_line(weather_data, prefs) == (
            "Partly cloudy, 59°F, Feels like 55°F, Humidity 65%, Wind 3.5m/s from SW"
        )

    def test_simple(self, weather_data):
        assert format_weather_line(weather_data, WeatherPreferences(weather_format="simple")) == "Partly cloudy, 15°C"

    def test_extras(self, weather_data):
        prefs = WeatherPreferences(include_uv_index=True, include_visibility=True)
        assert format_weather_line(weather_data, prefs) == f"{DETAILED}, UV index 2.5, Visibility 10km"

    def test_custom_format(self, weather_data):
        prefs = WeatherPreferences(custom_format="{condition} {temperature} ({wind_speed}m/s {wind_direction})")
        assert format_weather_line(weather_data, prefs) == "Partly cloudy 15°C (3.5m/s SW)"

    def test_invalid_custom_format_falls_back_to_detailed(self, weather_data):
        prefs = WeatherPreferences(weather_format="simple", custom_format="{nope}")
        assert format_weather_line(weather_data, prefs) == DETAILED

    @pytest.mark.parametrize(
        "template",
        ["{condition[x]}, {temperature}", "{humidity[0]}", "{condition.upper}", "{condition:>20000000}", "{temperature} {"],
    )
    def test_only_plain_placeholders_are_rendered(self, weather_data, template):
        prefs = WeatherPreferences(custom_format=template)
        assert format_weather_line(weather_data, prefs) == DETAILED

    def test_text_around_placeholders_is_kept(self, weather_data):
        prefs = WeatherPreferences(custom_format="Weather {humidity}% and {unit}", temperature_unit="fahrenheit")
        assert format_weather_line(weather_data, prefs) == "Weather 65% and °F"


class TestCompose:
    def test_appends_after_blank_line(self, weather_data):
        assert compose_description("Morning run", weather_data) == f"Morning run\n\n{DETAILED}"

    def test_empty_original(self, weather_data):
        assert compose_description(None, weather_data) == DETAILED

    def test_replaces_previous_annotation(self, weather_data):
        original = "Morning run\n\nSunny, 20°C, Feels like 19°C, Humidity 40%, Wind 1.0m/s from N"
        assert compose_description(original, weather_data) == f"Morning run\n\n{DETAILED}"

    def test_result_is_detected_as_annotated(self, weather_data):
        assert has_weather_data(compose_description("Morning run", weather_data))


def test_weather_data_rejects_missing_fields():
    with pytest.raises(ValueError):
        WeatherData(temperature=1)
