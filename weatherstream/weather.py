import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger("uvicorn.error")

WEATHER_KEY_PLACEHOLDER = "YOUR_WEATHER_API_KEY"
NOT_CONFIGURED_ERROR = "Weather API key not configured. Set WEATHER_API_KEY or weather_api_key in config.json."
UNITS = ("celsius", "fahrenheit")


class WeatherClient:
    """Current-conditions lookup against weatherapi.com.

    Failures come back as ``{"error": ...}`` instead of raising so the caller
    can hand them to the model like any other result.
    """

    def __init__(self, api_key: Optional[str], base_url: str = "https://api.weatherapi.com/v1"):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=15)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key) and self.api_key != WEATHER_KEY_PLACEHOLDER

    async def lookup(self, location: str, unit: str = "fahrenheit") -> Dict[str, Any]:
        if not self.enabled:
            logger.error("Weather API key not configured.")
            return {"error": NOT_CONFIGURED_ERROR}
        unit = unit if unit in UNITS else "fahrenheit"
        try:
            resp = await self.client.get(
                f"{self.base_url}/current.json",
                params={"key": self.api_key, "q": location, "aqi": "no"},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            logger.warning("Weather API error (%s) for %r", e.response.status_code, location)
            return {"error": f"Weather API error ({e.response.status_code}): {e.response.text}"}
        except httpx.RequestError as e:
            logger.warning("Weather API request failed for %r: %s", location, e)
            return {"error": str(e) or "Error fetching weather data"}
        except ValueError:
            return {"error": "Weather API returned invalid JSON"}
        return format_reading(data, unit)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def format_reading(data: Dict[str, Any], unit: str) -> Dict[str, Any]:
    try:
        current = data["current"]
        place = data["location"]
        fahrenheit = unit == "fahrenheit"
        return {
            "temperature": current["temp_f"] if fahrenheit else current["temp_c"],
            "condition": current["condition"]["text"],
            "location": f"{place['name']}, {place['region']}",
            "humidity": f"{current['humidity']}%",
            "wind": f"{current['wind_mph']} mph" if fahrenheit else f"{current['wind_kph']} km/h",
            "unit": unit,
        }
    except (KeyError, TypeError) as exc:
        return {"error": f"Unexpected weather API response: missing {exc}"}
