import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from dotenv import load_dotenv

from .markers import MarkerSet

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "WEATHERSTREAM_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class MarkerConfig(BaseModel):
    call_open: str = "<CALL_WEATHER>"
    call_close: str = "</CALL_WEATHER>"
    result_open: str = "<WEATHER_RESULT>"
    result_close: str = "</WEATHER_RESULT>"

    def to_marker_set(self) -> MarkerSet:
        return MarkerSet(
            call_open=self.call_open,
            call_close=self.call_close,
            result_open=self.result_open,
            result_close=self.result_close,
        )


class AppSettings(BaseModel):
    lm_studio_base_url: str = "http://127.0.0.1:1234/v1"
    model_id: str = "meta-llama-3.1-8b-instruct"
    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 1024

    weather_api_key: Optional[str] = None
    weather_base_url: str = "https://api.weatherapi.com/v1"
    default_unit: str = "fahrenheit"

    # Upper bound on text held back while a call marker is open.
    max_pending_chars: int = 4096
    markers: MarkerConfig = Field(default_factory=MarkerConfig)

    host: str = "0.0.0.0"
    port: int = 3000

    model_config = {"protected_namespaces": ()}

    @field_validator("default_unit")
    @classmethod
    def _check_unit(cls, value: str) -> str:
        cleaned = str(value).strip().lower()
        if cleaned not in ("celsius", "fahrenheit"):
            raise ValueError("default_unit must be 'celsius' or 'fahrenheit'")
        return cleaned

    @field_validator("markers")
    @classmethod
    def _check_markers(cls, value: MarkerConfig) -> MarkerConfig:
        value.to_marker_set()
        return value

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("weather_api_key"):
            data["weather_api_key"] = "********"
        return data


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "lm_studio_base_url": os.getenv("LM_STUDIO_BASE_URL"),
        "model_id": os.getenv("MODEL_ID"),
        "temperature": os.getenv("TEMPERATURE"),
        "top_p": os.getenv("TOP_P"),
        "max_tokens": os.getenv("MAX_TOKENS"),
        "weather_api_key": os.getenv("WEATHER_API_KEY"),
        "weather_base_url": os.getenv("WEATHER_BASE_URL"),
        "default_unit": os.getenv("DEFAULT_UNIT"),
        "max_pending_chars": os.getenv("MAX_PENDING_CHARS"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("max_tokens", "max_pending_chars", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("temperature", "top_p"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("weather_api_key") and env_data.get("weather_api_key"):
        merged["weather_api_key"] = env_data["weather_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
