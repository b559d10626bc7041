"""Prompt text for the sentinel-marker weather flow."""

import json
from typing import Any

from .markers import MarkerSet

WEATHER_SYSTEM = """You are a helpful assistant that can check the weather. When the user asks about weather in a location,
respond ONLY with {call_open}{{"location":"CITY_NAME, STATE_NAME"}}{call_close} inside the USA
or {call_open}{{"location":"CITY_NAME, REGION_NAME"}}{call_close} outside of the USA and wait for the result.
You may add "unit":"celsius" or "unit":"fahrenheit" to the JSON when the user asks for a specific unit.
When you receive weather data in the format {result_open}{{...}}{result_close}, use that data to answer the user's question.
You may call the weather tool at most once per query. After you see the {result_close} tag, do not issue any further {call_open}."""


def weather_instructions(markers: MarkerSet) -> str:
    return WEATHER_SYSTEM.format(
        call_open=markers.call_open,
        call_close=markers.call_close,
        result_open=markers.result_open,
        result_close=markers.result_close,
    )


def build_stage1_prompt(markers: MarkerSet, request: str) -> str:
    return f"System: {weather_instructions(markers)} \nUser: {request}"


def build_stage2_prompt(markers: MarkerSet, request: str, tool_result: Any) -> str:
    return (
        f"{build_stage1_prompt(markers, request)} \n"
        f"{markers.result_open} \n{json.dumps(tool_result)} \n{markers.result_close}"
    )
