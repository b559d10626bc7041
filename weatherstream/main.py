import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from .config import CONFIG_PATH, AppSettings, load_settings, save_settings
from .events import CONNECTION_MESSAGE, ChannelSink, sse_format, text_event
from .llm import LMStudioClient
from .orchestrator import ToolOrchestrator
from .streaming import relay_plain
from .weather import WeatherClient

logger = logging.getLogger("uvicorn.error")

DEFAULT_CREDENTIAL_HELP = "There was an error connecting to the model endpoint. Check the base URL and model id."
STREAM_QUEUE_SIZE = 64


def credential_help(detail: str) -> str:
    lowered = (detail or "").lower()
    if "model" in lowered and ("not found" in lowered or "invalid" in lowered):
        return "The configured model id is not available on the endpoint. Check MODEL_ID."
    if "unauthorized" in lowered or "api key" in lowered:
        return "The model endpoint rejected the credentials. Check its auth settings."
    return DEFAULT_CREDENTIAL_HELP


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_lm_client(request: Request) -> LMStudioClient:
    return request.app.state.lm_client


def get_weather_client(request: Request) -> WeatherClient:
    return request.app.state.weather_client


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def build_orchestrator(
    settings_obj: AppSettings,
    lm_client: LMStudioClient,
    weather_client: WeatherClient,
) -> ToolOrchestrator:
    def open_stream(prompt: str):
        return lm_client.stream_prompt(
            prompt,
            model=settings_obj.model_id,
            temperature=settings_obj.temperature,
            top_p=settings_obj.top_p,
            max_tokens=settings_obj.max_tokens,
        )

    return ToolOrchestrator(
        open_stream,
        weather_client.lookup,
        markers=settings_obj.markers.to_marker_set(),
        default_unit=settings_obj.default_unit,
        max_pending_chars=settings_obj.max_pending_chars,
    )


def require_prompt(prompt: Optional[str]) -> str:
    if not prompt or not prompt.strip():
        raise HTTPException(status_code=400, detail="Prompt is required")
    return prompt


async def open_event_stream(run: Callable[[ChannelSink], Awaitable[Any]]) -> StreamingResponse:
    """Start ``run`` as its own task and relay whatever it sends as SSE frames."""
    sink = ChannelSink(maxsize=STREAM_QUEUE_SIZE)
    await sink.send(text_event(CONNECTION_MESSAGE))
    task = asyncio.create_task(run(sink))

    async def event_generator():
        try:
            async for ev in sink.events():
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            sink.close()
            if not task.done():
                task.cancel()

    headers = {"Cache-Control": "no-cache", "Connection": "keep-alive"}
    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=headers)


router = APIRouter()


@router.get("/api/health")
async def health():
    return {"status": "ok"}


@router.get("/api/check-credentials")
async def check_credentials(
    settings_obj: AppSettings = Depends(get_settings),
    lm_client: LMStudioClient = Depends(get_lm_client),
):
    ok, detail = await lm_client.check_chat(settings_obj.model_id)
    if ok:
        return {"valid": True, "modelId": settings_obj.model_id}
    return {
        "valid": False,
        "error": detail,
        "modelId": settings_obj.model_id,
        "help": credential_help(detail),
    }


@router.get("/settings")
async def get_settings_route(settings_obj: AppSettings = Depends(get_settings)):
    return {"settings": settings_obj.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    config_path: Path = Depends(get_config_path),
):
    current = request.app.state.settings
    if payload.get("weather_api_key") == "********":
        payload = {k: v for k, v in payload.items() if k != "weather_api_key"}
    try:
        updated = AppSettings(**{**current.model_dump(), **payload})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(updated, config_path)
    if updated.lm_studio_base_url != current.lm_studio_base_url:
        request.app.state.lm_client.base_url = updated.lm_studio_base_url.rstrip("/")
    if (updated.weather_api_key, updated.weather_base_url) != (current.weather_api_key, current.weather_base_url):
        await request.app.state.weather_client.close()
        request.app.state.weather_client = WeatherClient(updated.weather_api_key, base_url=updated.weather_base_url)
    request.app.state.settings = updated
    return {"settings": updated.to_safe_dict()}


@router.get("/api/generate/stream")
async def generate_stream(
    prompt: Optional[str] = Query(None),
    settings_obj: AppSettings = Depends(get_settings),
    lm_client: LMStudioClient = Depends(get_lm_client),
):
    text = require_prompt(prompt)
    source = lm_client.stream_prompt(
        text,
        model=settings_obj.model_id,
        temperature=settings_obj.temperature,
        top_p=settings_obj.top_p,
        max_tokens=settings_obj.max_tokens,
    )
    return await open_event_stream(lambda sink: relay_plain(source, sink))


@router.get("/api/generate/stream-tools")
async def generate_stream_tools(
    prompt: Optional[str] = Query(None),
    settings_obj: AppSettings = Depends(get_settings),
    lm_client: LMStudioClient = Depends(get_lm_client),
    weather_client: WeatherClient = Depends(get_weather_client),
):
    text = require_prompt(prompt)
    orchestrator = build_orchestrator(settings_obj, lm_client, weather_client)
    return await open_event_stream(lambda sink: orchestrator.run_turn(text, sink))


def create_app(
    settings: AppSettings,
    *,
    lm_client: Optional[LMStudioClient] = None,
    weather_client: Optional[WeatherClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Using model %s at %s", app.state.settings.model_id, app.state.settings.lm_studio_base_url)
        try:
            yield
        finally:
            await app.state.lm_client.close()
            await app.state.weather_client.close()

    app = FastAPI(title="Weatherstream", lifespan=lifespan)
    app.state.settings = settings
    app.state.lm_client = lm_client or LMStudioClient(settings.lm_studio_base_url)
    app.state.weather_client = weather_client or WeatherClient(
        settings.weather_api_key, base_url=settings.weather_base_url
    )
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("WEATHERSTREAM_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "weatherstream.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
