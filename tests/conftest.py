from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from weatherstream.main import create_app
from tests.fakes import FakeLMStudioClient, FakeWeatherClient, make_settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_lm: FakeLMStudioClient | None = None,
        fake_weather: FakeWeatherClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(**settings_overrides)
        lm_client = fake_lm or FakeLMStudioClient()
        weather_client = fake_weather or FakeWeatherClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, lm_client=lm_client, weather_client=weather_client, config_path=cfg_path)
        return app, cfg_path, lm_client, weather_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, lm_client, weather_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_lm = lm_client  # type: ignore[attr-defined]
            http_client.fake_weather = weather_client  # type: ignore[attr-defined]
            yield http_client
