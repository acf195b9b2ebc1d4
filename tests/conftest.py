from pathlib import Path
from typing import Dict, Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from chatrelay.adapters import ChatAdapter
from chatrelay.main import create_app
from tests.fakes import FakeTavilyClient, make_adapters, make_settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        adapters: Optional[Dict[str, ChatAdapter]] = None,
        fake_tavily: Optional[FakeTavilyClient] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        adapters = adapters or make_adapters()
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        app = create_app(settings, adapters=adapters, tavily_client=tavily_client)
        return app, adapters, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, adapters, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.adapters = adapters  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client
