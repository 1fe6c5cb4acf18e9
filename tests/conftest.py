from typing import Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from relay.main import create_app
from relay.orchestrator import ProviderRegistry
from tests.fakes import make_providers, make_settings


@pytest.fixture
def app_factory():
    def _factory(*, providers: Optional[ProviderRegistry] = None, on_complete=None, **settings_overrides):
        settings = make_settings(**settings_overrides)
        registry = providers or make_providers()
        app = create_app(settings, providers=registry, on_complete=on_complete)
        return app, registry

    return _factory


@pytest.fixture
async def client(app_factory):
    app, providers = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.providers = providers  # type: ignore[attr-defined]
            yield http_client
