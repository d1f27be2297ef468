from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from chatgate.config import AppSettings
from chatgate.main import create_app
from chatgate.store import ConversationStore
from tests.fakes import FakeLLMClient, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        llm_base_url="http://lm.test/v1",
        default_model_id="test-model",
        tavily_api_key=None,
        web_agent_url=None,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: FakeLLMClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        search_agent=None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm_client = fake_llm or FakeLLMClient()
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            llm_client=llm_client,
            tavily_client=tavily_client,
            search_agent=search_agent,
            config_path=cfg_path,
        )
        return app, cfg_path, llm_client, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, llm_client, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_llm = llm_client  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client


@pytest.fixture
async def store(tmp_path: Path):
    conversation_store = ConversationStore(str(tmp_path / "store.db"))
    await conversation_store.init()
    return conversation_store
