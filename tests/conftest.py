from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from reasoner.config import AppSettings
from reasoner.db import Database
from reasoner.main import create_app
from reasoner.orchestrator import EventBus, RunCoordinator
from tests.fakes import FakeNodeRepository, FakeProvider, annual_report_repository


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        provider_base_url="http://llm.test/v1",
        provider_model="test-model",
        provider_api_key=None,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        planner_timeout_s=2.0,
        synthesis_timeout_s=2.0,
        repository_timeout_s=2.0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        provider: FakeProvider | None = None,
        repository: FakeNodeRepository | None = None,
        evaluator=None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        fake_provider = provider or FakeProvider()
        repo = repository or annual_report_repository()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            provider=fake_provider,
            repository=repo,
            evaluator=evaluator,
            config_path=cfg_path,
        )
        return app, fake_provider, repo

    return _factory


@pytest.fixture
def coordinator_factory(tmp_path: Path):
    """Build a RunCoordinator on a fresh database without the HTTP layer."""

    async def _factory(
        *,
        provider: FakeProvider | None = None,
        repository: FakeNodeRepository | None = None,
        evaluator=None,
        **settings_overrides,
    ) -> RunCoordinator:
        settings = make_settings(tmp_path, **settings_overrides)
        db = Database(settings.database_path)
        await db.init()
        bus = EventBus(db)
        return RunCoordinator(
            db,
            bus,
            provider or FakeProvider(),
            repository or annual_report_repository(),
            settings,
            evaluator=evaluator,
        )

    return _factory


@pytest.fixture
async def client(app_factory):
    app, provider, repository = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_provider = provider  # type: ignore[attr-defined]
            http_client.repository = repository  # type: ignore[attr-defined]
            yield http_client
