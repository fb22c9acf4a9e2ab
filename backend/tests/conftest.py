import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from typing import Any, Callable

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from bloom.core.settings import HalaxyConfig, Settings
from bloom.db.session import build_engine
from bloom.models import Base
from bloom.services.halaxy.client import HalaxyClient, create_halaxy_session, reset_halaxy_client
from halaxy_fakes import BASE_URL, TOKEN_URL, FakeHalaxy, make_config


@pytest.fixture()
def fake_halaxy() -> FakeHalaxy:
    return FakeHalaxy()


@pytest.fixture()
def make_halaxy_client(fake_halaxy) -> Callable[..., HalaxyClient]:
    created: list[HalaxyClient] = []

    def factory(config: HalaxyConfig | None = None, **session_options: Any) -> HalaxyClient:
        config = config or make_config()
        session_options.setdefault("sleep", lambda seconds: None)
        session = create_halaxy_session(
            config, transport=httpx.MockTransport(fake_halaxy.handler), **session_options
        )
        client = HalaxyClient(config, session)
        created.append(client)
        return client

    yield factory
    for client in created:
        client.close()


@pytest.fixture()
def halaxy_client(make_halaxy_client) -> HalaxyClient:
    return make_halaxy_client()


@pytest.fixture()
def app_settings() -> Settings:
    return Settings(
        _env_file=None,
        halaxy_client_id="client-id",
        halaxy_client_secret="client-secret",
        halaxy_api_url=BASE_URL,
        halaxy_token_url=TOKEN_URL,
    )


@pytest.fixture()
def db_session():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def api_client(db_session, halaxy_client, app_settings):
    from fastapi.testclient import TestClient

    from bloom.db.session import get_db
    from bloom.main import app
    from bloom.routers.halaxy import get_app_settings, get_client

    def override_db():
        yield db_session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_app_settings] = lambda: app_settings
    app.dependency_overrides[get_client] = lambda: halaxy_client
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _reset_client_singleton():
    yield
    reset_halaxy_client()
