"""Shared fixtures: an isolated SQLite database per test, a fake workflow engine
and a clock the tests can move."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from core.config import Settings
from helpers import FakeClock, FakeDispatcher, make_settings
from main import build_services, create_app


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def services(settings, dispatcher, clock):
    built, setup_db = build_services(settings, dispatcher, clock)
    setup_db()
    return built


@pytest.fixture
def meter(services):
    return services.meter


@pytest.fixture
def scripts(services):
    return services.scripts


@pytest.fixture
def client(settings, dispatcher, clock):
    app = create_app(settings, dispatcher=dispatcher, clock=clock)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def user_headers() -> dict:
    return {"X-User-Id": "user-1"}
