"""
Integration test configuration and fixtures.

The full FastAPI application runs in-process through TestClient, backed by
a ServiceContainer whose repositories are the in-memory fakes. The
lifespan runs, so the road index loads exactly as it does in production.
"""
from typing import Generator
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from famtracker.container import ServiceContainer
from famtracker.main import create_app
from famtracker.middleware.rate_limiter import limiter

from fakes import make_settings


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Limits are kept per process; start every test with empty counters."""
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def container(app_settings, fake_es, report_repo, membership_repo, road_repo) -> ServiceContainer:
    return ServiceContainer(
        app_settings,
        es_service=fake_es,
        telemetry=MagicMock(),
        reports=report_repo,
        memberships=membership_repo,
        roads=road_repo,
    )


def _running_client(container: ServiceContainer) -> Generator[TestClient, None, None]:
    with TestClient(create_app(container=container)) as client:
        client.portal.call(container.road_index.wait_ready, 2.0)
        yield client


@pytest.fixture
def client(container) -> Generator[TestClient, None, None]:
    yield from _running_client(container)


@pytest.fixture
def limited_client(fake_es, report_repo, membership_repo, road_repo) -> Generator[TestClient, None, None]:
    """Client whose position endpoint allows two submissions per minute."""
    container = ServiceContainer(
        make_settings(rate_limit_location_requests_per_minute=2),
        es_service=fake_es,
        telemetry=MagicMock(),
        reports=report_repo,
        memberships=membership_repo,
        roads=road_repo,
    )
    yield from _running_client(container)
