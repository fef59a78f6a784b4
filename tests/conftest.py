"""
Shared pytest fixtures and configuration for all tests.

Repositories and the Elasticsearch handle are replaced by the in-memory
fakes in ``fakes.py``, so services and the HTTP surface can be exercised
without a cluster.
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# Hypothesis configuration for property-based testing
from hypothesis import settings as hypothesis_settings, Verbosity, Phase

from famtracker.broadcast.channels import Broadcaster
from famtracker.config.settings import Settings
from famtracker.membership.authority import MembershipAuthority
from famtracker.models import MemberRole, PositionReport, utc_now
from famtracker.roads.index import RoadNetworkIndex

from fakes import (
    NEAR_MAIN_ST,
    SAMPLE_SEGMENTS,
    FakeElasticsearchService,
    FakeMembershipRepository,
    FakeReportRepository,
    FakeRoadRepository,
    RecordingSession,
    make_settings,
)

# Default profile: balanced for local development
hypothesis_settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,  # Disable deadline for async tests
    print_blob=True,
)

# CI profile: more thorough testing for continuous integration
hypothesis_settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    derandomize=True,
)

# Debug profile: minimal examples for quick debugging
hypothesis_settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    phases=[Phase.explicit, Phase.reuse, Phase.generate],  # Skip shrinking
)

# Fast profile: quick smoke tests
hypothesis_settings.register_profile(
    "fast",
    max_examples=20,
    verbosity=Verbosity.normal,
    deadline=None,
)

hypothesis_settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def app_settings() -> Settings:
    return make_settings()


@pytest.fixture
def report_repo() -> FakeReportRepository:
    return FakeReportRepository()


@pytest.fixture
def membership_repo() -> FakeMembershipRepository:
    repo = FakeMembershipRepository()
    # Family G: alice and bob. Family H: carol and bob. dave belongs nowhere.
    repo.add("G", "alice", role=MemberRole.ADMIN)
    repo.add("G", "bob")
    repo.add("H", "carol", role=MemberRole.ADMIN)
    repo.add("H", "bob")
    return repo


@pytest.fixture
def road_repo() -> FakeRoadRepository:
    return FakeRoadRepository()


@pytest.fixture
def fake_es() -> FakeElasticsearchService:
    return FakeElasticsearchService()


@pytest.fixture
def membership(membership_repo) -> MembershipAuthority:
    return MembershipAuthority(membership_repo, telemetry=MagicMock())


@pytest.fixture
def road_index() -> RoadNetworkIndex:
    index = RoadNetworkIndex(default_radius_m=20.0, ready_timeout_seconds=0.0)
    index.rebuild(SAMPLE_SEGMENTS)
    return index


@pytest.fixture
async def broadcaster(membership):
    broadcaster = Broadcaster(membership, buffer_size=8, send_timeout_seconds=0.5)
    yield broadcaster
    await broadcaster.shutdown()


@pytest.fixture
def session_factory() -> Callable[..., RecordingSession]:
    return RecordingSession


@pytest.fixture
def make_report() -> Callable[..., PositionReport]:
    counter = iter(range(1, 1_000_000))

    def _make(
        user_id: str = "alice",
        group_id: str = "G",
        age: timedelta = timedelta(0),
        speed: Optional[float] = None,
        speed_limit: Optional[float] = None,
        latitude: float = NEAR_MAIN_ST[0],
        longitude: float = NEAR_MAIN_ST[1],
        timestamp: Optional[datetime] = None,
    ) -> PositionReport:
        overspeed = None
        if speed is not None and speed_limit is not None and speed > speed_limit:
            overspeed = speed - speed_limit
        return PositionReport(
            id=f"report-{next(counter)}",
            user_id=user_id,
            group_id=group_id,
            latitude=latitude,
            longitude=longitude,
            speed=speed,
            timestamp=timestamp or (utc_now() - age),
            matched_road_id=1 if speed_limit is not None else None,
            matched_road_name="Main St" if speed_limit is not None else None,
            matched_speed_limit=speed_limit,
            overspeed=overspeed,
        )

    return _make


@pytest.fixture
def mock_es_service() -> MagicMock:
    """Mock ElasticsearchService for repository tests."""
    mock = MagicMock()
    mock.index_document = AsyncMock(return_value=None)
    mock.update_document = AsyncMock(return_value=None)
    mock.get_document = AsyncMock(return_value=None)
    mock.search_documents = AsyncMock(return_value={"hits": {"hits": [], "total": {"value": 0}}})
    return mock


@pytest.fixture
def fixed_time() -> datetime:
    return datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
