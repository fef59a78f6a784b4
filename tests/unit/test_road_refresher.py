"""
Unit tests for the background road index refresher.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from famtracker.resilience.retry import RetryConfig
from famtracker.roads.index import RoadNetworkIndex
from famtracker.roads.refresher import RoadIndexRefresher

from fakes import MAIN_ST, NEAR_MAIN_ST, OAK_AVE, FakeRoadRepository

NO_WAIT = RetryConfig(max_attempts=2, initial_delay=0.0)


@pytest.fixture
def index():
    return RoadNetworkIndex(ready_timeout_seconds=0.0)


class TestRefreshOnce:
    async def test_loads_segments_and_installs_snapshot(self, index, road_repo):
        telemetry = MagicMock()
        refresher = RoadIndexRefresher(index, road_repo, interval_seconds=3600, telemetry=telemetry,
                                       retry_config=NO_WAIT)

        assert await refresher.refresh_once() is True

        assert index.ready
        assert len(index.snapshot) == 2
        metric_names = [call.args[0] for call in telemetry.record_metric.call_args_list]
        assert "road_index.refresh_duration_ms" in metric_names
        assert "road_index.segment_count" in metric_names

    async def test_transient_failure_is_retried(self, index, road_repo):
        road_repo.failures_remaining = 1
        refresher = RoadIndexRefresher(index, road_repo, interval_seconds=3600, retry_config=NO_WAIT)

        assert await refresher.refresh_once() is True
        assert road_repo.load_calls == 2

    async def test_failed_refresh_keeps_previous_snapshot(self, index):
        repo = FakeRoadRepository([MAIN_ST])
        refresher = RoadIndexRefresher(index, repo, interval_seconds=3600, retry_config=NO_WAIT)
        await refresher.refresh_once()
        previous = index.snapshot

        repo.segments = [OAK_AVE]
        repo.failures_remaining = 5
        assert await refresher.refresh_once() is False

        assert index.snapshot is previous
        assert (await index.nearest(*NEAR_MAIN_ST)).segment_id == MAIN_ST.segment_id

    async def test_failed_first_load_leaves_index_not_ready(self, index, road_repo):
        road_repo.failures_remaining = 5
        refresher = RoadIndexRefresher(index, road_repo, interval_seconds=3600, retry_config=NO_WAIT)

        assert await refresher.refresh_once() is False
        assert not index.ready
        assert await index.nearest(*NEAR_MAIN_ST) is None


class TestRefresherLifecycle:
    async def test_start_loads_in_background_and_stop_cancels(self, index, road_repo):
        refresher = RoadIndexRefresher(index, road_repo, interval_seconds=3600, retry_config=NO_WAIT)

        refresher.start()
        assert await index.wait_ready(timeout=1.0)
        await refresher.stop()

        assert refresher._task is None

    async def test_start_is_idempotent(self, index, road_repo):
        refresher = RoadIndexRefresher(index, road_repo, interval_seconds=3600, retry_config=NO_WAIT)

        refresher.start()
        first = refresher._task
        refresher.start()

        assert refresher._task is first
        await refresher.stop()

    async def test_stop_without_start(self, index, road_repo):
        refresher = RoadIndexRefresher(index, road_repo, interval_seconds=3600)

        await refresher.stop()

    async def test_rebuilds_periodically(self, index, road_repo):
        refresher = RoadIndexRefresher(index, road_repo, interval_seconds=0.01, retry_config=NO_WAIT)

        refresher.start()
        await asyncio.sleep(0.1)
        await refresher.stop()

        assert road_repo.load_calls >= 2
