"""
Unit tests for speed statistics.
"""

from datetime import timedelta

import pytest

from famtracker.errors.exceptions import PermissionDeniedError
from famtracker.models import SpeedStats
from famtracker.stats.aggregator import StatisticsAggregator, summarize_reports


@pytest.fixture
def aggregator(report_repo, membership):
    return StatisticsAggregator(report_repo, membership, window_hours=24)


class TestSummarizeReports:
    def test_empty_is_all_zero(self):
        assert summarize_reports([]) == SpeedStats()

    def test_reports_without_speed_are_ignored(self, make_report):
        assert summarize_reports([make_report(), make_report()]) == SpeedStats()

    def test_mixed_reports(self, make_report):
        reports = [
            make_report(speed=10.0, speed_limit=13.0),
            make_report(speed=15.0, speed_limit=13.0),
            make_report(speed=11.0),
            make_report(),
        ]

        stats = summarize_reports(reports)

        assert stats.count == 3
        assert stats.avg_speed == pytest.approx(12.0)
        assert stats.max_speed == 15.0
        assert stats.speeding_count == 1
        assert stats.points_with_limit == 2
        assert stats.avg_overspeed == pytest.approx(2.0)

    def test_speed_equal_to_limit_is_not_speeding(self, make_report):
        stats = summarize_reports([make_report(speed=13.0, speed_limit=13.0)])

        assert stats.speeding_count == 0
        assert stats.avg_overspeed == 0.0


class TestStatisticsAggregator:
    async def test_own_stats_over_trailing_window(self, aggregator, report_repo, make_report):
        report_repo.reports.extend([
            make_report(user_id="alice", speed=10.0, speed_limit=13.0, age=timedelta(hours=1)),
            make_report(user_id="alice", speed=15.0, speed_limit=13.0, age=timedelta(hours=2)),
            make_report(user_id="alice", speed=11.0, age=timedelta(hours=3)),
            # Outside the 24 hour window
            make_report(user_id="alice", speed=40.0, speed_limit=13.0, age=timedelta(hours=30)),
            make_report(user_id="bob", speed=50.0, speed_limit=13.0),
        ])

        response = await aggregator.stats("alice", "alice")

        assert response.user_id == "alice"
        assert response.window_hours == 24
        assert response.stats.count == 3
        assert response.stats.avg_speed == pytest.approx(12.0)
        assert response.stats.max_speed == 15.0
        assert response.stats.speeding_count == 1
        assert response.stats.points_with_limit == 2
        assert response.stats.avg_overspeed == pytest.approx(2.0)

    async def test_no_data_is_all_zero(self, aggregator):
        response = await aggregator.stats("alice", "bob")

        assert response.stats == SpeedStats()

    async def test_custom_window(self, aggregator, report_repo, make_report):
        report_repo.reports.extend([
            make_report(user_id="bob", speed=10.0, age=timedelta(minutes=10)),
            make_report(user_id="bob", speed=20.0, age=timedelta(hours=2)),
        ])

        response = await aggregator.stats("alice", "bob", window=timedelta(hours=1))

        assert response.window_hours == 1
        assert response.stats.count == 1
        assert response.stats.max_speed == 10.0

    async def test_unrelated_requester_is_denied(self, aggregator):
        with pytest.raises(PermissionDeniedError):
            await aggregator.stats("dave", "alice")

    async def test_stats_include_hidden_members(self, aggregator, report_repo, membership_repo, make_report):
        membership_repo.add("G", "bob", is_visible=False)
        report_repo.reports.append(make_report(user_id="bob", speed=9.0))

        response = await aggregator.stats("alice", "bob")

        assert response.stats.count == 1
