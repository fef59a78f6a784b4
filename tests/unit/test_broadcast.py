"""
Unit tests for live fan-out.

Fixture families: G = {alice, bob}, H = {carol, bob}; dave is in no family.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from famtracker.broadcast.channels import POSITION_UPDATE_EVENT, Broadcaster, position_update_event
from famtracker.errors.exceptions import AuthorizationError


class TestSubscribe:
    async def test_member_can_subscribe(self, broadcaster, session_factory):
        subscription = await broadcaster.subscribe(session_factory(), "alice", "G")

        assert subscription.group_id == "G"
        assert broadcaster.has_subscribers("G")
        assert broadcaster.stats()["sessions"] == 1

    async def test_non_member_is_refused(self, broadcaster, session_factory):
        with pytest.raises(AuthorizationError):
            await broadcaster.subscribe(session_factory(), "carol", "G")

        assert not broadcaster.has_subscribers("G")

    async def test_close_is_idempotent_and_discards_channel(self, broadcaster, session_factory):
        subscription = await broadcaster.subscribe(session_factory(), "alice", "G")

        await subscription.close()
        await subscription.close()

        assert not broadcaster.has_subscribers("G")
        assert broadcaster.stats()["channels"] == 0


class TestPublish:
    async def test_event_reaches_group_subscribers(self, broadcaster, session_factory, make_report):
        alice_session, bob_session = session_factory(), session_factory()
        await broadcaster.subscribe(alice_session, "alice", "G")
        await broadcaster.subscribe(bob_session, "bob", "G")
        report = make_report(user_id="alice", speed=15.0, speed_limit=13.0)

        assert await broadcaster.publish(report) is True

        for session in (alice_session, bob_session):
            events = await session.wait_for_events(1)
            assert events[0]["type"] == POSITION_UPDATE_EVENT
            assert events[0]["data"]["user_id"] == "alice"
            assert events[0]["data"]["speed_limit"] == 13.0
            assert events[0]["data"]["road_name"] == "Main St"

    async def test_other_groups_are_isolated(self, broadcaster, session_factory, make_report):
        g_session, h_session = session_factory(), session_factory()
        await broadcaster.subscribe(g_session, "alice", "G")
        await broadcaster.subscribe(h_session, "carol", "H")

        # bob is in both families; a report tagged G only goes to G
        await broadcaster.publish(make_report(user_id="bob", group_id="G"))

        await g_session.wait_for_events(1)
        await asyncio.sleep(0.05)
        assert h_session.sent == []

    async def test_hidden_member_is_not_published(
        self, broadcaster, membership_repo, session_factory, make_report
    ):
        session = session_factory()
        await broadcaster.subscribe(session, "alice", "G")
        membership_repo.add("G", "bob", is_visible=False)

        assert await broadcaster.publish(make_report(user_id="bob")) is False

        await asyncio.sleep(0.05)
        assert session.sent == []

    async def test_no_subscribers_queues_nothing(self, broadcaster, make_report):
        assert await broadcaster.publish(make_report()) is False
        assert broadcaster.stats()["pending_events"] == 0

    async def test_events_arrive_in_publish_order(self, broadcaster, session_factory, make_report):
        session = session_factory()
        await broadcaster.subscribe(session, "bob", "G")
        reports = [make_report(user_id="alice", speed=float(i)) for i in range(5)]

        for report in reports:
            await broadcaster.publish(report)

        events = await session.wait_for_events(5)
        assert [e["data"]["id"] for e in events] == [r.id for r in reports]

    async def test_failed_session_is_dropped(self, broadcaster, session_factory, make_report):
        healthy, broken = session_factory(), session_factory(fail=True)
        await broadcaster.subscribe(healthy, "alice", "G")
        broken_subscription = await broadcaster.subscribe(broken, "bob", "G")

        await broadcaster.publish(make_report())
        await healthy.wait_for_events(1)
        await asyncio.sleep(0.01)

        assert broken_subscription.closed
        assert broadcaster.stats()["sessions"] == 1

        await broadcaster.publish(make_report())
        await healthy.wait_for_events(2)

    async def test_slow_session_times_out_without_blocking_others(
        self, membership, session_factory, make_report
    ):
        broadcaster = Broadcaster(membership, buffer_size=8, send_timeout_seconds=0.05)
        fast, slow = session_factory(), session_factory(delay=1.0)
        await broadcaster.subscribe(fast, "alice", "G")
        slow_subscription = await broadcaster.subscribe(slow, "bob", "G")

        await broadcaster.publish(make_report())

        await fast.wait_for_events(1, timeout=0.5)
        await asyncio.sleep(0.1)
        assert slow_subscription.closed
        await broadcaster.shutdown()


class TestBackpressure:
    async def test_full_buffer_drops_oldest(self, membership, session_factory, make_report):
        broadcaster = Broadcaster(membership, buffer_size=2, send_timeout_seconds=1.0)
        session = session_factory()
        await broadcaster.subscribe(session, "bob", "G")
        reports = [make_report(user_id="alice") for _ in range(4)]

        # publish never awaits delivery, so all four land before the pump runs
        for report in reports:
            await broadcaster.publish(report)

        assert broadcaster.stats()["dropped_events"] == 2
        events = await session.wait_for_events(2)
        await asyncio.sleep(0.05)
        assert [e["data"]["id"] for e in session.sent] == [reports[2].id, reports[3].id]
        assert len(events) == 2
        await broadcaster.shutdown()

    async def test_dropped_events_are_counted_in_telemetry(self, membership, session_factory, make_report):
        telemetry = MagicMock()
        broadcaster = Broadcaster(membership, buffer_size=1, telemetry=telemetry)
        await broadcaster.subscribe(session_factory(), "bob", "G")

        await broadcaster.publish(make_report())
        await broadcaster.publish(make_report())

        telemetry.record_metric.assert_called_with("broadcast.dropped_events", 1, tags={"group_id": "G"})
        await broadcaster.shutdown()


class TestShutdown:
    async def test_shutdown_closes_everything(self, broadcaster, session_factory):
        first = await broadcaster.subscribe(session_factory(), "alice", "G")
        second = await broadcaster.subscribe(session_factory(), "carol", "H")

        await broadcaster.shutdown()

        assert first.closed and second.closed
        assert broadcaster.stats() == {
            "channels": 0, "sessions": 0, "pending_events": 0, "dropped_events": 0,
        }


def test_position_update_event_shape(make_report):
    report = make_report(speed=15.0, speed_limit=13.0)

    event = position_update_event(report)

    assert event["type"] == "positionUpdate"
    assert event["data"]["id"] == report.id
    assert event["data"]["timestamp"].startswith(str(report.timestamp.year))
    assert "overspeed" not in event["data"]
