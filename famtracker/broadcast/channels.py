"""
Live fan-out of position updates to subscribed sessions.

Each group has one GroupChannel holding its sessions and a bounded buffer
of undelivered events. A single pump task per channel drains the buffer in
order and sends each event to every session concurrently. When the buffer
is full the oldest event is dropped; delivery is at-most-once.

A session is anything with an ``async send_json(data)`` method, normally
a FastAPI WebSocket.
"""

import asyncio
import itertools
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from famtracker.membership.authority import MembershipAuthority
from famtracker.models import EnrichedReport, PositionReport
from famtracker.telemetry.service import TelemetryService

logger = logging.getLogger(__name__)

POSITION_UPDATE_EVENT = "positionUpdate"

_subscription_ids = itertools.count(1)


def position_update_event(report: PositionReport) -> Dict[str, Any]:
    return {
        "type": POSITION_UPDATE_EVENT,
        "data": EnrichedReport.from_report(report).model_dump(mode="json"),
    }


class Subscription:
    """Handle for one session's membership in a group channel."""

    def __init__(self, broadcaster: "Broadcaster", group_id: str, user_id: str, session: Any):
        self.id = next(_subscription_ids)
        self.group_id = group_id
        self.user_id = user_id
        self.session = session
        self._broadcaster = broadcaster
        self.closed = False

    async def close(self) -> None:
        """Leave the channel. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        self._broadcaster._unsubscribe(self)

    def __repr__(self) -> str:
        return f"Subscription(id={self.id}, group_id={self.group_id!r}, user_id={self.user_id!r})"


class GroupChannel:
    def __init__(
        self,
        group_id: str,
        buffer_size: int,
        send_timeout_seconds: float,
        on_empty: Callable[["GroupChannel"], None],
    ):
        self.group_id = group_id
        self.send_timeout_seconds = send_timeout_seconds
        self.subscriptions: Dict[int, Subscription] = {}
        self.dropped_events = 0
        self._buffer: Deque[Dict[str, Any]] = deque(maxlen=buffer_size)
        self._wakeup = asyncio.Event()
        self._pump: Optional[asyncio.Task] = None
        self._on_empty = on_empty

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def add(self, subscription: Subscription) -> None:
        self.subscriptions[subscription.id] = subscription
        if self._pump is None or self._pump.done():
            self._pump = asyncio.create_task(self._run(), name=f"broadcast-pump:{self.group_id}")

    def remove(self, subscription: Subscription) -> None:
        self.subscriptions.pop(subscription.id, None)
        if not self.subscriptions:
            self.stop()

    def enqueue(self, event: Dict[str, Any]) -> bool:
        """Buffer an event for delivery. Returns False if the oldest event was dropped."""
        overflow = len(self._buffer) == self._buffer.maxlen
        if overflow:
            self.dropped_events += 1
            logger.debug(
                "Broadcast buffer full, dropping oldest event",
                extra={"extra_data": {"group_id": self.group_id, "dropped_events": self.dropped_events}}
            )
        self._buffer.append(event)
        self._wakeup.set()
        return not overflow

    def stop(self) -> None:
        if self._pump is not None and not self._pump.done():
            self._pump.cancel()
        self._buffer.clear()

    async def _run(self) -> None:
        while self.subscriptions:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._buffer and self.subscriptions:
                await self._deliver(self._buffer.popleft())
        self._on_empty(self)

    async def _send(self, subscription: Subscription, event: Dict[str, Any]) -> None:
        await asyncio.wait_for(subscription.session.send_json(event), timeout=self.send_timeout_seconds)

    async def _deliver(self, event: Dict[str, Any]) -> None:
        targets = list(self.subscriptions.values())
        results = await asyncio.gather(
            *(self._send(subscription, event) for subscription in targets),
            return_exceptions=True,
        )

        failed: List[Subscription] = [
            subscription for subscription, result in zip(targets, results)
            if isinstance(result, BaseException)
        ]
        for subscription in failed:
            self.subscriptions.pop(subscription.id, None)
            subscription.closed = True
        if failed:
            logger.info(
                "Dropped unreachable live sessions",
                extra={"extra_data": {
                    "group_id": self.group_id,
                    "removed_count": len(failed),
                    "remaining_sessions": len(self.subscriptions),
                }}
            )


class Broadcaster:
    """
    Registry of group channels.

    ``publish`` is only called by the ingestion pipeline after a report has
    been persisted; there is no client-driven publish path.
    """

    def __init__(
        self,
        membership: MembershipAuthority,
        buffer_size: int = 256,
        send_timeout_seconds: float = 5.0,
        telemetry: Optional[TelemetryService] = None,
    ):
        self.membership = membership
        self.buffer_size = buffer_size
        self.send_timeout_seconds = send_timeout_seconds
        self.telemetry = telemetry
        self._channels: Dict[str, GroupChannel] = {}

    async def subscribe(self, session: Any, requester_id: str, group_id: str) -> Subscription:
        """
        Attach a session to a group's live updates.

        Raises:
            AuthorizationError: If the requester is not a member of the group
        """
        await self.membership.require_member(requester_id, group_id)

        channel = self._channels.get(group_id)
        if channel is None:
            channel = GroupChannel(group_id, self.buffer_size, self.send_timeout_seconds, self._discard_channel)
            self._channels[group_id] = channel

        subscription = Subscription(self, group_id, requester_id, session)
        channel.add(subscription)

        logger.info(
            "Live session subscribed",
            extra={"extra_data": {
                "group_id": group_id,
                "user_id": requester_id,
                "channel_sessions": len(channel.subscriptions),
            }}
        )
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        channel = self._channels.get(subscription.group_id)
        if channel is None:
            return
        channel.remove(subscription)
        if not channel.subscriptions:
            self._discard_channel(channel)
        logger.info(
            "Live session unsubscribed",
            extra={"extra_data": {
                "group_id": subscription.group_id,
                "user_id": subscription.user_id,
                "channel_sessions": len(channel.subscriptions),
            }}
        )

    def _discard_channel(self, channel: GroupChannel) -> None:
        if not channel.subscriptions and self._channels.get(channel.group_id) is channel:
            del self._channels[channel.group_id]

    def has_subscribers(self, group_id: str) -> bool:
        channel = self._channels.get(group_id)
        return channel is not None and bool(channel.subscriptions)

    async def publish(self, report: PositionReport) -> bool:
        """
        Queue a positionUpdate for the report's group.

        Returns True if an event was queued. Nothing is queued when nobody
        is listening or the subject has hidden themselves in that group.
        Never waits for delivery.
        """
        if not self.has_subscribers(report.group_id):
            return False

        if not await self.membership.is_visible_for_broadcast(report.user_id, report.group_id):
            logger.debug(
                "Subject hidden from live updates",
                extra={"extra_data": {"user_id": report.user_id, "group_id": report.group_id}}
            )
            return False

        channel = self._channels.get(report.group_id)
        if channel is None or not channel.subscriptions:
            return False

        if not channel.enqueue(position_update_event(report)) and self.telemetry:
            self.telemetry.record_metric(
                "broadcast.dropped_events", 1, tags={"group_id": report.group_id}
            )
        return True

    async def shutdown(self) -> None:
        """Stop every pump and forget every session."""
        channels = list(self._channels.values())
        self._channels.clear()
        pumps = []
        for channel in channels:
            for subscription in channel.subscriptions.values():
                subscription.closed = True
            channel.subscriptions.clear()
            channel.stop()
            if channel._pump is not None:
                pumps.append(channel._pump)
        await asyncio.gather(*pumps, return_exceptions=True)
        logger.info(
            "Broadcaster shut down",
            extra={"extra_data": {"channels_closed": len(channels)}}
        )

    def stats(self) -> Dict[str, Any]:
        return {
            "channels": len(self._channels),
            "sessions": sum(len(c.subscriptions) for c in self._channels.values()),
            "pending_events": sum(c.pending for c in self._channels.values()),
            "dropped_events": sum(c.dropped_events for c in self._channels.values()),
        }
