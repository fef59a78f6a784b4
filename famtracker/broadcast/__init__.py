"""
Live fan-out of position updates to family members.
"""

from famtracker.broadcast.channels import (
    POSITION_UPDATE_EVENT,
    Broadcaster,
    GroupChannel,
    Subscription,
    position_update_event,
)

__all__ = [
    "POSITION_UPDATE_EVENT",
    "Broadcaster",
    "GroupChannel",
    "Subscription",
    "position_update_event",
]
