"""
Membership and visibility authority.

Answers who may see whose data. Membership gates every group-scoped
operation; the visibility flag only hides a member from live updates and
the current-positions view, never from history or statistics.
"""

import logging
from typing import List, Optional

from famtracker.errors.exceptions import not_group_member
from famtracker.models import Membership
from famtracker.storage.repositories import MembershipRepository
from famtracker.telemetry.service import TelemetryService

logger = logging.getLogger(__name__)


class MembershipAuthority:
    def __init__(self, repository: MembershipRepository, telemetry: Optional[TelemetryService] = None):
        self.repository = repository
        self.telemetry = telemetry

    async def is_member(self, user_id: str, group_id: str) -> bool:
        return await self.repository.get(group_id, user_id) is not None

    async def require_member(self, user_id: str, group_id: str) -> Membership:
        """Return the membership or raise AuthorizationError."""
        membership = await self.repository.get(group_id, user_id)
        if membership is None:
            raise not_group_member(user_id, group_id)
        return membership

    async def can_view(self, requester_id: str, subject_id: str) -> bool:
        """True for oneself, or when the two users share at least one group."""
        if requester_id == subject_id:
            return True
        requester_groups = set(await self.list_groups(requester_id))
        if not requester_groups:
            return False
        subject_groups = set(await self.list_groups(subject_id))
        return not requester_groups.isdisjoint(subject_groups)

    async def is_visible_for_broadcast(self, subject_id: str, group_id: str) -> bool:
        """True only if the subject is a member of this group with visibility on."""
        membership = await self.repository.get(group_id, subject_id)
        return membership is not None and membership.is_visible

    async def list_groups(self, user_id: str) -> List[str]:
        memberships = await self.repository.list_for_user(user_id)
        return [m.group_id for m in memberships]

    async def list_members(self, requester_id: str, group_id: str) -> List[Membership]:
        """Members of a group, visible to any member of it."""
        await self.require_member(requester_id, group_id)
        return await self.repository.list_for_group(group_id)

    async def set_visibility(self, user_id: str, group_id: str, is_visible: bool) -> Membership:
        """
        Change the caller's own visibility flag in one group.

        Raises:
            AuthorizationError: If the caller is not a member of the group
        """
        updated = await self.repository.set_visibility(group_id, user_id, is_visible)
        if updated is None:
            raise not_group_member(user_id, group_id)

        if self.telemetry:
            self.telemetry.log_audit_event(
                event_type="visibility_change",
                user_id=user_id,
                resource_type="membership",
                resource_id=updated.document_id,
                action="update",
                details={"group_id": group_id, "is_visible": is_visible},
            )
        logger.info(
            "Visibility updated",
            extra={"extra_data": {"user_id": user_id, "group_id": group_id, "is_visible": is_visible}}
        )
        return updated
