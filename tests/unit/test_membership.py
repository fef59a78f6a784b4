"""
Unit tests for MembershipAuthority.

Fixture families: G = {alice, bob}, H = {carol, bob}; dave is in no family.
"""

import pytest

from famtracker.errors.codes import ErrorCode
from famtracker.errors.exceptions import AuthorizationError


class TestMembershipChecks:
    async def test_is_member(self, membership):
        assert await membership.is_member("alice", "G")
        assert not await membership.is_member("carol", "G")
        assert not await membership.is_member("dave", "G")

    async def test_require_member_returns_membership(self, membership):
        result = await membership.require_member("bob", "H")

        assert result.group_id == "H"
        assert result.user_id == "bob"

    async def test_require_member_rejects_outsider(self, membership):
        with pytest.raises(AuthorizationError) as exc_info:
            await membership.require_member("dave", "G")

        assert exc_info.value.error_code == ErrorCode.NOT_GROUP_MEMBER
        assert exc_info.value.status_code == 403
        assert exc_info.value.details == {"user_id": "dave", "group_id": "G"}

    async def test_list_groups(self, membership):
        assert sorted(await membership.list_groups("bob")) == ["G", "H"]
        assert await membership.list_groups("dave") == []


class TestCanView:
    async def test_self_is_always_viewable(self, membership):
        assert await membership.can_view("dave", "dave")

    async def test_shared_group(self, membership):
        assert await membership.can_view("alice", "bob")
        assert await membership.can_view("carol", "bob")

    async def test_no_shared_group(self, membership):
        # alice and carol only meet through bob; that is not a shared group
        assert not await membership.can_view("alice", "carol")

    async def test_outsider_sees_nobody(self, membership):
        assert not await membership.can_view("dave", "alice")
        assert not await membership.can_view("alice", "dave")

    async def test_hidden_member_still_viewable(self, membership, membership_repo):
        membership_repo.add("G", "bob", is_visible=False)

        assert await membership.can_view("alice", "bob")


class TestVisibility:
    async def test_visible_for_broadcast(self, membership, membership_repo):
        assert await membership.is_visible_for_broadcast("bob", "G")

        membership_repo.add("G", "bob", is_visible=False)

        assert not await membership.is_visible_for_broadcast("bob", "G")
        # Visibility is per membership; bob is still visible in H
        assert await membership.is_visible_for_broadcast("bob", "H")

    async def test_non_member_is_never_broadcast(self, membership):
        assert not await membership.is_visible_for_broadcast("carol", "G")

    async def test_set_visibility_updates_and_audits(self, membership, membership_repo):
        updated = await membership.set_visibility("bob", "G", False)

        assert updated.is_visible is False
        assert (await membership_repo.get("G", "bob")).is_visible is False
        membership.telemetry.log_audit_event.assert_called_once()
        audit = membership.telemetry.log_audit_event.call_args.kwargs
        assert audit["event_type"] == "visibility_change"
        assert audit["user_id"] == "bob"
        assert audit["resource_id"] == "G:bob"
        assert audit["details"] == {"group_id": "G", "is_visible": False}

    async def test_set_visibility_rejects_non_member(self, membership):
        with pytest.raises(AuthorizationError):
            await membership.set_visibility("dave", "G", False)

        membership.telemetry.log_audit_event.assert_not_called()


class TestListMembers:
    async def test_member_lists_group(self, membership):
        members = await membership.list_members("alice", "G")

        assert sorted(m.user_id for m in members) == ["alice", "bob"]

    async def test_outsider_cannot_list(self, membership):
        with pytest.raises(AuthorizationError):
            await membership.list_members("carol", "G")
