from famtracker.membership.authority import MembershipAuthority

__all__ = ["MembershipAuthority"]
