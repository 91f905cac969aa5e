"""
auth/roles.py -- Role context derived from business memberships.

A role context is two parallel lists: roles[i] is the user's role in
business_ids[i]. Only active memberships count. Order follows membership
enumeration order; nothing is sorted or deduplicated, so a user who is
"owner" in two businesses carries "owner" twice.

The context is computed in two places with different freshness:
  - at issuance, where it is frozen into the access token (a snapshot that can
    go stale for at most the access-token TTL);
  - on every authenticated request, where AccessVerifier recomputes it from
    live memberships and ignores the token's copy.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from auth.models import BusinessMembership, RoleContext, User

if TYPE_CHECKING:
    from auth.store import UserStore


def resolve_role_context(memberships: Iterable[BusinessMembership]) -> RoleContext:
    """Map active memberships to parallel role / business-id lists."""
    roles: list[str] = []
    business_ids: list[str] = []
    for membership in memberships:
        if not membership.is_active:
            continue
        roles.append(membership.role)
        business_ids.append(membership.business_id)
    return RoleContext(roles=roles, business_ids=business_ids)


class RoleContextResolver:
    """Reads a user's current memberships from the store and resolves them."""

    def __init__(self, user_store: UserStore) -> None:
        self.user_store = user_store

    def resolve(self, user: User) -> RoleContext:
        memberships = self.user_store.get_active_memberships(user.id)
        user.memberships = memberships
        return resolve_role_context(memberships)
