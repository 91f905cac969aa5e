"""
auth/sessions.py -- Session issuer: codec + refresh store + role resolver.

SessionIssuer is the one place that turns "this user is authenticated" into a
token pair. Login, registration, OAuth login and refresh all go through it, so
the claim shape and the refresh-token bookkeeping cannot drift between flows.

Atomicity from the caller's perspective: the access token is signed first
(pure, cannot fail on I/O), then the refresh token is persisted. If that
persistence raises, the exception propagates and no TokenPair exists -- the
signed access token is dropped on the floor and never reaches a client.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.errors import UserNotFound
from auth.models import TokenPair, User
from auth.refresh_store import RefreshTokenStore
from auth.roles import RoleContextResolver
from auth.store import UserStore
from auth.tokens import AccessTokenCodec

logger = logging.getLogger("bizpilot.auth.sessions")


class SessionIssuer:
    def __init__(
        self,
        user_store: UserStore,
        refresh_store: RefreshTokenStore,
        codec: AccessTokenCodec,
        resolver: RoleContextResolver,
    ) -> None:
        self.user_store = user_store
        self.refresh_store = refresh_store
        self.codec = codec
        self.resolver = resolver

    def issue_token_pair(self, user_id: str, user: User | None = None) -> TokenPair:
        """Sign an access token and issue a refresh token for one user.

        user may be passed when the caller already loaded it; its memberships
        are re-read either way so the role snapshot is current.

        Raises UserNotFound if user_id does not exist.
        """
        if user is None:
            user = self.user_store.get_by_id(user_id)
            if user is None:
                raise UserNotFound()

        context = self.resolver.resolve(user)
        access_token = self.codec.sign(user.id, context.roles, context.business_ids)
        issued = self.refresh_store.issue(user.id)

        return TokenPair(
            user=user,
            access_token=access_token,
            refresh_token=issued.raw_token,
            refresh_expires_at=issued.expires_at,
            refresh_token_id=issued.record_id,
        )

    def refresh(self, raw_refresh_token: str) -> TokenPair:
        """Rotate a refresh token and reissue both tokens.

        Raises InvalidRefreshToken if the token is not currently valid, and
        UserNotFound if its owner has since been removed. In the latter case
        the presented token has already been revoked by the rotation.
        """
        rotation = self.refresh_store.rotate(raw_refresh_token)
        user = self.user_store.get_by_id(rotation.old_record.user_id)
        if user is None:
            self.refresh_store.revoke_by_id(rotation.new_record_id)
            raise UserNotFound()

        context = self.resolver.resolve(user)
        access_token = self.codec.sign(user.id, context.roles, context.business_ids)
        return TokenPair(
            user=user,
            access_token=access_token,
            refresh_token=rotation.new_raw_token,
            refresh_expires_at=rotation.new_expires_at,
            refresh_token_id=rotation.new_record_id,
        )

    def revoke(self, raw_refresh_token: str) -> None:
        """End one session. Idempotent."""
        self.refresh_store.revoke_by_raw_token(raw_refresh_token)

    def revoke_all(self, user_id: str) -> int:
        """End every session of a user. Returns how many were still open."""
        open_ids = [record.id for record in self.refresh_store.list_active_for_user(user_id)]
        count = self.refresh_store.revoke_all_for_user(user_id)
        logger.info(
            "Logout-everywhere for user=%s (%d session(s) closed, records=%s)",
            user_id,
            count,
            ",".join(open_ids) or "-",
        )
        return count
