"""
auth/store.py -- SQLAlchemy Core persistence layer for users and memberships.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_membership are the mappers. Route and dependency code
never touches SQL directly.

The store does not own the engine. It receives the process-wide Database
handle from the app lifespan, so every store shares one connection pool with
one lifecycle.

Security:
  All queries use bound parameters. No f-strings in SQL.

  password_hash never leaves this module except inside the User dataclass;
  api/ serializers pick fields explicitly and never include it.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError

from auth.database import Database, business_users, businesses, to_db_time, users, utcnow
from auth.errors import UserExists
from auth.models import BusinessMembership, User

logger = logging.getLogger("bizpilot.auth.store")


class UserStore:
    """Repository for User, Business and BusinessUser records.

    Usage:
        db = Database("sqlite:///:memory:")
        store = UserStore(db)
        user_id = store.create_user(User(email="a@x.com", password_hash=hash_password("...")))
        user = store.get_by_id(user_id)
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its assigned ID.

        The email UNIQUE constraint is the race guard: when two registrations
        for the same address run concurrently, one insert fails. That failure
        is reported as UserExists, same as the pre-check in the route.
        """
        user_id = user.id or str(uuid.uuid4())
        try:
            with self.db.begin() as conn:
                conn.execute(
                    users.insert().values(
                        id=user_id,
                        email=user.email,
                        password_hash=user.password_hash,
                        provider=user.provider,
                        provider_id=user.provider_id,
                        email_verified=1 if user.email_verified else 0,
                        full_name=user.full_name,
                        created_at=to_db_time(utcnow()),
                    )
                )
        except IntegrityError as exc:
            raise UserExists() from exc
        logger.info("Created user id=%s provider=%s", user_id, user.provider)
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email. Memberships are not loaded."""
        with self.db.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Memberships are not loaded."""
        with self.db.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_active_memberships(self, user_id: str) -> list[BusinessMembership]:
        """Return the user's active memberships in enumeration (insertion) order."""
        with self.db.connect() as conn:
            return self._active_memberships(conn, user_id)

    def _active_memberships(self, conn, user_id: str) -> list[BusinessMembership]:
        rows = conn.execute(
            select(business_users, businesses.c.name.label("business_name"))
            .select_from(business_users.outerjoin(businesses, businesses.c.id == business_users.c.business_id))
            .where(and_(business_users.c.user_id == user_id, business_users.c.is_active == 1))
            .order_by(business_users.c.id)
        ).fetchall()
        return [_row_to_membership(r) for r in rows]

    # ------------------------------------------------------------------
    # OAuth linkage
    # ------------------------------------------------------------------

    def upsert_oauth_user(
        self,
        provider: str,
        provider_id: str,
        email: str,
        email_verified: bool = True,
        full_name: str | None = None,
    ) -> str:
        """Find-or-create the user behind a verified OAuth identity; return its ID.

        Matches by (provider, provider_id) first, then by email, so a provider
        identity already linked to one account never resolves to another
        account that happens to share the email. A matched record is
        relinked to this provider and refreshed only when something differs,
        so a returning user costs one read. Callers must have confirmed the
        provider verified the email before calling this [H1].
        """
        with self.db.begin() as conn:
            row = conn.execute(
                users.select().where(and_(users.c.provider == provider, users.c.provider_id == provider_id))
            ).fetchone()
            if row is None:
                row = conn.execute(users.select().where(users.c.email == email)).fetchone()

            if row is None:
                user_id = str(uuid.uuid4())
                conn.execute(
                    users.insert().values(
                        id=user_id,
                        email=email,
                        provider=provider,
                        provider_id=provider_id,
                        email_verified=1 if email_verified else 0,
                        full_name=full_name or email,
                        created_at=to_db_time(utcnow()),
                    )
                )
                logger.info("Created user id=%s via %s OAuth", user_id, provider)
                return user_id

            existing = _row_to_user(row)
            wanted_name = full_name or existing.full_name
            if (
                existing.provider != provider
                or existing.provider_id != provider_id
                or existing.email_verified != email_verified
                or existing.full_name != wanted_name
            ):
                conn.execute(
                    users.update()
                    .where(users.c.id == existing.id)
                    .values(
                        provider=provider,
                        provider_id=provider_id,
                        email_verified=1 if email_verified else 0,
                        full_name=wanted_name,
                    )
                )
                logger.info("Linked user id=%s to %s OAuth identity", existing.id, provider)
            return existing.id

    # ------------------------------------------------------------------
    # Businesses and memberships
    #
    # Membership management belongs to the business CRUD collaborator; these
    # writes exist so seed scripts and tests can build role contexts.
    # ------------------------------------------------------------------

    def create_business(self, name: str) -> str:
        business_id = str(uuid.uuid4())
        with self.db.begin() as conn:
            conn.execute(businesses.insert().values(id=business_id, name=name, created_at=to_db_time(utcnow())))
        return business_id

    def add_membership(self, user_id: str, business_id: str, role: str, is_active: bool = True) -> int:
        """Link a user to a business with a role. Returns the membership ID."""
        with self.db.begin() as conn:
            result = conn.execute(
                business_users.insert().values(
                    user_id=user_id,
                    business_id=business_id,
                    role=role,
                    is_active=1 if is_active else 0,
                    created_at=to_db_time(utcnow()),
                )
            )
        return result.inserted_primary_key[0]

    def set_membership_active(self, membership_id: int, is_active: bool) -> bool:
        """Activate or deactivate a membership. Returns True if a row was updated."""
        with self.db.begin() as conn:
            result = conn.execute(
                business_users.update()
                .where(business_users.c.id == membership_id)
                .values(is_active=1 if is_active else 0)
            )
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Remove a user row. Used by maintenance scripts and tests only.

        Outstanding access tokens for the user stop working on the next
        request (USER_NOT_FOUND); refresh tokens are left for the janitor.
        """
        with self.db.begin() as conn:
            result = conn.execute(users.delete().where(users.c.id == user_id))
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        provider=row.provider,
        provider_id=row.provider_id,
        email_verified=bool(row.email_verified),
        full_name=row.full_name,
        created_at=row.created_at,
    )


def _row_to_membership(row) -> BusinessMembership:
    return BusinessMembership(
        id=row.id,
        user_id=row.user_id,
        business_id=row.business_id,
        role=row.role,
        is_active=bool(row.is_active),
        business_name=row.business_name or "",
        created_at=row.created_at,
    )
