"""
auth/refresh_store.py -- Persistent, hashed, single-use refresh tokens.

Pattern: Repository + Data Mapper over the refresh_tokens table, sharing the
injected Database handle with UserStore.

Invariants this module maintains:
  - One row per issued raw token. The raw token is returned exactly once and
    only its SHA-256 digest is stored.
  - A row is valid iff revoked_at IS NULL AND expires_at > now. Every query
    that accepts a token spells out both conditions in SQL.
  - Revocation is monotonic. Every UPDATE that writes revoked_at is guarded by
    revoked_at IS NULL, and no statement ever clears it.
  - Rotation never edits a hash. It revokes the presented row and inserts a
    successor in one transaction.

Rotation race:
  rotate() does NOT read-then-update. It issues a single compare-and-swap
  UPDATE ... WHERE token_hash = :h AND revoked_at IS NULL AND expires_at > :now
  and checks rowcount. The database serializes writers on that row, so when
  two requests rotate the same raw token at once exactly one UPDATE matches;
  the other sees rowcount 0 and raises InvalidRefreshToken. On SQLite the
  writer lock does the serializing; on Postgres the row lock taken by UPDATE
  re-evaluates the WHERE clause after the first writer commits.

  A rowcount of 0 for a hash that *does* exist but is already revoked means a
  rotated-out token came back. That is logged as a possible replay. Whether it
  should also revoke the whole lineage is a product decision; for now only the
  single-use guarantee is enforced.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import and_

from auth.database import Database, from_db_time, refresh_tokens, to_db_time, utcnow
from auth.errors import InvalidRefreshToken
from auth.models import IssuedRefreshToken, RefreshToken, RotationResult
from auth.tokens import generate_refresh_token, hash_refresh_token

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("bizpilot.auth.refresh")


class RefreshTokenStore:
    """Repository for RefreshToken records.

    Usage:
        store = RefreshTokenStore(db, settings)
        issued = store.issue(user_id)              # issued.raw_token goes to the client
        record = store.verify(issued.raw_token)    # raises InvalidRefreshToken
        rotated = store.rotate(issued.raw_token)   # old row revoked, new row issued
        store.revoke_by_raw_token(rotated.new_raw_token)
    """

    def __init__(self, db: Database, settings: Settings) -> None:
        self.db = db
        self._ttl = timedelta(days=settings.jwt_refresh_expires_in_days)

    # ------------------------------------------------------------------
    # Issue / verify
    # ------------------------------------------------------------------

    def issue(self, user_id: str) -> IssuedRefreshToken:
        """Create a refresh token for user_id and return the raw secret once."""
        with self.db.begin() as conn:
            issued = self._insert(conn, user_id)
        logger.info("Issued refresh token id=%s user=%s", issued.record_id, user_id)
        return issued

    def verify(self, raw_token: str) -> RefreshToken:
        """Return the valid record for raw_token or raise InvalidRefreshToken.

        Exact-match lookup on the digest; not found, expired and revoked are
        reported identically.
        """
        token_hash = hash_refresh_token(raw_token)
        now = to_db_time(utcnow())
        with self.db.connect() as conn:
            row = conn.execute(
                refresh_tokens.select().where(
                    and_(
                        refresh_tokens.c.token_hash == token_hash,
                        refresh_tokens.c.revoked_at.is_(None),
                        refresh_tokens.c.expires_at > now,
                    )
                )
            ).fetchone()
        if row is None:
            raise InvalidRefreshToken()
        return _row_to_refresh_token(row)

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(self, raw_token: str) -> RotationResult:
        """Revoke the presented token and issue its successor atomically.

        Raises InvalidRefreshToken if the token is unknown, expired, already
        revoked, or lost a concurrent rotation race. Nothing is written in
        that case.
        """
        token_hash = hash_refresh_token(raw_token)
        now = utcnow()
        now_db = to_db_time(now)

        with self.db.begin() as conn:
            claimed = conn.execute(
                refresh_tokens.update()
                .where(
                    and_(
                        refresh_tokens.c.token_hash == token_hash,
                        refresh_tokens.c.revoked_at.is_(None),
                        refresh_tokens.c.expires_at > now_db,
                    )
                )
                .values(revoked_at=now_db)
            )
            if claimed.rowcount != 1:
                replayed = conn.execute(
                    refresh_tokens.select().where(
                        and_(
                            refresh_tokens.c.token_hash == token_hash,
                            refresh_tokens.c.revoked_at.is_not(None),
                        )
                    )
                ).fetchone()
                if replayed is not None:
                    logger.warning(
                        "Revoked refresh token presented for rotation (possible replay) id=%s user=%s",
                        replayed.id,
                        replayed.user_id,
                    )
                raise InvalidRefreshToken()

            old_row = conn.execute(refresh_tokens.select().where(refresh_tokens.c.token_hash == token_hash)).fetchone()
            old_record = _row_to_refresh_token(old_row)
            issued = self._insert(conn, old_record.user_id)

        logger.info(
            "Rotated refresh token id=%s -> id=%s user=%s",
            old_record.id,
            issued.record_id,
            old_record.user_id,
        )
        return RotationResult(
            old_record=old_record,
            new_raw_token=issued.raw_token,
            new_record_id=issued.record_id,
            new_expires_at=issued.expires_at,
        )

    # ------------------------------------------------------------------
    # Revocation (all idempotent)
    # ------------------------------------------------------------------

    def revoke_by_raw_token(self, raw_token: str) -> None:
        """Revoke the token if it is currently unrevoked. Unknown tokens are a no-op."""
        token_hash = hash_refresh_token(raw_token)
        with self.db.begin() as conn:
            conn.execute(
                refresh_tokens.update()
                .where(and_(refresh_tokens.c.token_hash == token_hash, refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=to_db_time(utcnow()))
            )

    def revoke_by_id(self, record_id: str) -> None:
        """Revoke a token by record ID. Unknown or already-revoked IDs are a no-op."""
        with self.db.begin() as conn:
            conn.execute(
                refresh_tokens.update()
                .where(and_(refresh_tokens.c.id == record_id, refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=to_db_time(utcnow()))
            )

    def revoke_all_for_user(self, user_id: str) -> int:
        """Revoke every currently-unrevoked token of a user. Returns the count revoked.

        Used for logout-everywhere and credential-compromise response.
        """
        with self.db.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where(and_(refresh_tokens.c.user_id == user_id, refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=to_db_time(utcnow()))
            )
        if result.rowcount:
            logger.info("Revoked %d refresh token(s) for user=%s", result.rowcount, user_id)
        return result.rowcount

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_active_for_user(self, user_id: str) -> list[RefreshToken]:
        """Return the user's valid tokens, newest first."""
        now = to_db_time(utcnow())
        with self.db.connect() as conn:
            rows = conn.execute(
                refresh_tokens.select()
                .where(
                    and_(
                        refresh_tokens.c.user_id == user_id,
                        refresh_tokens.c.revoked_at.is_(None),
                        refresh_tokens.c.expires_at > now,
                    )
                )
                .order_by(refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _insert(self, conn, user_id: str) -> IssuedRefreshToken:
        raw_token = generate_refresh_token()
        record_id = str(uuid.uuid4())
        created_at = utcnow()
        expires_at = created_at + self._ttl
        conn.execute(
            refresh_tokens.insert().values(
                id=record_id,
                user_id=user_id,
                token_hash=hash_refresh_token(raw_token),
                created_at=to_db_time(created_at),
                expires_at=to_db_time(expires_at),
            )
        )
        return IssuedRefreshToken(raw_token=raw_token, record_id=record_id, expires_at=expires_at)


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        created_at=from_db_time(row.created_at),
        expires_at=from_db_time(row.expires_at),
        revoked_at=from_db_time(row.revoked_at),
    )
