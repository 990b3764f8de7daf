# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQL access to the raw credential record.

The repository never opens connections or transactions itself; callers pass
a connection inside an open transaction (with the right bypass flag or
tenant scope already applied) and own the commit.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Row

from clubauth.infrastructure.database.schema import Role, password_history, users
from clubauth.utils.datetime import ensure_utc, utc_now

# Fetching two rows is enough to tell "unique" from "ambiguous"
_AMBIGUITY_PROBE = 2


class CorruptCredentialError(Exception):
    """Raised when a users row cannot be read as a credential (unknown role)."""

    pass


@dataclass(frozen=True)
class Credential:
    """One users row as seen by authentication.

    Attributes:
        user_id: Primary key.
        username: Stored (lower-case) username.
        email: Stored (lower-case) email, if any.
        password_hash: Bcrypt hash, None for accounts never given a password.
        tenant_id: School the user belongs to, None if unassigned.
        role: Account role.
        is_active: Authentication gate.
        is_active_coordinator: Administrative flag for coordinators.
        first_login: True until the first password change.
        reset_token_hash: SHA-256 hex of the pending reset token.
        reset_token_expiry: Expiry of the pending reset token.
    """

    user_id: UUID
    username: str
    email: str | None
    password_hash: str | None
    tenant_id: UUID | None
    role: Role
    is_active: bool
    is_active_coordinator: bool
    first_login: bool = False
    reset_token_hash: str | None = None
    reset_token_expiry: datetime | None = None

    @classmethod
    def from_row(cls, row: Row) -> "Credential":
        """Build a credential from a users row."""
        return cls(
            user_id=row.user_id,
            username=row.username,
            email=row.email,
            password_hash=row.password_hash,
            tenant_id=row.school_id,
            role=Role(row.role),
            is_active=bool(row.is_active),
            is_active_coordinator=bool(row.is_active_coordinator),
            first_login=bool(row.first_login),
            reset_token_hash=row.reset_token_hash,
            reset_token_expiry=ensure_utc(row.reset_token_expiry),
        )


def _credentials(result) -> list[Credential]:
    try:
        return [Credential.from_row(row) for row in result]
    except (LookupError, ValueError) as e:
        raise CorruptCredentialError(f"Unreadable users row: {e}") from e


_CREDENTIAL_COLUMNS = (
    users.c.user_id,
    users.c.username,
    users.c.email,
    users.c.password_hash,
    users.c.school_id,
    users.c.role,
    users.c.is_active,
    users.c.is_active_coordinator,
    users.c.first_login,
    users.c.reset_token_hash,
    users.c.reset_token_expiry,
)


class CredentialRepository:
    """Queries over users and password_history."""

    def find_by_username(self, connection: Connection, username: str) -> list[Credential]:
        """Find credentials whose username matches case-insensitively.

        Returns at most two rows; more than one means the account data is
        ambiguous and must not be used to authenticate.

        Raises:
            CorruptCredentialError: If a matching row has an unknown role.
        """
        stmt = (
            sa.select(*_CREDENTIAL_COLUMNS)
            .where(sa.func.lower(users.c.username) == username.strip().lower())
            .limit(_AMBIGUITY_PROBE)
        )
        return _credentials(connection.execute(stmt))

    def find_by_email(self, connection: Connection, email: str) -> list[Credential]:
        """Find credentials whose email matches case-insensitively (at most two)."""
        stmt = (
            sa.select(*_CREDENTIAL_COLUMNS)
            .where(sa.func.lower(users.c.email) == email.strip().lower())
            .limit(_AMBIGUITY_PROBE)
        )
        return _credentials(connection.execute(stmt))

    def find_by_id(self, connection: Connection, user_id: UUID) -> Credential | None:
        """Read the signed-in user's own row on the tenant-pinned connection."""
        stmt = sa.select(*_CREDENTIAL_COLUMNS).where(users.c.user_id == user_id)
        matches = _credentials(connection.execute(stmt))
        return matches[0] if matches else None

    def insert_user(
        self,
        connection: Connection,
        user_id: UUID,
        username: str,
        email: str,
        full_name: str | None,
        password_hash: str,
        tenant_id: UUID,
        role: Role,
        is_active_coordinator: bool = False,
    ) -> None:
        """Insert an account that must change its password on first login.

        Raises:
            IntegrityError: If the username or email is already taken in any
                school.
        """
        connection.execute(
            sa.insert(users).values(
                user_id=user_id,
                username=username,
                email=email,
                full_name=full_name,
                password_hash=password_hash,
                school_id=tenant_id,
                role=role,
                is_active=True,
                is_active_coordinator=is_active_coordinator,
                first_login=True,
            )
        )

    def store_reset_token(
        self,
        connection: Connection,
        user_id: UUID,
        token_hash: str,
        expiry: datetime,
    ) -> int:
        """Store a reset token hash and expiry. Returns the affected row count."""
        stmt = (
            sa.update(users)
            .where(users.c.user_id == user_id)
            .values(reset_token_hash=token_hash, reset_token_expiry=expiry)
        )
        return connection.execute(stmt).rowcount

    def update_password(self, connection: Connection, user_id: UUID, password_hash: str) -> int:
        """Replace the password hash and consume any pending reset token."""
        stmt = (
            sa.update(users)
            .where(users.c.user_id == user_id)
            .values(
                password_hash=password_hash,
                reset_token_hash=None,
                reset_token_expiry=None,
                first_login=False,
                password_changed_at=utc_now(),
            )
        )
        return connection.execute(stmt).rowcount

    def recent_password_hashes(self, connection: Connection, user_id: UUID, limit: int) -> list[str]:
        """Return the newest ``limit`` history hashes for a user."""
        stmt = (
            sa.select(password_history.c.password_hash)
            .where(password_history.c.user_id == user_id)
            .order_by(password_history.c.created_at.desc(), password_history.c.history_id.desc())
            .limit(limit)
        )
        return list(connection.execute(stmt).scalars())

    def add_password_history(
        self,
        connection: Connection,
        user_id: UUID,
        tenant_id: UUID | None,
        password_hash: str,
    ) -> None:
        connection.execute(
            sa.insert(password_history).values(
                user_id=user_id,
                school_id=tenant_id,
                password_hash=password_hash,
                created_at=utc_now(),
            )
        )

    def prune_password_history(self, connection: Connection, user_id: UUID, keep: int) -> int:
        """Delete all but the newest ``keep`` history rows for a user."""
        newest = (
            sa.select(password_history.c.history_id)
            .where(password_history.c.user_id == user_id)
            .order_by(password_history.c.created_at.desc(), password_history.c.history_id.desc())
            .limit(keep)
        )
        stmt = sa.delete(password_history).where(
            password_history.c.user_id == user_id,
            password_history.c.history_id.not_in(newest),
        )
        return connection.execute(stmt).rowcount
