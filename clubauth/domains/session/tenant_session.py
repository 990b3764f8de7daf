# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""The signed-in user's tenant-pinned database session.

A TenantSession exclusively owns one dedicated connection whose tenant
settings were pinned at login. Business code borrows the connection through
use(), which serialises access and refuses use after close.

Example:
    session = registry.require()
    with session.use() as conn, transaction(conn):
        conn.execute(select(clubs))
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator
from uuid import UUID

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from clubauth.infrastructure.database.rls import (
    TENANT_SETTING,
    TenantMismatchError,
    read_setting,
)
from clubauth.infrastructure.database.schema import Role
from clubauth.utils.datetime import utc_now

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Base exception for session errors."""

    pass


class SessionClosedError(SessionError):
    """Raised when a closed session's connection is requested."""

    pass


class SessionAlreadyActiveError(SessionError):
    """Raised when a session is created while another one is active."""

    pass


class NoActiveSessionError(SessionError):
    """Raised when an operation requires a signed-in user and there is none."""

    pass


class TenantSession:
    """Identity and dedicated connection of the signed-in user.

    The identity fields are fixed at construction. Only the cached
    is_active_coordinator flag and the first-login flag can change, after a
    coordinator activation or a password change commits.

    Attributes:
        user_id: Authenticated user.
        username: Normalised username.
        tenant_id: School the connection is pinned to.
        role: Account role.
        created_at: When the session was established.
    """

    def __init__(
        self,
        user_id: UUID,
        username: str,
        tenant_id: UUID,
        role: Role,
        connection: Connection,
        is_active_coordinator: bool = False,
        first_login: bool = False,
        created_at: datetime | None = None,
    ) -> None:
        self._user_id = user_id
        self._username = username
        self._tenant_id = tenant_id
        self._role = Role(role)
        self._connection = connection
        self._is_active_coordinator = bool(is_active_coordinator)
        self._first_login = bool(first_login)
        self._created_at = created_at or utc_now()
        self._lock = threading.RLock()
        self._closed = False

    @property
    def user_id(self) -> UUID:
        return self._user_id

    @property
    def username(self) -> str:
        return self._username

    @property
    def tenant_id(self) -> UUID:
        return self._tenant_id

    @property
    def role(self) -> Role:
        return self._role

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def connection(self) -> Connection:
        """The dedicated connection. Prefer use() for serialised access."""
        if self._closed:
            raise SessionClosedError("Session is closed")
        return self._connection

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_broken(self) -> bool:
        """True once the driver has invalidated the dedicated connection."""
        return not self._closed and bool(self._connection.invalidated)

    @property
    def is_coordinator(self) -> bool:
        return self._role is Role.CLUB_COORDINATOR

    @property
    def is_active_coordinator(self) -> bool:
        """Coordinator with administrative rights; inactive ones are view-only."""
        return self.is_coordinator and self._is_active_coordinator

    @property
    def is_teacher(self) -> bool:
        return self._role is Role.TEACHER

    @property
    def is_system_administrator(self) -> bool:
        return self._role is Role.SYSTEM_ADMINISTRATOR

    @property
    def must_change_password(self) -> bool:
        """True until the user replaces the password an administrator set."""
        return self._first_login

    def mark_password_changed(self) -> None:
        with self._lock:
            self._first_login = False

    def set_active_coordinator(self, active: bool) -> None:
        """Update the cached coordinator flag after a committed change."""
        with self._lock:
            self._is_active_coordinator = bool(active)

    @contextmanager
    def use(self) -> Iterator[Connection]:
        """Borrow the dedicated connection under the session lock.

        Raises:
            SessionClosedError: If the session was destroyed.
        """
        with self._lock:
            if self._closed:
                raise SessionClosedError("Session is closed")
            yield self._connection

    def verify_tenant(self) -> None:
        """Re-read the connection's tenant setting and compare it.

        Raises:
            TenantMismatchError: If the connection no longer carries the
                session's tenant.
        """
        expected = str(self._tenant_id)
        with self.use() as conn:
            actual = read_setting(conn, TENANT_SETTING)
        if actual != expected:
            logger.error(
                "Tenant setting changed on session of %s: expected %s, got %s",
                self._username,
                expected,
                actual,
            )
            raise TenantMismatchError(expected, actual)

    def close(self) -> None:
        """Close the dedicated connection. Safe to call more than once.

        The DBAPI connection is invalidated before closing so it can never
        be returned to a pool with its session-level settings.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                if not self._connection.invalidated:
                    self._connection.invalidate()
                self._connection.close()
            except SQLAlchemyError as e:
                logger.warning("Error closing session connection for %s: %s", self._username, e)
        logger.debug("Session connection closed for %s", self._username)

    def __repr__(self) -> str:
        return (
            f"TenantSession(user_id={self._user_id}, username={self._username!r}, "
            f"tenant_id={self._tenant_id}, role={self._role.value})"
        )
