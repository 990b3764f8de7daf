# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Registry of the one active TenantSession of this client.

The registry is created once by the application and injected into every
service that needs the signed-in user; there is no module-level instance.
All mutations happen under an internal lock, so login on a worker thread and
logout from the UI thread cannot interleave.

Example:
    registry = SessionRegistry()
    auth = AuthenticationTransaction(database, registry)
    result = auth.login("alice", "secret")

    session = registry.require()
    tenant_id = session.tenant_id
"""

import logging
import threading
from uuid import UUID

from sqlalchemy.engine import Connection

from clubauth.domains.session.tenant_session import (
    NoActiveSessionError,
    SessionAlreadyActiveError,
    SessionError,
    TenantSession,
)
from clubauth.infrastructure.database.errors import is_disconnect
from clubauth.infrastructure.database.rls import pinned_tenant
from clubauth.infrastructure.database.schema import Role

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Holds at most one active TenantSession."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._session: TenantSession | None = None

    def create(
        self,
        user_id: UUID,
        username: str,
        tenant_id: UUID,
        connection: Connection,
        role: Role,
        is_active_coordinator: bool = False,
        first_login: bool = False,
    ) -> TenantSession:
        """Register a new session around a tenant-pinned connection.

        Args:
            user_id: Authenticated user.
            username: Normalised username.
            tenant_id: School the connection was pinned to.
            connection: Dedicated connection, already pinned.
            role: Account role.
            is_active_coordinator: Cached administrative flag.
            first_login: Whether the password must be changed first.

        Returns:
            The registered session.

        Raises:
            SessionAlreadyActiveError: If a session is already registered.
            SessionError: If the connection is not pinned to ``tenant_id``.
        """
        if pinned_tenant(connection) != str(tenant_id):
            raise SessionError("Session connection is not pinned to the session tenant")

        with self._lock:
            if self._session is not None:
                raise SessionAlreadyActiveError(
                    f"A session for {self._session.username} is already active"
                )
            self._session = TenantSession(
                user_id=user_id,
                username=username,
                tenant_id=tenant_id,
                role=role,
                connection=connection,
                is_active_coordinator=is_active_coordinator,
                first_login=first_login,
            )
            logger.info("Session created for %s (tenant %s)", username, tenant_id)
            return self._session

    def current(self) -> TenantSession | None:
        """Return the active session, or None when signed out.

        A session whose connection was invalidated is destroyed first.
        """
        with self._lock:
            session = self._session
            if session is not None and session.is_broken:
                logger.warning("Session connection for %s is broken, destroying session", session.username)
                self._destroy_locked()
                return None
            return session

    def require(self) -> TenantSession:
        """Return the active session.

        Raises:
            NoActiveSessionError: If nobody is signed in.
        """
        session = self.current()
        if session is None:
            raise NoActiveSessionError("No active session")
        return session

    def destroy(self) -> None:
        """Close the session connection and forget the session. Idempotent."""
        with self._lock:
            self._destroy_locked()

    def _destroy_locked(self) -> None:
        session = self._session
        self._session = None
        if session is not None:
            session.close()
            logger.info("Session destroyed for %s", session.username)

    def handle_error(self, exc: BaseException) -> bool:
        """Destroy the session if ``exc`` means its connection is gone.

        Returns:
            True if the session was destroyed.
        """
        with self._lock:
            session = self._session
            if session is None:
                return False
            if is_disconnect(exc) or session.is_broken:
                logger.error("Fatal connection error for %s: %s", session.username, exc)
                self._destroy_locked()
                return True
            return False

    def refresh_coordinator_flag(self, user_id: UUID, active: bool) -> None:
        """Update the cached flag if ``user_id`` is the signed-in user."""
        with self._lock:
            if self._session is not None and self._session.user_id == user_id:
                self._session.set_active_coordinator(active)

    # Role accessors read the cached session state; all are False when signed out.

    def is_coordinator(self) -> bool:
        session = self.current()
        return session is not None and session.is_coordinator

    def is_active_coordinator(self) -> bool:
        session = self.current()
        return session is not None and session.is_active_coordinator

    def is_teacher(self) -> bool:
        session = self.current()
        return session is not None and session.is_teacher

    def is_system_administrator(self) -> bool:
        session = self.current()
        return session is not None and session.is_system_administrator
