# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Single-active-coordinator activation.

A school has at most one active club coordinator. Activation is one
transaction on the signed-in user's connection:

1. lock the school's coordinator rows (SELECT ... FOR UPDATE);
2. reject a target that is not one of them;
3. clear the flag on every coordinator of the school;
4. set it on the target, filtered by school;
5. commit, then refresh the cached flag of the signed-in session.

Two concurrent activations in one school serialise on step 1, so whichever
commits last wins and exactly one coordinator stays active.

Example:
    service = CoordinatorActivationService(registry)
    service.activate(session.tenant_id, coordinator_id)
"""

import logging
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from clubauth.core.config.settings import AuthSettings
from clubauth.domains.coordinator.repository import CoordinatorRepository
from clubauth.domains.session.registry import SessionRegistry
from clubauth.domains.session.tenant_session import TenantSession
from clubauth.infrastructure.database.errors import is_timeout
from clubauth.infrastructure.database.transaction import transaction

logger = logging.getLogger(__name__)


class CoordinatorServiceError(Exception):
    """Base exception for coordinator service errors."""

    pass


class CoordinatorNotFoundError(CoordinatorServiceError):
    """Raised when the target is not a coordinator of the school."""

    pass


class CoordinatorTenantError(CoordinatorServiceError):
    """Raised when the school differs from the signed-in session's school."""

    pass


class ActivationTimeoutError(CoordinatorServiceError):
    """Raised when the coordinator rows could not be locked or updated in time."""

    pass


def _as_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class CoordinatorActivationService:
    """Activates and deactivates club coordinators.

    Attributes:
        _registry: Source of the signed-in session and its connection.
        _repository: Coordinator SQL.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        repository: CoordinatorRepository | None = None,
        settings: AuthSettings | None = None,
    ) -> None:
        self._registry = registry
        self._repository = repository or CoordinatorRepository()
        self._settings = settings or AuthSettings()

    def _session_for(self, tenant_id: UUID) -> TenantSession:
        session = self._registry.require()
        if _as_uuid(session.tenant_id) != tenant_id:
            raise CoordinatorTenantError("Coordinators of another school cannot be managed")
        return session

    def activate(self, tenant_id: UUID | str, coordinator_user_id: UUID | str) -> None:
        """Make one coordinator the school's only active coordinator.

        Args:
            tenant_id: School of the coordinator.
            coordinator_user_id: Coordinator to activate.

        Raises:
            NoActiveSessionError: If nobody is signed in.
            CoordinatorTenantError: If ``tenant_id`` is not the session's school.
            CoordinatorNotFoundError: If the target is not a coordinator of
                the school.
            ActivationTimeoutError: If the lock or an update timed out.
        """
        tenant_id = _as_uuid(tenant_id)
        target = _as_uuid(coordinator_user_id)
        session = self._session_for(tenant_id)

        try:
            with session.use() as conn, transaction(
                conn, timeout_ms=self._settings.activation_timeout_ms
            ):
                coordinators = self._repository.lock_coordinators(conn, tenant_id)
                if target not in coordinators:
                    raise CoordinatorNotFoundError(
                        f"User {target} is not a coordinator of school {tenant_id}"
                    )
                self._repository.clear_active(conn, tenant_id)
                self._repository.set_active(conn, tenant_id, target)
        except SQLAlchemyError as e:
            if is_timeout(e):
                logger.warning("Coordinator activation timed out in school %s", tenant_id)
                raise ActivationTimeoutError("Coordinator activation timed out") from e
            self._registry.handle_error(e)
            raise

        self._registry.refresh_coordinator_flag(session.user_id, session.user_id == target)
        logger.info("Coordinator %s activated in school %s", target, tenant_id)

    def deactivate(self, user_id: UUID | str) -> None:
        """Clear the active flag of one coordinator.

        Raises:
            NoActiveSessionError: If nobody is signed in.
            ActivationTimeoutError: If the update timed out.
        """
        user_id = _as_uuid(user_id)
        session = self._registry.require()

        try:
            with session.use() as conn, transaction(
                conn, timeout_ms=self._settings.activation_timeout_ms
            ):
                self._repository.deactivate(conn, user_id)
        except SQLAlchemyError as e:
            if is_timeout(e):
                raise ActivationTimeoutError("Coordinator deactivation timed out") from e
            self._registry.handle_error(e)
            raise

        self._registry.refresh_coordinator_flag(user_id, False)
        logger.info("Coordinator %s deactivated", user_id)

    def active_coordinator_id(self, tenant_id: UUID | str) -> UUID | None:
        """Return the school's active coordinator, if any."""
        tenant_id = _as_uuid(tenant_id)
        session = self._session_for(tenant_id)

        try:
            with session.use() as conn, transaction(conn):
                return self._repository.active_coordinator_id(conn, tenant_id)
        except SQLAlchemyError as e:
            self._registry.handle_error(e)
            raise

    def can_create_active_coordinator(self, tenant_id: UUID | str) -> bool:
        """True when the school has no active coordinator yet."""
        return self.active_coordinator_id(tenant_id) is None
