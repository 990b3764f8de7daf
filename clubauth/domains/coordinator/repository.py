# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQL for the is_active_coordinator flag."""

from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.engine import Connection

from clubauth.infrastructure.database.schema import Role, users


def _tenant_coordinators(tenant_id: UUID):
    return sa.and_(
        users.c.school_id == tenant_id,
        users.c.role == Role.CLUB_COORDINATOR,
    )


class CoordinatorRepository:
    """Queries over the coordinators of one school."""

    def lock_coordinators(self, connection: Connection, tenant_id: UUID) -> list[UUID]:
        """Lock every coordinator row of the school (SELECT ... FOR UPDATE).

        Concurrent activations in the same school queue here until the
        holder commits or rolls back.

        Returns:
            Ids of the school's coordinators.
        """
        stmt = (
            sa.select(users.c.user_id)
            .where(_tenant_coordinators(tenant_id))
            .order_by(users.c.user_id)
            .with_for_update()
        )
        return list(connection.execute(stmt).scalars())

    def clear_active(self, connection: Connection, tenant_id: UUID) -> int:
        stmt = (
            sa.update(users)
            .where(_tenant_coordinators(tenant_id))
            .values(is_active_coordinator=False)
        )
        return connection.execute(stmt).rowcount

    def set_active(self, connection: Connection, tenant_id: UUID, user_id: UUID) -> int:
        stmt = (
            sa.update(users)
            .where(_tenant_coordinators(tenant_id), users.c.user_id == user_id)
            .values(is_active_coordinator=True)
        )
        return connection.execute(stmt).rowcount

    def deactivate(self, connection: Connection, user_id: UUID) -> int:
        stmt = (
            sa.update(users)
            .where(users.c.user_id == user_id)
            .values(is_active_coordinator=False)
        )
        return connection.execute(stmt).rowcount

    def active_coordinator_id(self, connection: Connection, tenant_id: UUID) -> UUID | None:
        """Return the school's active coordinator, if any."""
        stmt = (
            sa.select(users.c.user_id)
            .where(_tenant_coordinators(tenant_id), users.c.is_active_coordinator == sa.true())
            .limit(1)
        )
        return connection.execute(stmt).scalar_one_or_none()
