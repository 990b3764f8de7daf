# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Password history rules shared by password reset and password change.

A new password may not match the current hash or any of the newest
``limit`` history hashes. Every stored password is recorded and older
history rows are pruned in the same transaction.
"""

import logging
from uuid import UUID

from sqlalchemy.engine import Connection

from clubauth.domains.auth.password import CorruptHashError, PasswordHasher
from clubauth.domains.auth.repository import Credential, CredentialRepository

logger = logging.getLogger(__name__)


class PasswordHistory:
    """Reuse check and bookkeeping over the password_history table."""

    def __init__(self, repository: CredentialRepository, hasher: PasswordHasher, limit: int) -> None:
        self._repository = repository
        self._hasher = hasher
        self._limit = limit

    def is_reused(self, connection: Connection, credential: Credential, new_password: str) -> bool:
        """True if ``new_password`` matches the current or a recent password."""
        previous = self._repository.recent_password_hashes(
            connection, credential.user_id, self._limit
        )
        for stored_hash in [credential.password_hash, *previous]:
            if not stored_hash:
                continue
            try:
                if self._hasher.verify(stored_hash, new_password):
                    return True
            except CorruptHashError:
                logger.warning("Skipping malformed history hash for %s", credential.username)
        return False

    def record(
        self,
        connection: Connection,
        user_id: UUID,
        tenant_id: UUID | None,
        password_hash: str,
    ) -> None:
        """Add the new hash and keep only the newest ``limit`` entries."""
        self._repository.add_password_history(connection, user_id, tenant_id, password_hash)
        self._repository.prune_password_history(connection, user_id, self._limit)
