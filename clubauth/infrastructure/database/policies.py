# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Row-level-security policies for the tenant-scoped tables.

Every scoped table carries a tenant policy comparing its school_id with the
connection's ``app.current_school_id``. The users table additionally admits
rows for the two bypass lookups, read-only:

- the single row whose lower(username) equals ``app.login_username``;
- any row while ``app.password_reset_lookup`` is ``on``.

FORCE ROW LEVEL SECURITY makes the table owner subject to the policies too.
Statements are idempotent and can be re-run on every deployment.
"""

import logging

from sqlalchemy import text
from sqlalchemy.engine import Connection

from clubauth.infrastructure.database.rls import TENANT_SETTING, BypassMode
from clubauth.infrastructure.database.transaction import transaction

logger = logging.getLogger(__name__)

# Tables scoped by school_id
TENANT_TABLES = ("users", "password_history")

_CURRENT_TENANT = f"NULLIF(current_setting('{TENANT_SETTING}', true), '')::uuid"


def tenant_policy_statements(table: str) -> list[str]:
    """Build the statements enabling tenant isolation on one table."""
    return [
        f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
        f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
        f"DROP POLICY IF EXISTS {table}_tenant_isolation ON {table}",
        (
            f"CREATE POLICY {table}_tenant_isolation ON {table} "
            f"USING (school_id = {_CURRENT_TENANT}) "
            f"WITH CHECK (school_id = {_CURRENT_TENANT})"
        ),
    ]


def lookup_policy_statements() -> list[str]:
    """Build the read-only bypass policies on the users table."""
    login = BypassMode.LOGIN_LOOKUP.setting
    reset = BypassMode.PASSWORD_RESET_LOOKUP.setting
    return [
        "DROP POLICY IF EXISTS users_login_lookup ON users",
        (
            "CREATE POLICY users_login_lookup ON users FOR SELECT "
            f"USING (lower(username) = NULLIF(current_setting('{login}', true), ''))"
        ),
        "DROP POLICY IF EXISTS users_password_reset_lookup ON users",
        (
            "CREATE POLICY users_password_reset_lookup ON users FOR SELECT "
            f"USING (current_setting('{reset}', true) = 'on')"
        ),
    ]


def row_security_statements() -> list[str]:
    """All policy statements, in execution order."""
    statements: list[str] = []
    for table in TENANT_TABLES:
        statements.extend(tenant_policy_statements(table))
    statements.extend(lookup_policy_statements())
    return statements


def install_row_security(connection: Connection) -> None:
    """Install or refresh the policies in a single transaction.

    Args:
        connection: Connection of a role that owns the scoped tables.
    """
    statements = row_security_statements()
    with transaction(connection):
        for statement in statements:
            connection.execute(text(statement))
    logger.info("Installed %d row security statements", len(statements))
