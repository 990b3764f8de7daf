# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database infrastructure for the shared PostgreSQL database.

This package provides synchronous SQLAlchemy access for:
- Short-lived pooled connections (credential lookup, password reset)
- Dedicated tenant-pinned connections (one per signed-in user)
- RLS bypass flags and tenant pinning
- Error classification (timeout, connection lost)

Example:
    from clubauth.infrastructure.database import Database, transaction

    database = Database(settings.database)
    with database.connect() as conn, transaction(conn, timeout_ms=5000):
        conn.execute(...)
"""

from clubauth.infrastructure.database.connection import Database, DatabaseError
from clubauth.infrastructure.database.errors import is_disconnect, is_timeout
from clubauth.infrastructure.database.policies import install_row_security
from clubauth.infrastructure.database.rls import (
    BypassAlreadyActiveError,
    BypassMode,
    BypassNotPermittedError,
    RLSBypassGate,
    RowSecurityError,
    TenantMismatchError,
    TenantPinError,
    TenantPinViolationError,
    pin_tenant,
    read_setting,
    scope_transaction_to_tenant,
)
from clubauth.infrastructure.database.schema import Role, metadata, password_history, users
from clubauth.infrastructure.database.transaction import transaction

__all__ = [
    # Connections
    "Database",
    "DatabaseError",
    "transaction",
    # Error classification
    "is_disconnect",
    "is_timeout",
    # Row level security
    "BypassAlreadyActiveError",
    "BypassMode",
    "BypassNotPermittedError",
    "RLSBypassGate",
    "RowSecurityError",
    "TenantMismatchError",
    "TenantPinError",
    "TenantPinViolationError",
    "install_row_security",
    "pin_tenant",
    "read_setting",
    "scope_transaction_to_tenant",
    # Schema
    "Role",
    "metadata",
    "password_history",
    "users",
]
