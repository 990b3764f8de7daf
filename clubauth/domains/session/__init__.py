# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Session domain.

Exports:
    TenantSession: Signed-in user with a dedicated tenant-pinned connection.
    SessionRegistry: Injected holder of the one active session.
"""

from clubauth.domains.session.registry import SessionRegistry
from clubauth.domains.session.tenant_session import (
    NoActiveSessionError,
    SessionAlreadyActiveError,
    SessionClosedError,
    SessionError,
    TenantSession,
)

__all__ = [
    "NoActiveSessionError",
    "SessionAlreadyActiveError",
    "SessionClosedError",
    "SessionError",
    "SessionRegistry",
    "TenantSession",
]
