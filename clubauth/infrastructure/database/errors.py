# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Classification of driver errors into timeout and disconnect failures."""

from sqlalchemy.exc import DBAPIError, DisconnectionError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from clubauth.infrastructure.database.connection import DatabaseError

# PostgreSQL SQLSTATE codes
QUERY_CANCELED = "57014"
LOCK_NOT_AVAILABLE = "55P03"
TIMEOUT_SQLSTATES = frozenset({QUERY_CANCELED, LOCK_NOT_AVAILABLE})

# Class 08 (connection exception) plus server shutdown and startup
CONNECTION_EXCEPTION_CLASS = "08"
SHUTDOWN_SQLSTATES = frozenset({"57P01", "57P02", "57P03"})


def _unwrap(exc: BaseException) -> BaseException:
    if isinstance(exc, DatabaseError) and exc.original_error is not None:
        return exc.original_error
    return exc


def _sqlstate(exc: BaseException) -> str | None:
    if isinstance(exc, DBAPIError):
        return getattr(exc.orig, "pgcode", None)
    return None


def is_timeout(exc: BaseException) -> bool:
    """Return True when a statement/lock timeout or pool wait timeout fired."""
    exc = _unwrap(exc)
    if isinstance(exc, PoolTimeoutError):
        return True
    return _sqlstate(exc) in TIMEOUT_SQLSTATES


def is_disconnect(exc: BaseException) -> bool:
    """Return True when the error means the connection is gone.

    Only fatal connection failures count: a connection that could not be
    opened, one the driver invalidated (broken pipe, server restart), and
    SQLSTATE class 08 or 57P01-57P03. Deadlocks, serialization failures and
    other operational errors leave the connection usable.
    """
    if isinstance(exc, DatabaseError):
        # Raised by Database only when a connection could not be opened
        return not is_timeout(exc)
    if isinstance(exc, DisconnectionError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True

    sqlstate = _sqlstate(exc)
    if sqlstate is None:
        return False
    return sqlstate.startswith(CONNECTION_EXCEPTION_CLASS) or sqlstate in SHUTDOWN_SQLSTATES
