# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Single-commit-point transaction helper.

Every multi-statement operation in this package runs through transaction():
the block either reaches its one commit or is rolled back, on any exception,
including the internal failure exceptions the login state machine raises for
expected outcomes such as a wrong password.

Example:
    with database.connect() as conn, transaction(conn, timeout_ms=5000):
        conn.execute(...)
        conn.execute(...)
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import text
from sqlalchemy.engine import Connection, RootTransaction
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


def apply_statement_timeout(connection: Connection, timeout_ms: int) -> None:
    """Bound every statement and lock wait in the current transaction.

    Uses SET LOCAL so the limits end with the transaction. Only PostgreSQL
    understands these settings; other dialects are left untouched.

    Args:
        connection: Connection with an open transaction.
        timeout_ms: Limit in milliseconds.
    """
    if connection.dialect.name != "postgresql":
        return

    timeout = int(timeout_ms)
    connection.execute(text(f"SET LOCAL statement_timeout = {timeout}"))
    connection.execute(text(f"SET LOCAL lock_timeout = {timeout}"))


def _rollback(trans: RootTransaction) -> None:
    if not trans.is_active:
        return
    try:
        trans.rollback()
    except SQLAlchemyError:
        # The original error is re-raised by the caller
        logger.exception("Failed to roll back transaction")


@contextmanager
def transaction(connection: Connection, timeout_ms: int | None = None) -> Iterator[Connection]:
    """Run a block inside one transaction.

    Args:
        connection: Connection without an open transaction.
        timeout_ms: Optional statement/lock timeout for the transaction.

    Yields:
        The same connection, inside the transaction.
    """
    trans = connection.begin()
    try:
        if timeout_ms:
            apply_statement_timeout(connection, timeout_ms)
        yield connection
    except BaseException:
        _rollback(trans)
        raise

    try:
        trans.commit()
    except BaseException:
        _rollback(trans)
        raise
