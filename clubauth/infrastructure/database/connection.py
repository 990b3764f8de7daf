# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database connection management using SQLAlchemy (sync, psycopg2).

The desktop client talks to one PostgreSQL database shared by every school.
Two engines are kept apart on purpose:

1. The lookup engine is pooled. Its connections are short-lived and are
   used for the credential lookup and password reset transactions, which may
   carry a transaction-local RLS bypass flag.
2. The session engine uses NullPool. Each connection it hands out becomes the
   dedicated, tenant-pinned connection of exactly one TenantSession, and
   closing it really closes the socket, so a session-level tenant setting can
   never be handed to a later borrower by a pool.

All calls block on network I/O and must be made from a worker thread.

Example:
    database = Database(get_settings().database)

    with database.connect() as conn:
        conn.execute(text("SELECT 1"))

    pinned = database.dedicated_connection()
"""

import logging
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

if TYPE_CHECKING:
    from clubauth.core.config.settings import DatabaseSettings

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Base exception for database operations.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying SQLAlchemy or database error.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        """Initialize the database error.

        Args:
            message: Human-readable error description.
            original_error: The underlying exception that caused this error.
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


class Database:
    """Owns the lookup and session engines.

    Attributes:
        engine: Pooled engine for short-lived lookup transactions.
        session_engine: Non-pooled engine for tenant-pinned connections.
    """

    def __init__(
        self,
        settings: "DatabaseSettings",
        engine: Engine | None = None,
        session_engine: Engine | None = None,
    ) -> None:
        """Initialize the engines.

        Args:
            settings: Database settings.
            engine: Optional pre-built lookup engine (tests).
            session_engine: Optional pre-built session engine (tests).

        Raises:
            DatabaseError: If engine creation fails.
        """
        connect_args = {"connect_timeout": settings.connect_timeout}
        try:
            self.engine = engine or create_engine(
                settings.url,
                pool_size=settings.pool_size,
                max_overflow=settings.max_overflow,
                pool_pre_ping=True,
                pool_recycle=settings.pool_recycle,
                connect_args=connect_args,
            )
            self.session_engine = session_engine or create_engine(
                settings.url,
                poolclass=NullPool,
                connect_args=connect_args,
            )
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to initialize database engines", e) from e

    def connect(self) -> Connection:
        """Open a short-lived pooled connection.

        Returns:
            A SQLAlchemy Connection. Use it as a context manager so it is
            returned to the pool on every exit path.

        Raises:
            DatabaseError: If no connection can be obtained.
        """
        try:
            return self.engine.connect()
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to open database connection", e) from e

    def dedicated_connection(self) -> Connection:
        """Open a new, unpooled connection for a tenant session.

        Returns:
            A SQLAlchemy Connection owned exclusively by the caller.

        Raises:
            DatabaseError: If no connection can be obtained.
        """
        try:
            return self.session_engine.connect()
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to open session connection", e) from e

    def check_connection(self) -> bool:
        """Check if the database is reachable.

        Returns:
            True if the database is reachable, False otherwise.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False

    def dispose(self) -> None:
        """Close all pooled connections.

        Called at application shutdown, after the session registry has
        been destroyed.
        """
        self.engine.dispose()
        self.session_engine.dispose()
        logger.info("Database engines disposed")
