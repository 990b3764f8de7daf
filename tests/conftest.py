# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

Repository and login tests run against a SQLite database file. SQLite has
no custom settings, so every connection gets ``set_config`` and
``current_setting`` functions backed by a per-connection dict; values set
with is_local are dropped when the transaction commits or rolls back, the
same lifetime PostgreSQL gives them. Row-level-security policies themselves
are not enforced by SQLite.
"""

import uuid
from collections.abc import Callable, Generator
from typing import Any
from unittest.mock import MagicMock

import pytest
import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool

from clubauth.core.config.settings import AuthSettings, DatabaseSettings
from clubauth.domains.auth.password import PasswordHasher
from clubauth.infrastructure.database.connection import Database
from clubauth.infrastructure.database.rls import PINNED_TENANT_KEY
from clubauth.infrastructure.database.schema import Role, metadata, users

SETTINGS_INFO_KEY = "test.pg_settings"

# Low bcrypt cost keeps the suite fast
TEST_BCRYPT_ROUNDS = 4


# =============================================================================
# PostgreSQL settings emulation for SQLite
# =============================================================================


def _install_setting_functions(dbapi_connection: Any, connection_record: Any) -> None:
    settings: dict[str, dict[str, str]] = {"session": {}, "local": {}}
    connection_record.info[SETTINGS_INFO_KEY] = settings

    def set_config(key: str, value: str, is_local: int) -> str:
        if is_local:
            settings["local"][key] = value
        else:
            settings["local"].pop(key, None)
            settings["session"][key] = value
        return value

    def current_setting(key: str, missing_ok: int = 0) -> str | None:
        for scope in ("local", "session"):
            if key in settings[scope]:
                return settings[scope][key]
        if missing_ok:
            return None
        raise ValueError(f"unrecognized configuration parameter {key}")

    dbapi_connection.create_function("set_config", 3, set_config)
    dbapi_connection.create_function("current_setting", 1, current_setting)
    dbapi_connection.create_function("current_setting", 2, current_setting)


def _end_transaction(conn: Any) -> None:
    settings = conn.info.get(SETTINGS_INFO_KEY)
    if settings is not None:
        settings["local"].clear()


def emulate_pg_settings(engine: Engine) -> Engine:
    """Attach the settings emulation to an engine."""
    event.listen(engine, "connect", _install_setting_functions)
    event.listen(engine, "commit", _end_transaction)
    event.listen(engine, "rollback", _end_transaction)
    return engine


def settings_of(conn: Any) -> dict[str, dict[str, str]]:
    """Return the emulated settings of a SQLite connection."""
    return conn.info[SETTINGS_INFO_KEY]


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    """URL of a fresh SQLite database file."""
    return f"sqlite:///{tmp_path / 'club_management.db'}"


@pytest.fixture
def lookup_engine(sqlite_url: str) -> Generator[Engine, None, None]:
    """Pooled engine with a single connection, schema created."""
    engine = emulate_pg_settings(
        sa.create_engine(sqlite_url, pool_size=1, max_overflow=0)
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_engine(sqlite_url: str, lookup_engine: Engine) -> Generator[Engine, None, None]:
    """Unpooled engine on the same database file."""
    engine = emulate_pg_settings(sa.create_engine(sqlite_url, poolclass=NullPool))
    yield engine
    engine.dispose()


@pytest.fixture
def database(lookup_engine: Engine, session_engine: Engine) -> Database:
    """Database wired to the SQLite engines."""
    return Database(DatabaseSettings(), engine=lookup_engine, session_engine=session_engine)


@pytest.fixture
def auth_settings() -> AuthSettings:
    """Auth settings with a fast bcrypt cost."""
    return AuthSettings(bcrypt_rounds=TEST_BCRYPT_ROUNDS)


@pytest.fixture
def fast_hasher() -> PasswordHasher:
    """Password hasher with a fast bcrypt cost."""
    return PasswordHasher(rounds=TEST_BCRYPT_ROUNDS)


@pytest.fixture
def insert_user(lookup_engine: Engine, fast_hasher: PasswordHasher) -> Callable[..., dict[str, Any]]:
    """Factory inserting a users row.

    Pass ``password`` to store its hash; any other keyword overrides a column.
    """

    def _insert(password: str | None = "Club#2024pass", **overrides: Any) -> dict[str, Any]:
        username = overrides.pop("username", f"user{uuid.uuid4().hex[:8]}")
        row = {
            "user_id": uuid.uuid4(),
            "username": username,
            "email": f"{username}@school.example",
            "password_hash": fast_hasher.hash(password) if password else None,
            "full_name": username.title(),
            "school_id": uuid.uuid4(),
            "role": Role.TEACHER,
            "is_active": True,
            "is_active_coordinator": False,
            "first_login": False,
        }
        row.update(overrides)
        with lookup_engine.begin() as conn:
            conn.execute(sa.insert(users).values(**row))
        return row

    return _insert


# =============================================================================
# Mock Fixtures
# =============================================================================


def make_mock_connection(tenant_id: uuid.UUID | None = None) -> MagicMock:
    """Create a mock Connection usable as a context manager.

    Args:
        tenant_id: If given, the mock is marked as pinned to this tenant.
    """
    conn = MagicMock()
    conn.__enter__.return_value = conn
    conn.__exit__.return_value = False
    conn.info = {}
    conn.invalidated = False
    conn.in_transaction.return_value = True
    conn.dialect.name = "postgresql"
    if tenant_id is not None:
        conn.info[PINNED_TENANT_KEY] = str(tenant_id)
    return conn


@pytest.fixture
def mock_connection() -> MagicMock:
    """Unpinned mock connection."""
    return make_mock_connection()


@pytest.fixture
def connection_factory() -> Callable[..., MagicMock]:
    """Factory for mock connections, optionally pinned to a tenant."""
    return make_mock_connection


@pytest.fixture
def pg_settings() -> Callable[[Any], dict[str, dict[str, str]]]:
    """Accessor for the emulated settings of a SQLite connection."""
    return settings_of


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "concurrency: mark test as exercising concurrent threads"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# =============================================================================
# Helper Fixtures
# =============================================================================


@pytest.fixture
def sample_tenant_id() -> uuid.UUID:
    """Provide a sample school ID for testing."""
    return uuid.UUID("550e8400-e29b-41d4-a716-446655440000")


@pytest.fixture
def other_tenant_id() -> uuid.UUID:
    """Provide a second school ID for isolation tests."""
    return uuid.UUID("550e8400-e29b-41d4-a716-446655440099")


@pytest.fixture
def sample_user_id() -> uuid.UUID:
    """Provide a sample user ID for testing."""
    return uuid.UUID("550e8400-e29b-41d4-a716-446655440001")
