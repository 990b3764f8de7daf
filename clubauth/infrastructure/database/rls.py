# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Row-level-security settings: bypass flags and tenant pinning.

The database policies (see policies.py) read four custom settings:

- ``app.login_username``: admits the single users row with that username.
- ``app.password_reset_lookup``: admits users rows for the email lookup of
  the forgot-password flow.
- ``app.current_school_id`` / ``app.current_user_id``: the tenant and user a
  connection is pinned to; every scoped table compares its school_id to it.

The two bypass flags are modelled as the closed BypassMode enum and can only
be raised through RLSBypassGate's scoped helpers, which set them
transaction-locally and clear them again before the block returns. At most
one flag may be active on a connection, and never on a tenant-pinned one.

Tenant pinning is the opposite: pin_tenant() sets the tenant settings
session-wide on a dedicated connection exactly once and installs a statement
guard that rejects any later attempt to change or reset them.

Example:
    gate = RLSBypassGate()
    with transaction(conn):
        row = gate.with_login_bypass(conn, "alice", lookup)

    pin_tenant(session_conn, tenant_id, user_id)
"""

import enum
import logging
import re
from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar
from uuid import UUID

from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from clubauth.infrastructure.database.transaction import transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")

TENANT_SETTING = "app.current_school_id"
USER_SETTING = "app.current_user_id"

# Keys in Connection.info (per DBAPI connection)
ACTIVE_BYPASS_KEY = "clubauth.rls_bypass"
PINNED_TENANT_KEY = "clubauth.pinned_tenant"


class BypassMode(enum.Enum):
    """Named RLS bypass flags, valued by the setting they raise."""

    LOGIN_LOOKUP = "app.login_username"
    PASSWORD_RESET_LOOKUP = "app.password_reset_lookup"

    @property
    def setting(self) -> str:
        """PostgreSQL setting name read by the row-security policy."""
        return self.value


PROTECTED_SETTINGS = frozenset(
    {TENANT_SETTING, USER_SETTING, *(mode.setting for mode in BypassMode)}
)

RESET_LOOKUP_VALUE = "on"


class RowSecurityError(Exception):
    """Base exception for RLS setting misuse."""

    pass


class BypassAlreadyActiveError(RowSecurityError):
    """Raised when a second bypass flag is requested on one connection."""

    def __init__(self, active: BypassMode, requested: BypassMode) -> None:
        super().__init__(
            f"Bypass {requested.name} requested while {active.name} is active"
        )
        self.active = active
        self.requested = requested


class BypassNotPermittedError(RowSecurityError):
    """Raised when a bypass is requested on a tenant-pinned connection."""

    pass


class TenantPinError(RowSecurityError):
    """Raised when a connection cannot be pinned to a tenant."""

    pass


class TenantMismatchError(TenantPinError):
    """Raised when the connection's tenant setting differs from the expected one.

    Attributes:
        expected: Tenant id the connection should carry.
        actual: Tenant id read back from the connection.
    """

    def __init__(self, expected: str, actual: str | None) -> None:
        super().__init__(f"Tenant context mismatch. Expected: {expected}, Actual: {actual}")
        self.expected = expected
        self.actual = actual


class TenantPinViolationError(TenantPinError):
    """Raised when a statement tries to change a pinned connection's settings."""

    pass


def _set_config(connection: Connection, key: str, value: str, is_local: bool) -> None:
    connection.execute(
        text("SELECT set_config(:key, :value, :is_local)"),
        {"key": key, "value": value, "is_local": is_local},
    )


def read_setting(connection: Connection, key: str) -> str | None:
    """Read a custom setting, returning None when it was never set.

    Runs inside the caller's transaction when one is open, otherwise in a
    short transaction of its own so the connection is not left autobegun.
    """
    stmt = text("SELECT current_setting(:key, true)")
    if connection.in_transaction():
        return connection.execute(stmt, {"key": key}).scalar()
    with connection.begin():
        return connection.execute(stmt, {"key": key}).scalar()


def active_bypass(connection: Connection) -> BypassMode | None:
    """Return the bypass flag currently raised on a connection, if any."""
    return connection.info.get(ACTIVE_BYPASS_KEY)


def pinned_tenant(connection: Connection) -> str | None:
    """Return the tenant id a connection is pinned to, if any."""
    return connection.info.get(PINNED_TENANT_KEY)


class RLSBypassGate:
    """Scoped acquisition of the RLS bypass flags.

    Each helper raises its flag inside the caller's open transaction, runs
    the lookup, and clears the flag before returning. If clearing fails the
    error propagates so the caller's transaction rolls back rather than
    committing with the flag possibly still set.

    Example:
        >>> gate = RLSBypassGate()
        >>> with transaction(conn):
        ...     credential = gate.with_login_bypass(
        ...         conn, "alice", lambda c: repo.find_by_username(c, "alice")
        ...     )
    """

    @contextmanager
    def login_bypass(self, connection: Connection, username: str) -> Iterator[Connection]:
        """Admit the users row named ``username`` for the duration of the block."""
        if not username:
            raise ValueError("Login bypass requires a username")
        with self._bypass(connection, BypassMode.LOGIN_LOOKUP, username):
            yield connection

    @contextmanager
    def reset_bypass(self, connection: Connection) -> Iterator[Connection]:
        """Admit users rows for the password-reset email lookup."""
        with self._bypass(connection, BypassMode.PASSWORD_RESET_LOOKUP, RESET_LOOKUP_VALUE):
            yield connection

    def with_login_bypass(
        self,
        connection: Connection,
        username: str,
        fn: Callable[[Connection], T],
    ) -> T:
        """Run ``fn`` with the login-lookup flag raised.

        Args:
            connection: Connection with an open transaction.
            username: Normalised username the policy should admit.
            fn: Lookup to run; receives the connection.

        Returns:
            Whatever ``fn`` returns.
        """
        with self.login_bypass(connection, username):
            return fn(connection)

    def with_reset_bypass(self, connection: Connection, fn: Callable[[Connection], T]) -> T:
        """Run ``fn`` with the password-reset-lookup flag raised."""
        with self.reset_bypass(connection):
            return fn(connection)

    def clear(self, connection: Connection, mode: BypassMode) -> None:
        """Clear a raised flag now. A no-op if ``mode`` is not active.

        Raises:
            SQLAlchemyError: If the clearing statement fails. The flag
                marker is dropped either way; the caller must roll back.
        """
        if active_bypass(connection) is not mode:
            return
        try:
            _set_config(connection, mode.setting, "", is_local=True)
        finally:
            connection.info.pop(ACTIVE_BYPASS_KEY, None)
        logger.debug("RLS bypass %s cleared", mode.name)

    @contextmanager
    def _bypass(self, connection: Connection, mode: BypassMode, value: str) -> Iterator[None]:
        if not connection.in_transaction():
            raise RowSecurityError(f"Bypass {mode.name} requires an open transaction")
        if pinned_tenant(connection) is not None:
            raise BypassNotPermittedError(
                f"Bypass {mode.name} is not permitted on a tenant-pinned connection"
            )
        current = active_bypass(connection)
        if current is not None:
            raise BypassAlreadyActiveError(current, mode)

        connection.info[ACTIVE_BYPASS_KEY] = mode
        try:
            _set_config(connection, mode.setting, value, is_local=True)
        except BaseException:
            connection.info.pop(ACTIVE_BYPASS_KEY, None)
            raise
        logger.debug("RLS bypass %s enabled", mode.name)

        try:
            yield
        except BaseException:
            self._clear_after_failure(connection, mode)
            raise

        self.clear(connection, mode)

    def _clear_after_failure(self, connection: Connection, mode: BypassMode) -> None:
        try:
            self.clear(connection, mode)
        except SQLAlchemyError as e:
            # The failing block's exception wins; its rollback discards the flag
            logger.warning("Could not clear RLS bypass %s before rollback: %s", mode.name, e)


def scope_transaction_to_tenant(connection: Connection, tenant_id: UUID | str) -> None:
    """Scope the current transaction (only) to one tenant.

    Used by the password reset flow to write to the user row it found once
    the bypass flag has been cleared.

    Raises:
        RowSecurityError: If no transaction is open or a bypass is active.
    """
    if not connection.in_transaction():
        raise RowSecurityError("Tenant scope requires an open transaction")
    if active_bypass(connection) is not None:
        raise RowSecurityError("Tenant scope requires the bypass flag to be cleared first")
    _set_config(connection, TENANT_SETTING, str(UUID(str(tenant_id))), is_local=True)


_SETTING_WRITE = re.compile(r"\bset_config\b|^\s*(set|reset|discard)\b", re.IGNORECASE)
_SESSION_RESET = re.compile(
    r"^\s*(reset\s+all|discard\s+all|reset\s+role|reset\s+session\s+authorization"
    r"|set\s+(session\s+|local\s+)?(role|session\s+authorization)\b)",
    re.IGNORECASE,
)


def _parameter_values(parameters: Any) -> Iterator[Any]:
    if isinstance(parameters, dict):
        yield from parameters.values()
    elif isinstance(parameters, (list, tuple)):
        for item in parameters:
            if isinstance(item, (dict, list, tuple)):
                yield from _parameter_values(item)
            else:
                yield item


def check_pinned_statement(statement: str, parameters: Any = None) -> None:
    """Reject statements that would alter a pinned connection's identity.

    Reads of the settings (current_setting) are allowed; writes to any
    protected setting, and session resets that would drop them, are not.

    Raises:
        TenantPinViolationError: If the statement is rejected.
    """
    if not _SETTING_WRITE.search(statement):
        return

    if _SESSION_RESET.match(statement):
        raise TenantPinViolationError("Session reset is not allowed on a tenant-pinned connection")

    lowered = statement.lower()
    if any(name in lowered for name in PROTECTED_SETTINGS):
        raise TenantPinViolationError("Tenant settings are immutable on a pinned connection")

    for value in _parameter_values(parameters):
        if isinstance(value, str) and value.strip().lower() in PROTECTED_SETTINGS:
            raise TenantPinViolationError("Tenant settings are immutable on a pinned connection")


def _guard_pinned_connection(conn, cursor, statement, parameters, context, executemany) -> None:
    check_pinned_statement(statement, parameters)


def pin_tenant(connection: Connection, tenant_id: UUID | str, user_id: UUID | str) -> str:
    """Permanently bind a dedicated connection to one tenant and user.

    The settings are applied session-wide in their own committed
    transaction, read back, and then protected by a statement guard.

    Args:
        connection: A fresh connection from the session engine.
        tenant_id: School id to pin.
        user_id: Authenticated user id.

    Returns:
        The pinned tenant id in canonical string form.

    Raises:
        TenantPinError: If the connection is already pinned or carries a
            bypass flag, or the ids are not UUIDs.
        TenantMismatchError: If the setting does not read back correctly.
    """
    if pinned_tenant(connection) is not None:
        raise TenantPinError("Connection is already pinned to a tenant")
    if active_bypass(connection) is not None:
        raise TenantPinError("A connection that carries a bypass flag cannot be pinned")

    try:
        tenant = str(UUID(str(tenant_id)))
        user = str(UUID(str(user_id)))
    except ValueError as e:
        raise TenantPinError("Invalid school ID format") from e

    with transaction(connection):
        _set_config(connection, TENANT_SETTING, tenant, is_local=False)
        _set_config(connection, USER_SETTING, user, is_local=False)
        actual = read_setting(connection, TENANT_SETTING)
        if actual != tenant:
            raise TenantMismatchError(tenant, actual)

    connection.info[PINNED_TENANT_KEY] = tenant
    event.listen(connection, "before_cursor_execute", _guard_pinned_connection)
    logger.debug("Connection pinned to tenant %s", tenant)
    return tenant
