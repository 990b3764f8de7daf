# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Login state machine.

AuthenticationTransaction turns a username and password into a registered
TenantSession using two connections:

1. C1, a short-lived pooled connection, runs one transaction that raises the
   LOGIN_LOOKUP bypass, reads the credential row, checks the account and the
   password, clears the flag and commits. C1 is closed whatever happens.
2. C2, a fresh unpooled connection, is pinned to the user's school and handed
   to the SessionRegistry. If anything fails after C2 is opened it is closed.

Expected failures are raised internally as LoginFailure so that every exit
from the C1 transaction goes through its rollback; login() converts them,
and classified database errors, into a LoginResult. It never raises for
them.

Example:
    >>> auth = AuthenticationTransaction(database, registry)
    >>> result = auth.login("Alice", "Club#2024pass")
    >>> result.ok, registry.current().tenant_id
"""

import enum
import logging
import secrets
import threading
from dataclasses import dataclass
from typing import NoReturn

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from clubauth.core.config.settings import AuthSettings
from clubauth.domains.auth.password import CorruptHashError, PasswordHasher
from clubauth.domains.auth.password_reset import PasswordResetService, ResetResult
from clubauth.domains.auth.repository import (
    CorruptCredentialError,
    Credential,
    CredentialRepository,
)
from clubauth.domains.session.registry import SessionRegistry
from clubauth.domains.session.tenant_session import (
    SessionAlreadyActiveError,
    SessionError,
    TenantSession,
)
from clubauth.infrastructure.database.connection import Database, DatabaseError
from clubauth.infrastructure.database.errors import is_disconnect, is_timeout
from clubauth.infrastructure.database.rls import RLSBypassGate, RowSecurityError, pin_tenant
from clubauth.infrastructure.database.transaction import transaction
from clubauth.utils.logging import bind_context, clear_context, get_logger

logger = logging.getLogger(__name__)
audit = get_logger("clubauth.audit")

INVALID_CREDENTIALS_MESSAGE = "Invalid username or password."
NO_TENANT_MESSAGE = "Your account is not linked to a school. Contact your coordinator."
ALREADY_ACTIVE_MESSAGE = "Another user is already signed in on this computer."
UNAVAILABLE_MESSAGE = "Unable to sign in right now. Please try again later."


class LoginState(enum.Enum):
    """Steps of the login state machine."""

    UNAUTHENTICATED = "unauthenticated"
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    BYPASS_ENABLED = "bypass_enabled"
    ROW_FETCHED = "row_fetched"
    ACCOUNT_CHECKED = "account_checked"
    PASSWORD_VERIFIED = "password_verified"
    TENANT_PINNED = "tenant_pinned"
    SESSION_ACTIVE = "session_active"
    FAILED = "failed"


class LoginError(enum.Enum):
    """Reasons a login attempt can fail."""

    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    CORRUPT_ACCOUNT = "corrupt_account"
    BAD_PASSWORD = "bad_password"
    NO_TENANT = "no_tenant"
    ALREADY_ACTIVE = "already_active"
    TIMEOUT = "timeout"
    CONNECTION_LOST = "connection_lost"
    DATABASE_ERROR = "database_error"

    @property
    def user_message(self) -> str:
        """Fixed text shown to the user for this failure."""
        return _LOGIN_MESSAGES.get(self, UNAVAILABLE_MESSAGE)


# NOT_FOUND, INACTIVE and BAD_PASSWORD share one message so the form does
# not reveal which usernames exist
_LOGIN_MESSAGES = {
    LoginError.NOT_FOUND: INVALID_CREDENTIALS_MESSAGE,
    LoginError.INACTIVE: INVALID_CREDENTIALS_MESSAGE,
    LoginError.BAD_PASSWORD: INVALID_CREDENTIALS_MESSAGE,
    LoginError.NO_TENANT: NO_TENANT_MESSAGE,
    LoginError.ALREADY_ACTIVE: ALREADY_ACTIVE_MESSAGE,
}


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a login attempt.

    Attributes:
        ok: True when a session was registered.
        error: Failure reason, None on success.
        message: Text for the login form, None on success.
        session: The registered session on success.
    """

    ok: bool
    error: LoginError | None = None
    message: str | None = None
    session: TenantSession | None = None

    @classmethod
    def success(cls, session: TenantSession) -> "LoginResult":
        return cls(ok=True, session=session)

    @classmethod
    def failure(cls, error: LoginError) -> "LoginResult":
        return cls(ok=False, error=error, message=error.user_message)


class AuthenticationError(Exception):
    """Base exception for authentication errors."""

    pass


class LoginFailure(AuthenticationError):
    """Expected login failure raised inside the login transaction.

    Attributes:
        error: Failure reason.
    """

    def __init__(self, error: LoginError, detail: str) -> None:
        super().__init__(detail)
        self.error = error


class PasswordResetUnavailableError(AuthenticationError):
    """Raised when password reset is used without a configured service."""

    pass


_dummy_hashes: dict[int, str] = {}
_dummy_lock = threading.Lock()


def _dummy_hash(hasher: PasswordHasher) -> str:
    """Throwaway bcrypt hash at the hasher's cost, made once per cost."""
    with _dummy_lock:
        if hasher.rounds not in _dummy_hashes:
            _dummy_hashes[hasher.rounds] = hasher.hash(secrets.token_urlsafe(16))
        return _dummy_hashes[hasher.rounds]


def classify_login_error(exc: BaseException) -> LoginError:
    """Map a database exception to TIMEOUT, CONNECTION_LOST or DATABASE_ERROR."""
    if is_timeout(exc):
        return LoginError.TIMEOUT
    if is_disconnect(exc):
        return LoginError.CONNECTION_LOST
    return LoginError.DATABASE_ERROR


class AuthenticationTransaction:
    """Runs the login protocol and owns the login/logout entry points.

    Concurrent login() calls are serialised. The machine rests in
    UNAUTHENTICATED or SESSION_ACTIVE between calls.

    Attributes:
        state: Current LoginState.
        last_failure: Reason of the most recent failed attempt.
    """

    def __init__(
        self,
        database: Database,
        registry: SessionRegistry,
        hasher: PasswordHasher | None = None,
        repository: CredentialRepository | None = None,
        gate: RLSBypassGate | None = None,
        settings: AuthSettings | None = None,
        reset_service: PasswordResetService | None = None,
    ) -> None:
        self._settings = settings or AuthSettings()
        self._database = database
        self._registry = registry
        self._hasher = hasher or PasswordHasher(rounds=self._settings.bcrypt_rounds)
        self._repository = repository or CredentialRepository()
        self._gate = gate or RLSBypassGate()
        self._reset_service = reset_service
        self._lock = threading.Lock()
        self._state = LoginState.UNAUTHENTICATED
        self._last_failure: LoginError | None = None

    @property
    def state(self) -> LoginState:
        return self._state

    @property
    def last_failure(self) -> LoginError | None:
        return self._last_failure

    def login(self, username: str, password: str) -> LoginResult:
        """Authenticate and register a tenant session.

        Args:
            username: Username as typed (trimmed and lower-cased here).
            password: Password as typed.

        Returns:
            LoginResult with the session on success, or the failure reason
            and its user message.
        """
        with self._lock:
            self._last_failure = None
            self._transition(LoginState.CREDENTIALS_SUBMITTED)
            normalised = (username or "").strip().lower()

            try:
                session = self._login(normalised, password)
            except LoginFailure as e:
                return self._fail(normalised, e.error, str(e))
            except (SQLAlchemyError, DatabaseError, RowSecurityError, SessionError) as e:
                error = classify_login_error(e)
                logger.error("Login for %s failed with %s: %s", normalised, error.value, e)
                return self._fail(normalised, error, str(e))

            self._transition(LoginState.SESSION_ACTIVE)
            bind_context(user_id=str(session.user_id), tenant_id=str(session.tenant_id))
            audit.info("login_succeeded", username=normalised, role=session.role.value)
            return LoginResult.success(session)

    def logout(self) -> None:
        """Destroy the active session, if any."""
        with self._lock:
            self._registry.destroy()
            self._state = LoginState.UNAUTHENTICATED
        audit.info("logged_out")
        clear_context()

    def request_password_reset(self, email: str) -> ResetResult:
        """Start the forgot-password flow. See PasswordResetService."""
        return self._require_reset_service().request_password_reset(email)

    def reset_password(self, email: str, token: str, new_password: str) -> ResetResult:
        """Finish the forgot-password flow. See PasswordResetService."""
        return self._require_reset_service().reset_password(email, token, new_password)

    def _require_reset_service(self) -> PasswordResetService:
        if self._reset_service is None:
            raise PasswordResetUnavailableError("Password reset is not configured")
        return self._reset_service

    def _transition(self, state: LoginState) -> None:
        logger.debug("Login state %s -> %s", self._state.value, state.value)
        self._state = state

    def _fail(self, username: str, error: LoginError, detail: str) -> LoginResult:
        self._transition(LoginState.FAILED)
        self._last_failure = error
        logger.debug("Login failure detail for %s: %s", username or "<blank>", detail)
        audit.warning("login_failed", username=username or None, reason=error.value)
        self._transition(LoginState.UNAUTHENTICATED)
        return LoginResult.failure(error)

    def _login(self, username: str, password: str) -> TenantSession:
        if not username or not password or not password.strip():
            raise LoginFailure(LoginError.NOT_FOUND, "blank username or password")

        credential = self._authenticate(username, password)

        if credential.tenant_id is None:
            raise LoginFailure(LoginError.NO_TENANT, "account has no school")

        return self._open_session(credential)

    def _authenticate(self, username: str, password: str) -> Credential:
        """Run the C1 transaction and return the verified credential."""
        with self._database.connect() as conn:
            with transaction(conn, timeout_ms=self._settings.login_timeout_ms):
                with self._gate.login_bypass(conn, username):
                    self._transition(LoginState.BYPASS_ENABLED)
                    try:
                        matches = self._repository.find_by_username(conn, username)
                    except CorruptCredentialError as e:
                        logger.error("Account %s could not be read: %s", username, e)
                        self._reject(password, LoginError.CORRUPT_ACCOUNT, "unreadable account row")
                    self._transition(LoginState.ROW_FETCHED)

                    credential = self._check_account(username, matches, password)
                    self._transition(LoginState.ACCOUNT_CHECKED)

                    self._verify_password(credential, password)
                    self._transition(LoginState.PASSWORD_VERIFIED)
        return credential

    def _check_account(self, username: str, matches: list[Credential], password: str) -> Credential:
        if not matches:
            self._reject(password, LoginError.NOT_FOUND, "no such user")
        if len(matches) > 1:
            logger.error("Username %s matches more than one account", username)
            self._reject(password, LoginError.CORRUPT_ACCOUNT, "ambiguous username")

        credential = matches[0]
        if not credential.is_active:
            self._reject(password, LoginError.INACTIVE, "account disabled")
        if not credential.password_hash or not credential.password_hash.strip():
            logger.error("Account %s has no password hash", username)
            self._reject(password, LoginError.CORRUPT_ACCOUNT, "missing password hash")
        return credential

    def _reject(self, password: str, error: LoginError, detail: str) -> NoReturn:
        """Fail before the stored hash was checked.

        One verification against a throwaway hash still runs, so unknown and
        disabled accounts take as long to reject as a wrong password.
        """
        self._hasher.verify(_dummy_hash(self._hasher), password)
        raise LoginFailure(error, detail)

    def _verify_password(self, credential: Credential, password: str) -> None:
        try:
            matched = self._hasher.verify(credential.password_hash, password)
        except CorruptHashError as e:
            logger.error("Account %s has a corrupt password hash", credential.username)
            raise LoginFailure(LoginError.CORRUPT_ACCOUNT, "corrupt password hash") from e
        if not matched:
            raise LoginFailure(LoginError.BAD_PASSWORD, "password mismatch")

    def _open_session(self, credential: Credential) -> TenantSession:
        """Pin C2 to the credential's school and register the session."""
        connection = self._database.dedicated_connection()
        try:
            pin_tenant(connection, credential.tenant_id, credential.user_id)
            self._transition(LoginState.TENANT_PINNED)
            return self._registry.create(
                user_id=credential.user_id,
                username=credential.username,
                tenant_id=credential.tenant_id,
                connection=connection,
                role=credential.role,
                is_active_coordinator=credential.is_active_coordinator,
                first_login=credential.first_login,
            )
        except SessionAlreadyActiveError as e:
            _close_connection(connection)
            raise LoginFailure(LoginError.ALREADY_ACTIVE, str(e)) from e
        except BaseException:
            _close_connection(connection)
            raise


def _close_connection(connection: Connection) -> None:
    try:
        connection.invalidate()
        connection.close()
    except SQLAlchemyError as e:
        logger.warning("Error closing session connection: %s", e)
