# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Account management for the signed-in user.

Both operations run on the session's tenant-pinned connection, so they can
only ever read or write rows of the signed-in user's school.

change_password(current_password, new_password)
    Verify the current password, apply the password policy and the history
    rules, store the new hash and clear the first-login flag.

create_account(username, email, full_name, role, ...)
    Create a teacher or coordinator in the session's school. Only the active
    coordinator or a system administrator may do this. The transaction locks
    the school's coordinator rows like an activation does, so a new account
    can only be made the active coordinator while the school has none. Without
    a password a temporary one is generated and returned once.

Example:
    accounts = AccountService(registry)
    result = accounts.create_account("bob", "bob@school.example", "Bob", Role.TEACHER)
    mailer.send_welcome(result.temporary_password)
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from clubauth.core.config.settings import AuthSettings
from clubauth.domains.auth.history import PasswordHistory
from clubauth.domains.auth.password import (
    PASSWORD_POLICY_MESSAGE,
    CorruptHashError,
    PasswordHasher,
    generate_temporary_password,
    is_password_strong,
)
from clubauth.domains.auth.repository import CorruptCredentialError, CredentialRepository
from clubauth.domains.coordinator.repository import CoordinatorRepository
from clubauth.domains.session.registry import SessionRegistry
from clubauth.infrastructure.database.errors import is_disconnect, is_timeout
from clubauth.infrastructure.database.schema import Role
from clubauth.infrastructure.database.transaction import transaction
from clubauth.utils.logging import get_logger

logger = logging.getLogger(__name__)
audit = get_logger("clubauth.audit")

# Roles an account manager may hand out
CREATABLE_ROLES = frozenset({Role.TEACHER, Role.CLUB_COORDINATOR})


class AccountError(enum.Enum):
    """Reasons an account operation can fail."""

    WRONG_PASSWORD = "wrong_password"
    WEAK_PASSWORD = "weak_password"
    PASSWORD_REUSED = "password_reused"
    NOT_PERMITTED = "not_permitted"
    INVALID_ACCOUNT = "invalid_account"
    ACCOUNT_EXISTS = "account_exists"
    COORDINATOR_EXISTS = "coordinator_exists"
    CORRUPT_ACCOUNT = "corrupt_account"
    TIMEOUT = "timeout"
    CONNECTION_LOST = "connection_lost"
    DATABASE_ERROR = "database_error"

    @property
    def user_message(self) -> str:
        return _ACCOUNT_MESSAGES.get(self, "Unable to save the account right now. Please try again later.")


_ACCOUNT_MESSAGES = {
    AccountError.WRONG_PASSWORD: "Your current password is incorrect.",
    AccountError.WEAK_PASSWORD: PASSWORD_POLICY_MESSAGE,
    AccountError.PASSWORD_REUSED: "Choose a password you have not used recently.",
    AccountError.NOT_PERMITTED: "Only the active coordinator can manage accounts.",
    AccountError.INVALID_ACCOUNT: "Enter a username, an email address and a valid role.",
    AccountError.ACCOUNT_EXISTS: "That username or email address is already in use.",
    AccountError.COORDINATOR_EXISTS: "This school already has an active coordinator.",
}


@dataclass(frozen=True)
class AccountResult:
    """Outcome shown to the user.

    Attributes:
        ok: True when the change was committed.
        message: Text for the form.
        error: Failure reason, None on success.
        user_id: Id of a created account.
        temporary_password: Generated password of a created account, to be
            handed to its owner once.
    """

    ok: bool
    message: str
    error: AccountError | None = None
    user_id: UUID | None = None
    temporary_password: str | None = None

    @classmethod
    def failure(cls, error: AccountError) -> "AccountResult":
        return cls(ok=False, message=error.user_message, error=error)


class AccountFailure(Exception):
    """Expected failure raised inside an account transaction."""

    def __init__(self, error: AccountError, detail: str) -> None:
        super().__init__(detail)
        self.error = error


class AccountService:
    """Password change and account creation on the session connection.

    Attributes:
        _registry: Source of the signed-in session.
        _history: Password history rules.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        hasher: PasswordHasher | None = None,
        repository: CredentialRepository | None = None,
        coordinators: CoordinatorRepository | None = None,
        settings: AuthSettings | None = None,
    ) -> None:
        self._settings = settings or AuthSettings()
        self._registry = registry
        self._hasher = hasher or PasswordHasher(rounds=self._settings.bcrypt_rounds)
        self._repository = repository or CredentialRepository()
        self._coordinators = coordinators or CoordinatorRepository()
        self._history = PasswordHistory(
            self._repository, self._hasher, self._settings.password_history_limit
        )

    def change_password(self, current_password: str, new_password: str) -> AccountResult:
        """Replace the signed-in user's password.

        Args:
            current_password: Password the user signed in with.
            new_password: Password to set.

        Returns:
            The changed result, or a failure naming the reason.

        Raises:
            NoActiveSessionError: If nobody is signed in.
        """
        session = self._registry.require()
        if not current_password:
            return AccountResult.failure(AccountError.WRONG_PASSWORD)
        if not is_password_strong(new_password):
            return AccountResult.failure(AccountError.WEAK_PASSWORD)

        try:
            with session.use() as conn, transaction(
                conn, timeout_ms=self._settings.login_timeout_ms
            ):
                credential = self._repository.find_by_id(conn, session.user_id)
                if credential is None:
                    raise AccountFailure(AccountError.CORRUPT_ACCOUNT, "own row not visible")
                try:
                    matched = self._hasher.verify(credential.password_hash, current_password)
                except CorruptHashError as e:
                    logger.error("Account %s has a corrupt password hash", session.username)
                    raise AccountFailure(AccountError.CORRUPT_ACCOUNT, "corrupt password hash") from e
                if not matched:
                    raise AccountFailure(AccountError.WRONG_PASSWORD, "current password mismatch")

                if self._history.is_reused(conn, credential, new_password):
                    raise AccountFailure(AccountError.PASSWORD_REUSED, "password used recently")

                new_hash = self._hasher.hash(new_password)
                self._repository.update_password(conn, session.user_id, new_hash)
                self._history.record(conn, session.user_id, session.tenant_id, new_hash)
        except AccountFailure as e:
            logger.warning("Password change for %s rejected (%s): %s", session.username, e.error.value, e)
            return AccountResult.failure(e.error)
        except (SQLAlchemyError, CorruptCredentialError) as e:
            return self._database_failure("Password change", e)

        session.mark_password_changed()
        audit.info("password_changed", username=session.username)
        return AccountResult(ok=True, message="Your password has been changed.")

    def create_account(
        self,
        username: str,
        email: str,
        full_name: str | None,
        role: Role | str,
        password: str | None = None,
        make_active_coordinator: bool = False,
    ) -> AccountResult:
        """Create an account in the signed-in user's school.

        Args:
            username: Login name, stored lower-case.
            email: Email address, stored lower-case.
            full_name: Display name.
            role: Teacher or club coordinator.
            password: Initial password. Generated when omitted.
            make_active_coordinator: Make a new coordinator the school's
                active coordinator.

        Returns:
            The created result with the new user id, or a failure.

        Raises:
            NoActiveSessionError: If nobody is signed in.
        """
        session = self._registry.require()
        if not (session.is_active_coordinator or session.is_system_administrator):
            return AccountResult.failure(AccountError.NOT_PERMITTED)

        username = (username or "").strip().lower()
        email = (email or "").strip().lower()
        try:
            role = Role(role)
        except ValueError:
            return AccountResult.failure(AccountError.INVALID_ACCOUNT)
        if not username or not email or role not in CREATABLE_ROLES:
            return AccountResult.failure(AccountError.INVALID_ACCOUNT)

        temporary_password = None
        if password is None:
            password = temporary_password = generate_temporary_password()
        elif not is_password_strong(password):
            return AccountResult.failure(AccountError.WEAK_PASSWORD)

        activate = role is Role.CLUB_COORDINATOR and make_active_coordinator
        user_id = uuid.uuid4()
        try:
            with session.use() as conn, transaction(
                conn, timeout_ms=self._settings.activation_timeout_ms
            ):
                self._coordinators.lock_coordinators(conn, session.tenant_id)
                active = self._coordinators.active_coordinator_id(conn, session.tenant_id)
                if session.is_coordinator and active != session.user_id:
                    raise AccountFailure(AccountError.NOT_PERMITTED, "no longer the active coordinator")
                if activate and active is not None:
                    raise AccountFailure(AccountError.COORDINATOR_EXISTS, "school has an active coordinator")

                password_hash = self._hasher.hash(password)
                self._repository.insert_user(
                    conn,
                    user_id=user_id,
                    username=username,
                    email=email,
                    full_name=full_name,
                    password_hash=password_hash,
                    tenant_id=session.tenant_id,
                    role=role,
                    is_active_coordinator=activate,
                )
                self._history.record(conn, user_id, session.tenant_id, password_hash)
        except AccountFailure as e:
            logger.warning("Account creation by %s rejected (%s): %s", session.username, e.error.value, e)
            if e.error is AccountError.NOT_PERMITTED:
                self._registry.refresh_coordinator_flag(session.user_id, False)
            return AccountResult.failure(e.error)
        except IntegrityError as e:
            logger.warning("Account %s already exists: %s", username, e)
            return AccountResult.failure(AccountError.ACCOUNT_EXISTS)
        except SQLAlchemyError as e:
            return self._database_failure("Account creation", e)

        audit.info(
            "account_created",
            username=username,
            role=role.value,
            active_coordinator=activate,
            created_by=session.username,
        )
        return AccountResult(
            ok=True,
            message=f"Account {username} was created.",
            user_id=user_id,
            temporary_password=temporary_password,
        )

    def _database_failure(self, operation: str, exc: BaseException) -> AccountResult:
        if is_timeout(exc):
            error = AccountError.TIMEOUT
        elif is_disconnect(exc):
            error = AccountError.CONNECTION_LOST
            self._registry.handle_error(exc)
        else:
            error = AccountError.DATABASE_ERROR
        logger.error("%s failed (%s): %s", operation, error.value, exc)
        return AccountResult.failure(error)
