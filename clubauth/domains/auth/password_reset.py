# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Forgot-password flow.

Nobody is signed in when a password is reset, so the user row has to be
found across tenants. Both steps look the user up by email under the
PASSWORD_RESET_LOOKUP bypass, clear it, and scope the rest of the
transaction to the user's school before writing.

1. request_password_reset(email): store the SHA-256 of a fresh random token
   with a one-hour expiry and hand the raw token to the ResetNotifier after
   commit. An unknown email gets the same result and no token.
2. reset_password(email, token, new_password): check the token, the password
   policy and the recent password history, then store the new hash and
   consume the token.
"""

import enum
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from clubauth.core.config.settings import AuthSettings
from clubauth.domains.auth.history import PasswordHistory
from clubauth.domains.auth.password import (
    PASSWORD_POLICY_MESSAGE,
    PasswordHasher,
    is_password_strong,
)
from clubauth.domains.auth.repository import (
    CorruptCredentialError,
    Credential,
    CredentialRepository,
)
from clubauth.infrastructure.database.connection import Database, DatabaseError
from clubauth.infrastructure.database.errors import is_disconnect, is_timeout
from clubauth.infrastructure.database.rls import (
    RLSBypassGate,
    RowSecurityError,
    scope_transaction_to_tenant,
)
from clubauth.infrastructure.database.transaction import transaction
from clubauth.utils.datetime import is_expired, minutes_from_now

logger = logging.getLogger(__name__)

RESET_TOKEN_BYTES = 32

REQUEST_ACCEPTED_MESSAGE = "If an account exists for that email, a reset link has been sent."
PASSWORD_CHANGED_MESSAGE = "Your password has been changed. You can now sign in."


class ResetError(enum.Enum):
    """Reasons a reset step can fail."""

    INVALID_TOKEN = "invalid_token"
    WEAK_PASSWORD = "weak_password"
    PASSWORD_REUSED = "password_reused"
    TIMEOUT = "timeout"
    CONNECTION_LOST = "connection_lost"
    DATABASE_ERROR = "database_error"

    @property
    def user_message(self) -> str:
        return _RESET_MESSAGES.get(
            self, "Unable to reset your password right now. Please try again later."
        )


_RESET_MESSAGES = {
    ResetError.INVALID_TOKEN: "The reset code is invalid or has expired.",
    ResetError.WEAK_PASSWORD: PASSWORD_POLICY_MESSAGE,
    ResetError.PASSWORD_REUSED: "Choose a password you have not used recently.",
}


@dataclass(frozen=True)
class ResetResult:
    """Outcome shown to the user. Never carries exception text."""

    ok: bool
    message: str
    error: ResetError | None = None

    @classmethod
    def accepted(cls) -> "ResetResult":
        return cls(ok=True, message=REQUEST_ACCEPTED_MESSAGE)

    @classmethod
    def changed(cls) -> "ResetResult":
        return cls(ok=True, message=PASSWORD_CHANGED_MESSAGE)

    @classmethod
    def failure(cls, error: ResetError) -> "ResetResult":
        return cls(ok=False, message=error.user_message, error=error)


class ResetNotifier(Protocol):
    """Delivers a reset token to the account owner (email is external)."""

    def send_reset_token(self, email: str, username: str, token: str, expires_at: datetime) -> None:
        ...


class PasswordResetError(Exception):
    """Base exception for password reset errors."""

    pass


class ResetFailure(PasswordResetError):
    """Expected failure raised inside the reset transaction."""

    def __init__(self, error: ResetError, detail: str) -> None:
        super().__init__(detail)
        self.error = error


def generate_reset_token() -> str:
    """Generate a URL-safe random reset token."""
    return secrets.token_urlsafe(RESET_TOKEN_BYTES)


def hash_reset_token(token: str) -> str:
    """SHA-256 hex digest stored in place of the raw token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def classify_reset_error(exc: BaseException) -> ResetError:
    if is_timeout(exc):
        return ResetError.TIMEOUT
    if is_disconnect(exc):
        return ResetError.CONNECTION_LOST
    return ResetError.DATABASE_ERROR


@dataclass(frozen=True)
class _IssuedToken:
    credential: Credential
    token: str
    expires_at: datetime


class PasswordResetService:
    """Cross-tenant password reset through the reset lookup bypass.

    Attributes:
        _database: Database owning the pooled lookup engine.
        _notifier: Delivery of reset tokens.
    """

    def __init__(
        self,
        database: Database,
        notifier: ResetNotifier,
        hasher: PasswordHasher | None = None,
        repository: CredentialRepository | None = None,
        gate: RLSBypassGate | None = None,
        settings: AuthSettings | None = None,
    ) -> None:
        self._settings = settings or AuthSettings()
        self._database = database
        self._notifier = notifier
        self._hasher = hasher or PasswordHasher(rounds=self._settings.bcrypt_rounds)
        self._repository = repository or CredentialRepository()
        self._gate = gate or RLSBypassGate()
        self._history = PasswordHistory(
            self._repository, self._hasher, self._settings.password_history_limit
        )

    def request_password_reset(self, email: str) -> ResetResult:
        """Issue a reset token for the account registered under ``email``.

        Args:
            email: Email entered on the forgot-password form.

        Returns:
            The accepted result whether or not the account exists, or an
            operational failure.
        """
        email = (email or "").strip().lower()
        if not email:
            return ResetResult.accepted()

        try:
            issued = self._issue_token(email)
        except (SQLAlchemyError, DatabaseError, RowSecurityError, CorruptCredentialError) as e:
            error = classify_reset_error(e)
            logger.error("Password reset request failed (%s): %s", error.value, e)
            return ResetResult.failure(error)

        if issued is None:
            return ResetResult.accepted()

        try:
            self._notifier.send_reset_token(
                email, issued.credential.username, issued.token, issued.expires_at
            )
        except Exception:
            # Result must not depend on whether the account exists
            logger.exception("Failed to deliver reset token for %s", issued.credential.username)
            return ResetResult.accepted()

        logger.info("Reset token issued for %s", issued.credential.username)
        return ResetResult.accepted()

    def _issue_token(self, email: str) -> _IssuedToken | None:
        with self._database.connect() as conn, transaction(
            conn, timeout_ms=self._settings.login_timeout_ms
        ):
            matches = self._gate.with_reset_bypass(
                conn, lambda c: self._repository.find_by_email(c, email)
            )
            credential = self._single_resettable(matches)
            if credential is None:
                return None

            scope_transaction_to_tenant(conn, credential.tenant_id)
            token = generate_reset_token()
            expires_at = minutes_from_now(self._settings.reset_token_ttl_minutes)
            self._repository.store_reset_token(
                conn, credential.user_id, hash_reset_token(token), expires_at
            )
        return _IssuedToken(credential=credential, token=token, expires_at=expires_at)

    def _single_resettable(self, matches: list[Credential]) -> Credential | None:
        if not matches:
            logger.info("Password reset requested for an unknown email")
            return None
        if len(matches) > 1:
            logger.error("Password reset email matches %d accounts", len(matches))
            return None
        credential = matches[0]
        if not credential.is_active or credential.tenant_id is None:
            logger.info("Password reset requested for unusable account %s", credential.username)
            return None
        return credential

    def reset_password(self, email: str, token: str, new_password: str) -> ResetResult:
        """Set a new password using a previously issued token.

        The token is single-use: a successful reset clears it.

        Args:
            email: Email of the account.
            token: Raw token from the reset message.
            new_password: Password to set.

        Returns:
            The changed result, or a failure naming the reason.
        """
        email = (email or "").strip().lower()
        token = (token or "").strip()
        if not email or not token:
            return ResetResult.failure(ResetError.INVALID_TOKEN)

        try:
            username = self._apply_reset(email, token, new_password)
        except ResetFailure as e:
            logger.warning("Password reset rejected (%s): %s", e.error.value, e)
            return ResetResult.failure(e.error)
        except (SQLAlchemyError, DatabaseError, RowSecurityError, CorruptCredentialError) as e:
            error = classify_reset_error(e)
            logger.error("Password reset failed (%s): %s", error.value, e)
            return ResetResult.failure(error)

        logger.info("Password reset completed for %s", username)
        return ResetResult.changed()

    def _apply_reset(self, email: str, token: str, new_password: str) -> str:
        with self._database.connect() as conn, transaction(
            conn, timeout_ms=self._settings.login_timeout_ms
        ):
            matches = self._gate.with_reset_bypass(
                conn, lambda c: self._repository.find_by_email(c, email)
            )
            credential = self._single_resettable(matches)
            if credential is None or not self._token_matches(credential, token):
                raise ResetFailure(ResetError.INVALID_TOKEN, "token does not match")

            if not is_password_strong(new_password):
                raise ResetFailure(ResetError.WEAK_PASSWORD, "password policy not met")

            scope_transaction_to_tenant(conn, credential.tenant_id)
            if self._history.is_reused(conn, credential, new_password):
                raise ResetFailure(ResetError.PASSWORD_REUSED, "password used recently")

            new_hash = self._hasher.hash(new_password)
            self._repository.update_password(conn, credential.user_id, new_hash)
            self._history.record(conn, credential.user_id, credential.tenant_id, new_hash)
        return credential.username

    def _token_matches(self, credential: Credential, token: str) -> bool:
        if not credential.reset_token_hash or is_expired(credential.reset_token_expiry):
            return False
        return hmac.compare_digest(credential.reset_token_hash, hash_reset_token(token))
