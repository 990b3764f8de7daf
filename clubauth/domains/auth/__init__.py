# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Authentication domain services.

This module provides:
- Password hashing and the password policy
- Credential lookup SQL
- The login state machine (two-connection login protocol)
- The forgot-password flow
- Password change and account creation for the signed-in user

Exports:
    PasswordHasher: Secure password hashing using bcrypt.
    CredentialRepository: Queries over users and password history.
    AuthenticationTransaction: Login/logout entry points for the UI.
    PasswordResetService: Token-based password reset.
    AccountService: Password change and account creation.
"""

from clubauth.domains.auth.account import AccountError, AccountResult, AccountService
from clubauth.domains.auth.password import CorruptHashError, PasswordHasher, is_password_strong
from clubauth.domains.auth.password_reset import (
    PasswordResetService,
    ResetError,
    ResetNotifier,
    ResetResult,
)
from clubauth.domains.auth.repository import Credential, CredentialRepository
from clubauth.domains.auth.service import (
    AuthenticationError,
    AuthenticationTransaction,
    LoginError,
    LoginResult,
    LoginState,
)

__all__ = [
    "AccountError",
    "AccountResult",
    "AccountService",
    "AuthenticationError",
    "AuthenticationTransaction",
    "CorruptHashError",
    "Credential",
    "CredentialRepository",
    "LoginError",
    "LoginResult",
    "LoginState",
    "PasswordHasher",
    "PasswordResetService",
    "ResetError",
    "ResetNotifier",
    "ResetResult",
    "is_password_strong",
]
