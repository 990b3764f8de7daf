# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Password hashing and strength checks using bcrypt.

Stored hashes are standard ``$2b$<cost>$...`` strings. Verification is
constant-time (bcrypt.checkpw). A stored value that is not a bcrypt hash is
an account defect and raises CorruptHashError instead of reading as a
mismatch, so the caller can log it and report an operational failure.

Example:
    >>> hasher = PasswordHasher(rounds=12)
    >>> hashed = hasher.hash("Club#2024pass")
    >>> hasher.verify(hashed, "Club#2024pass")
    True
"""

import logging
import secrets
import string

import bcrypt

logger = logging.getLogger(__name__)

# bcrypt only reads the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 64

PASSWORD_POLICY_MESSAGE = (
    "Password must be 8 to 64 characters and include an upper-case letter, "
    "a lower-case letter, a digit and a special character."
)

TEMPORARY_PASSWORD_LENGTH = 12
_TEMPORARY_ALPHABET = string.ascii_letters + string.digits + "!@#$%&*?"


class CorruptHashError(Exception):
    """Raised when a stored password hash is not a valid bcrypt hash."""

    pass


class PasswordHasher:
    """Secure password hashing using bcrypt.

    Each hash gets a fresh random salt. The cost factor comes from
    AuthSettings.bcrypt_rounds; the default of 12 keeps a verification above
    100 ms on current hardware.

    Attributes:
        _rounds: Number of bcrypt rounds for hashing.

    Example:
        >>> hasher = PasswordHasher()
        >>> hashed = hasher.hash("Secure#pass1")
        >>> hasher.verify(hashed, "Secure#pass1")
        True
        >>> hasher.verify(hashed, "wrong_password")
        False
    """

    def __init__(self, rounds: int = 12) -> None:
        """Initialize the password hasher.

        Args:
            rounds: Number of bcrypt rounds (log2 of the work factor).
        """
        self._rounds = rounds

    @property
    def rounds(self) -> int:
        """Configured cost factor."""
        return self._rounds

    def hash(self, password: str) -> str:
        """Hash a password using bcrypt.

        Args:
            password: Plain text password to hash.

        Returns:
            Bcrypt hash string with salt embedded.

        Raises:
            ValueError: If password is empty or longer than bcrypt accepts.
        """
        if not password:
            raise ValueError("Password cannot be empty")

        encoded = password.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            raise ValueError("Password is too long")

        salt = bcrypt.gensalt(rounds=self._rounds)
        return bcrypt.hashpw(encoded, salt).decode("utf-8")

    def verify(self, stored_hash: str | None, candidate: str) -> bool:
        """Verify a candidate password against a stored hash.

        Args:
            stored_hash: Bcrypt hash read from the users row.
            candidate: Plain text password submitted by the user.

        Returns:
            True if the candidate matches, False otherwise.

        Raises:
            CorruptHashError: If the stored hash is missing or malformed.
        """
        if not stored_hash or not stored_hash.strip():
            raise CorruptHashError("Stored password hash is empty")

        if not candidate:
            return False

        encoded = candidate.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            return False

        try:
            return bcrypt.checkpw(encoded, stored_hash.encode("utf-8"))
        except ValueError as e:
            logger.error("Stored password hash is not a valid bcrypt hash: %s", str(e))
            raise CorruptHashError("Stored password hash is malformed") from e

    def needs_rehash(self, password_hash: str) -> bool:
        """Check if a hash was made with a different cost factor.

        Args:
            password_hash: Existing password hash to check.

        Returns:
            True if the hash should be replaced on the next successful
            password change, False otherwise.
        """
        if not password_hash:
            return False

        parts = password_hash.split("$")
        if len(parts) < 4 or not parts[2].isdigit():
            return False

        return int(parts[2]) != self._rounds


def is_password_strong(password: str | None) -> bool:
    """Check the password policy.

    A strong password has 8 to 64 characters and contains at least one
    upper-case letter, one lower-case letter, one digit and one special
    character.
    """
    if not password:
        return False
    if not MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH:
        return False
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return False

    return (
        any(c.isupper() for c in password)
        and any(c.islower() for c in password)
        and any(c.isdigit() for c in password)
        and any(not c.isalnum() and not c.isspace() for c in password)
    )



def generate_temporary_password(length: int = TEMPORARY_PASSWORD_LENGTH) -> str:
    """Generate a random password that satisfies the password policy."""
    while True:
        candidate = "".join(secrets.choice(_TEMPORARY_ALPHABET) for _ in range(length))
        if is_password_strong(candidate):
            return candidate

# Default instance for convenience
_default_hasher = PasswordHasher()


def hash_password(password: str) -> str:
    """Hash a password using the default hasher.

    Args:
        password: Plain text password to hash.

    Returns:
        Bcrypt hash string.
    """
    return _default_hasher.hash(password)


def verify_password(stored_hash: str | None, candidate: str) -> bool:
    """Verify a password using the default hasher.

    Args:
        stored_hash: Bcrypt hash to verify against.
        candidate: Plain text password to verify.

    Returns:
        True if the password matches, False otherwise.
    """
    return _default_hasher.verify(stored_hash, candidate)
