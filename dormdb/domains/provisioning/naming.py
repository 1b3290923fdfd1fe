# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Resource naming and secret generation.

Database and account names are pure functions of the identity key, so the
auditor can recompute the expected backend state from a key alone and map
any backend name matching the pattern back to the key that owns it.

Identity keys are restricted to a character set that never needs quoting
inside a MySQL identifier. Derived names are validated again before any
statement is formed; the raw identity key is never interpolated.
"""

import re
import secrets
import string
from dataclasses import dataclass

DATABASE_PREFIX = "db_"
ACCOUNT_PREFIX = "user_"

# MySQL caps account names at 32 characters; user_ + 27 = 32.
IDENTITY_KEY_MAX_LENGTH = 32 - len(ACCOUNT_PREFIX)

_IDENTITY_BODY = r"[A-Za-z0-9](?:[A-Za-z0-9_]{0,%d}[A-Za-z0-9])?" % (
    IDENTITY_KEY_MAX_LENGTH - 2
)
IDENTITY_KEY_PATTERN = re.compile(rf"^{_IDENTITY_BODY}\Z")
DATABASE_NAME_PATTERN = re.compile(rf"^{DATABASE_PREFIX}(?P<key>{_IDENTITY_BODY})\Z")
ACCOUNT_NAME_PATTERN = re.compile(rf"^{ACCOUNT_PREFIX}(?P<key>{_IDENTITY_BODY})\Z")

MIN_SECRET_LENGTH = 16
SECRET_SYMBOLS = "!@#$%^&*"
SECRET_ALPHABET = string.ascii_letters + string.digits + SECRET_SYMBOLS


class UnsafeIdentifierError(ValueError):
    """Raised when a value cannot be turned into a safe backend identifier."""

    pass


@dataclass(frozen=True)
class ResourceNames:
    """Deterministic backend resource names for one identity key.

    Attributes:
        identity_key: The identity key the names were derived from.
        database_name: Name of the per-identity database.
        account_name: Name of the per-identity account.
    """

    identity_key: str
    database_name: str
    account_name: str


def is_valid_identity_key(identity_key: object) -> bool:
    """Check the identity key format predicate.

    A valid key is 1-27 ASCII letters, digits or underscores, starting and
    ending with a letter or digit.

    Args:
        identity_key: Candidate value (any type; non-strings are invalid).

    Returns:
        True if the key may be processed further.
    """
    return isinstance(identity_key, str) and bool(IDENTITY_KEY_PATTERN.match(identity_key))


def derive(identity_key: str) -> ResourceNames:
    """Derive the database and account names for an identity key.

    Args:
        identity_key: A key satisfying is_valid_identity_key().

    Returns:
        ResourceNames for the key.

    Raises:
        UnsafeIdentifierError: If the key or a derived name is not safe.
    """
    if not is_valid_identity_key(identity_key):
        raise UnsafeIdentifierError(f"Invalid identity key: {identity_key!r}")

    database_name = f"{DATABASE_PREFIX}{identity_key}"
    account_name = f"{ACCOUNT_PREFIX}{identity_key}"
    ensure_database_name(database_name)
    ensure_account_name(account_name)

    return ResourceNames(
        identity_key=identity_key,
        database_name=database_name,
        account_name=account_name,
    )


def ensure_database_name(name: str) -> str:
    """Validate a database name before it is placed in a statement.

    Raises:
        UnsafeIdentifierError: If the name does not match the naming pattern.
    """
    if not DATABASE_NAME_PATTERN.match(name):
        raise UnsafeIdentifierError(f"Database name fails naming pattern: {name!r}")
    return name


def ensure_account_name(name: str) -> str:
    """Validate an account name before it is placed in a statement.

    Raises:
        UnsafeIdentifierError: If the name does not match the naming pattern.
    """
    if not ACCOUNT_NAME_PATTERN.match(name):
        raise UnsafeIdentifierError(f"Account name fails naming pattern: {name!r}")
    return name


def identity_from_database_name(name: str) -> str | None:
    """Map a backend database name back to its identity key.

    Returns:
        The identity key, or None if the name is not one of ours.
    """
    match = DATABASE_NAME_PATTERN.match(name)
    return match.group("key") if match else None


def identity_from_account_name(name: str) -> str | None:
    """Map a backend account name back to its identity key.

    Returns:
        The identity key, or None if the name is not one of ours.
    """
    match = ACCOUNT_NAME_PATTERN.match(name)
    return match.group("key") if match else None


def generate_secret(length: int = MIN_SECRET_LENGTH) -> str:
    """Generate a fresh account secret.

    The secret comes from the operating system CSPRNG and always contains
    at least one lowercase letter, uppercase letter, digit and symbol.

    Args:
        length: Secret length, at least MIN_SECRET_LENGTH.

    Returns:
        The generated secret.

    Raises:
        ValueError: If length is below MIN_SECRET_LENGTH.
    """
    if length < MIN_SECRET_LENGTH:
        raise ValueError(f"Secret length must be at least {MIN_SECRET_LENGTH}")

    chars = [
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.digits),
        secrets.choice(SECRET_SYMBOLS),
    ]
    chars.extend(secrets.choice(SECRET_ALPHABET) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def mask_identity_key(identity_key: str) -> str:
    """Mask an identity key for public listings.

    Example:
        >>> mask_identity_key("2023010101")
        '2023****'
    """
    if len(identity_key) > 4:
        return f"{identity_key[:4]}****"
    return "****"
