# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for resource naming and secret generation."""

import string

import pytest

from dormdb.domains.provisioning.naming import (
    IDENTITY_KEY_MAX_LENGTH,
    MIN_SECRET_LENGTH,
    SECRET_ALPHABET,
    SECRET_SYMBOLS,
    ResourceNames,
    UnsafeIdentifierError,
    derive,
    ensure_account_name,
    ensure_database_name,
    generate_secret,
    identity_from_account_name,
    identity_from_database_name,
    is_valid_identity_key,
    mask_identity_key,
)


class TestIdentityKeyFormat:
    """Tests for is_valid_identity_key."""

    @pytest.mark.parametrize(
        "key",
        ["2023010101", "a", "orphan001", "Student_42", "x" * IDENTITY_KEY_MAX_LENGTH],
    )
    def test_accepts_valid_keys(self, key: str) -> None:
        assert is_valid_identity_key(key)

    @pytest.mark.parametrize(
        "key",
        [
            "",
            "_leading",
            "trailing_",
            "has space",
            "semi;colon",
            "quote'",
            "back`tick",
            "2023010101\n",
            "x" * (IDENTITY_KEY_MAX_LENGTH + 1),
            "ünïcode",
        ],
    )
    def test_rejects_invalid_keys(self, key: str) -> None:
        assert not is_valid_identity_key(key)

    def test_rejects_non_strings(self) -> None:
        assert not is_valid_identity_key(2023010101)
        assert not is_valid_identity_key(None)


class TestDerive:
    """Tests for derive."""

    def test_derives_prefixed_names(self) -> None:
        """Test the documented scenario names."""
        names = derive("2023010101")

        assert names == ResourceNames(
            identity_key="2023010101",
            database_name="db_2023010101",
            account_name="user_2023010101",
        )

    def test_is_deterministic(self) -> None:
        assert derive("2023010102") == derive("2023010102")

    def test_distinct_keys_give_distinct_names(self) -> None:
        a, b = derive("abc1"), derive("abc2")

        assert a.database_name != b.database_name
        assert a.account_name != b.account_name

    def test_account_name_fits_mysql_limit(self) -> None:
        names = derive("k" * IDENTITY_KEY_MAX_LENGTH)

        assert len(names.account_name) == 32

    def test_rejects_unsafe_key(self) -> None:
        with pytest.raises(UnsafeIdentifierError):
            derive("x`; DROP DATABASE mysql; --")

    def test_round_trips_through_name_parsers(self) -> None:
        names = derive("2023010103")

        assert identity_from_database_name(names.database_name) == "2023010103"
        assert identity_from_account_name(names.account_name) == "2023010103"


class TestNamePatterns:
    """Tests for name validation and reverse mapping."""

    def test_ensure_database_name(self) -> None:
        assert ensure_database_name("db_orphan001") == "db_orphan001"
        with pytest.raises(UnsafeIdentifierError):
            ensure_database_name("mysql")

    def test_ensure_account_name(self) -> None:
        assert ensure_account_name("user_orphan001") == "user_orphan001"
        with pytest.raises(UnsafeIdentifierError):
            ensure_account_name("root")

    @pytest.mark.parametrize(
        "name", ["mysql", "information_schema", "db_", "db__x", "dbx_1", "sys"]
    )
    def test_foreign_databases_are_not_ours(self, name: str) -> None:
        assert identity_from_database_name(name) is None

    def test_foreign_accounts_are_not_ours(self) -> None:
        assert identity_from_account_name("root") is None
        assert identity_from_account_name("mysql.sys") is None


class TestGenerateSecret:
    """Tests for generate_secret."""

    def test_default_length(self) -> None:
        assert len(generate_secret()) == MIN_SECRET_LENGTH

    def test_custom_length(self) -> None:
        assert len(generate_secret(32)) == 32

    def test_rejects_short_length(self) -> None:
        with pytest.raises(ValueError):
            generate_secret(MIN_SECRET_LENGTH - 1)

    def test_contains_every_character_class(self) -> None:
        for _ in range(200):
            secret = generate_secret()

            assert any(c in string.ascii_lowercase for c in secret)
            assert any(c in string.ascii_uppercase for c in secret)
            assert any(c in string.digits for c in secret)
            assert any(c in SECRET_SYMBOLS for c in secret)
            assert set(secret) <= set(SECRET_ALPHABET)

    def test_is_unpredictable(self) -> None:
        secrets = {generate_secret() for _ in range(100)}

        assert len(secrets) == 100


class TestMaskIdentityKey:
    """Tests for mask_identity_key."""

    def test_masks_long_key(self) -> None:
        assert mask_identity_key("2023010101") == "2023****"

    def test_masks_short_key_entirely(self) -> None:
        assert mask_identity_key("abcd") == "****"
