"""Unit tests for auth/passwords.py -- bcrypt hashing and verification.

Covers:
- verify(p, hash(p)) is True; verify(p, hash(p2)) is False
- hashes are salted (same password, different hash strings)
- the cost factor is embedded and needs_rehash() detects lower costs
- malformed stored hashes and over-long passwords are negative results
- over-long input to hash() is PasswordTooLong, a non-infrastructure error
- hashing failure surfaces as PasswordHashingError
"""

from __future__ import annotations

import pytest

from auth.errors import PasswordHashingError, PasswordTooLong
from auth.passwords import PasswordHasher


class TestHashAndVerify:
    @pytest.mark.parametrize("password", ["Secret123!", "correct horse battery staple", "pässwörd-ünïcode", "x"])
    def test_verify_accepts_own_hash(self, hasher: PasswordHasher, password: str) -> None:
        assert hasher.verify(password, hasher.hash(password)) is True

    def test_verify_rejects_other_password(self, hasher: PasswordHasher) -> None:
        stored = hasher.hash("Secret123!")
        assert hasher.verify("Secret123?", stored) is False
        assert hasher.verify("", stored) is False

    def test_hash_is_salted(self, hasher: PasswordHasher) -> None:
        """The salt lives inside the hash string, so two hashes of one password differ."""
        assert hasher.hash("Secret123!") != hasher.hash("Secret123!")

    def test_hash_embeds_cost(self) -> None:
        stored = PasswordHasher(rounds=5).hash("Secret123!")
        assert stored.startswith("$2b$05$")


class TestNegativeResults:
    def test_malformed_hash_is_false_not_error(self, hasher: PasswordHasher) -> None:
        assert hasher.verify("Secret123!", "not-a-bcrypt-hash") is False

    def test_overlong_password_hash_raises(self, hasher: PasswordHasher) -> None:
        with pytest.raises(PasswordTooLong) as excinfo:
            hasher.hash("a" * 73)
        assert excinfo.value.infrastructure is False
        assert excinfo.value.code == "password_too_long"

    def test_multibyte_length_counts_bytes(self, hasher: PasswordHasher) -> None:
        """37 two-byte characters are 74 bytes."""
        with pytest.raises(PasswordTooLong):
            hasher.hash("\u00e9" * 37)

    def test_bcrypt_failure_is_hashing_error(self, hasher: PasswordHasher, monkeypatch) -> None:
        def broken(*args, **kwargs):
            raise ValueError("Invalid salt")

        monkeypatch.setattr("auth.passwords.bcrypt.hashpw", broken)
        with pytest.raises(PasswordHashingError) as excinfo:
            hasher.hash("Secret123!")
        assert excinfo.value.infrastructure is True

    def test_overlong_password_verify_is_false(self, hasher: PasswordHasher) -> None:
        stored = hasher.hash("a" * 72)
        assert hasher.verify("a" * 80, stored) is False

    def test_verify_dummy_returns_nothing(self, hasher: PasswordHasher) -> None:
        assert hasher.verify_dummy("whatever") is None


class TestRehash:
    def test_lower_cost_needs_rehash(self) -> None:
        old = PasswordHasher(rounds=4).hash("Secret123!")
        assert PasswordHasher(rounds=5).needs_rehash(old) is True

    def test_same_cost_does_not_need_rehash(self, hasher: PasswordHasher) -> None:
        assert hasher.needs_rehash(hasher.hash("Secret123!")) is False

    def test_garbage_needs_rehash(self, hasher: PasswordHasher) -> None:
        assert hasher.needs_rehash("garbage") is True

    def test_rounds_out_of_range(self) -> None:
        with pytest.raises(ValueError):
            PasswordHasher(rounds=3)
