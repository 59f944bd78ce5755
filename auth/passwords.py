"""
auth/passwords.py -- One-way password hashing (bcrypt, direct usage).

bcrypt embeds the algorithm version, the cost factor and the salt in the hash
string ("$2b$12$<salt><digest>"), so no separate salt column is needed and the
cost can be raised later without a schema change: needs_rehash() reports
hashes made with a lower cost than the current one.

bcrypt.checkpw() recomputes the candidate digest and compares it in constant
time, so verification time does not depend on where a mismatch occurs.

Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
passwords at 128 characters; hash() rejects anything whose UTF-8 encoding
exceeds 72 bytes rather than silently ignoring the tail.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging

import bcrypt

from auth.errors import PasswordHashingError, PasswordTooLong

logger = logging.getLogger("credkeep.auth")

DEFAULT_ROUNDS = 12
_BCRYPT_MAX_BYTES = 72


class PasswordHasher:
    """bcrypt hashing with a fixed, versionable work factor.

    Usage:
        hasher = PasswordHasher(rounds=12)
        stored = hasher.hash("Secret123!")
        hasher.verify("Secret123!", stored)  # True
    """

    def __init__(self, rounds: int = DEFAULT_ROUNDS) -> None:
        if not 4 <= rounds <= 31:
            raise ValueError("bcrypt rounds must be between 4 and 31")
        self.rounds = rounds
        # Verified against when the account does not exist, so a login for an
        # unknown email costs the same bcrypt work as a wrong password.
        self._dummy_hash = self.hash("credkeep_timing_dummy")

    def hash(self, plaintext: str) -> str:
        """Return a salted bcrypt hash.

        Raises PasswordTooLong for input over 72 bytes and PasswordHashingError
        when bcrypt itself fails.
        """
        encoded = plaintext.encode("utf-8")
        if len(encoded) > _BCRYPT_MAX_BYTES:
            raise PasswordTooLong()
        try:
            return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")
        except (ValueError, TypeError) as exc:
            logger.error("Password hashing failed: %s", type(exc).__name__)
            raise PasswordHashingError("Password hashing failed.") from exc

    def verify(self, plaintext: str, hashed: str) -> bool:
        """Return True if plaintext matches hashed.

        A mismatch, an over-long password or a malformed stored hash is a
        negative result, never an exception.
        """
        encoded = plaintext.encode("utf-8")
        if len(encoded) > _BCRYPT_MAX_BYTES:
            # hash() never accepts these, so nothing stored can match. Still
            # pay for one comparison so the rejection is not measurably faster.
            bcrypt.checkpw(encoded[:_BCRYPT_MAX_BYTES], self._dummy_hash.encode("utf-8"))
            return False
        try:
            return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
        except ValueError:
            return False

    def verify_dummy(self, plaintext: str) -> None:
        """Burn one verification's worth of work against the dummy hash."""
        self.verify(plaintext, self._dummy_hash)

    def needs_rehash(self, hashed: str) -> bool:
        """Return True if hashed was produced with a lower cost than self.rounds."""
        try:
            cost = int(hashed.split("$")[2])
        except (IndexError, ValueError):
            return True
        return cost < self.rounds
