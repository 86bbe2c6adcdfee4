from __future__ import annotations

import secrets
import string

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from medgate.logging import get_logger
from medgate.service.errors import ValidationError

logger = get_logger(__name__)

_SYMBOLS = "!@#$%"
_TEMP_ALPHABET = string.ascii_letters + string.digits + _SYMBOLS


class CredentialVault:
    """argon2id password hashing with a configurable cost factor.

    ``verify`` never raises: a mismatch, a malformed digest or a missing digest
    all read as ``False`` so login paths have a single failure branch.
    """

    def __init__(self, cost: int = 12, memory_kib: int = 19456) -> None:
        self._hasher = PasswordHasher(
            time_cost=cost, memory_cost=memory_kib, type=Type.ID
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: object) -> bool:
        if not isinstance(digest, str) or not digest or not isinstance(plaintext, str):
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_unusable")
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True


def generate_temporary_password(length: int = 12) -> str:
    """Random password containing at least one lower, upper, digit and symbol."""
    if length < 4:
        raise ValueError("temporary password length must be at least 4")
    required = [
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.digits),
        secrets.choice(_SYMBOLS),
    ]
    chars = required + [secrets.choice(_TEMP_ALPHABET) for _ in range(length - len(required))]
    # Fisher-Yates over the CSPRNG
    for i in range(len(chars) - 1, 0, -1):
        j = secrets.randbelow(i + 1)
        chars[i], chars[j] = chars[j], chars[i]
    return "".join(chars)


def check_password_policy(password: str, min_length: int = 6) -> None:
    problems = []
    if len(password) < min_length:
        problems.append(f"at least {min_length} characters")
    if not any(c.isupper() for c in password):
        problems.append("an uppercase letter")
    if not any(c.islower() for c in password):
        problems.append("a lowercase letter")
    if not any(c.isdigit() for c in password):
        problems.append("a digit")
    if problems:
        raise ValidationError(
            "password must contain " + ", ".join(problems),
            detail={"field": "password", "requirements": problems},
        )
