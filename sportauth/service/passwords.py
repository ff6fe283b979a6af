from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sportauth.logging import get_logger

logger = get_logger(__name__)

MIN_LENGTH = 8
MIN_GENERATED_LENGTH = 12

_UPPERCASE = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_LOWERCASE = "abcdefghijklmnopqrstuvwxyz"
_DIGITS = "0123456789"
_SPECIAL = "!@#$%^&*()_+-=[]{}|;:,.<>?"

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password123",
        "12345678",
        "qwerty",
        "abc123",
        "monkey",
        "1234567",
        "letmein",
        "trustno1",
        "dragon",
        "baseball",
        "iloveyou",
        "master",
        "sunshine",
        "ashley",
        "bailey",
        "passw0rd",
        "shadow",
        "123123",
        "654321",
        "superman",
        "qazwsx",
        "michael",
        "football",
    }
)


@dataclass
class StrengthResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


class PasswordPolicy:
    """Argon2id hashing plus the account password rules.

    ``verify`` never raises: a malformed or missing stored hash simply does
    not match.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, stored_hash: Optional[str]) -> bool:
        if not stored_hash or password is None:
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        """True when ``stored_hash`` was produced with different cost parameters."""
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except (InvalidHash, ValueError):
            return True

    def validate_strength(self, password: str) -> StrengthResult:
        errors: List[str] = []
        if len(password) < MIN_LENGTH:
            errors.append(f"Password must be at least {MIN_LENGTH} characters long")
        if not re.search(r"[A-Z]", password):
            errors.append("Password must contain at least one uppercase letter")
        if not re.search(r"[a-z]", password):
            errors.append("Password must contain at least one lowercase letter")
        if not re.search(r"\d", password):
            errors.append("Password must contain at least one number")
        if password.lower() in COMMON_PASSWORDS:
            errors.append("Password is too common. Please choose a stronger password")
        return StrengthResult(valid=not errors, errors=errors)

    def generate(self, length: int = MIN_GENERATED_LENGTH) -> str:
        length = max(length, MIN_GENERATED_LENGTH)
        rng = secrets.SystemRandom()
        alphabet = _UPPERCASE + _LOWERCASE + _DIGITS + _SPECIAL
        chars = [
            secrets.choice(_UPPERCASE),
            secrets.choice(_LOWERCASE),
            secrets.choice(_DIGITS),
            secrets.choice(_SPECIAL),
        ]
        chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
        rng.shuffle(chars)
        return "".join(chars)
