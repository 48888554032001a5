from __future__ import annotations

import hmac
from typing import Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from fixerauth.config import PasswordScheme
from fixerauth.logging import get_logger

logger = get_logger(__name__)


class SecretHasher(Protocol):
    algo: str

    def hash(self, password: str) -> str: ...

    def verify(self, stored: str, password: str) -> bool: ...


class PlaintextHasher:
    """Stores the password verbatim and compares it in constant time.

    Kept as the default so existing credential rows keep working; switch
    PASSWORD_SCHEME to argon2id to store digests instead.
    """

    algo = PasswordScheme.PLAIN.value

    def hash(self, password: str) -> str:
        return password

    def verify(self, stored: str, password: str) -> bool:
        return hmac.compare_digest(stored.encode(), password.encode())


class Argon2Hasher:
    algo = PasswordScheme.ARGON2ID.value

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, stored: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored, password)
        except (InvalidHash, VerifyMismatchError):
            return False


_HASHERS = {
    PasswordScheme.PLAIN: PlaintextHasher,
    PasswordScheme.ARGON2ID: Argon2Hasher,
}


def build_hasher(scheme: PasswordScheme | str) -> SecretHasher:
    return _HASHERS[PasswordScheme(scheme)]()


def verify_with_algo(stored: str, algo: str, password: str) -> bool:
    """Verify against whichever scheme the stored record was written with."""
    try:
        hasher = build_hasher(algo)
    except ValueError:
        logger.warning("password_algo_unknown", algo=algo)
        return False
    return hasher.verify(stored, password)


__all__ = [
    "SecretHasher",
    "PlaintextHasher",
    "Argon2Hasher",
    "build_hasher",
    "verify_with_algo",
]
