from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher as _Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokenward.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher(Protocol):
    def hash(self, plain: str) -> str: ...

    def verify(self, plain: str, digest: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id hashing; any verification failure is reported as False."""

    algorithm = "argon2id"

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)

    def hash(self, plain: str) -> str:
        return self._hasher.hash(plain)

    def verify(self, plain: str, digest: str) -> bool:
        try:
            return self._hasher.verify(digest, plain)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_unusable")
            return False
