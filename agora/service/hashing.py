from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from agora.logging import get_logger

logger = get_logger(__name__)


class PasswordHashing:
    """argon2id hashing shared by passwords and refresh tokens."""

    def __init__(self) -> None:
        self._hasher = PasswordHasher(
            type=Type.ID,
            memory_cost=2**16,
            time_cost=3,
            parallelism=1,
            hash_len=32,
        )

    def hash(self, plain: str) -> str:
        return self._hasher.hash(plain)

    def verify(self, hashed: str | None, plain: str) -> bool:
        if not hashed:
            return False
        try:
            return self._hasher.verify(hashed, plain)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("hash_verification_failed", error=str(exc))
            return False
