from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from argon2 import PasswordHasher as Argon2PasswordHasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import ConfigurationError

logger = get_logger(__name__)

# argon2id floor; keeps work factor at or above bcrypt cost 12
MIN_TIME_COST = 3


class PasswordHasher:
    """argon2id over an HMAC-SHA256 pre-hash keyed by a server-wide pepper.

    The pepper lives only in configuration, so a leaked user table alone is
    not enough to mount an offline guessing attack. argon2 still salts each
    record individually.
    """

    def __init__(
        self,
        pepper: Optional[str],
        *,
        time_cost: int = MIN_TIME_COST,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        if not pepper:
            raise ConfigurationError(
                "password pepper is required", detail={"missing": ["PASSWORD_PEPPER"]}
            )
        if time_cost < MIN_TIME_COST:
            raise ConfigurationError(
                f"argon2 time cost must be at least {MIN_TIME_COST}",
                detail={"time_cost": time_cost},
            )
        self._pepper = pepper.encode()
        self._hasher = Argon2PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when the account does not exist so that path costs
        # the same as a wrong password
        self._dummy_hash = self._hasher.hash(self._prehash("authcore-dummy-password"))

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            settings.password_pepper,
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def _prehash(self, password: str) -> str:
        return hmac.new(self._pepper, password.encode(), hashlib.sha256).hexdigest()

    def hash(self, password: str) -> str:
        if not isinstance(password, str) or not password:
            raise ValueError("password must be a non-empty string")
        return self._hasher.hash(self._prehash(password))

    def verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, self._prehash(password))
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error=type(exc).__name__)
            return False

    def verify_dummy(self, password: str) -> None:
        self.verify(self._dummy_hash, password)

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
