from __future__ import annotations

from typing import Optional, Protocol

from authcore.clock import Clock, SystemClock
from authcore.logging import email_digest, get_logger
from authcore.service.errors import InvalidCredentials
from authcore.service.passwords import PasswordHasher
from authcore.storage.models import User

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]: ...

    def save_user(self, user: User) -> User: ...

    def soft_delete_user(self, user_id: str, deleted_at) -> bool: ...


class CredentialVerifier:
    """Email and password authentication for local accounts.

    Every failure surfaces as the same :class:`InvalidCredentials`; only the
    ``login_rejected`` log event records which check failed.
    """

    def __init__(
        self, store: UserStore, hasher: PasswordHasher, *, clock: Optional[Clock] = None
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.clock = clock or SystemClock()

    def _reject(self, reason: str, email: str, user_id: Optional[str] = None) -> None:
        logger.info(
            "login_rejected", reason=reason, email_hash=email_digest(email), user_id=user_id
        )
        raise InvalidCredentials()

    def authenticate(self, email: str, password: str) -> User:
        user = self.store.get_user_by_email(email)
        if user is None:
            self.hasher.verify_dummy(password)
            self._reject("unknown_email", email)
        if not user.password_hash:
            # Social-only accounts have nothing to compare against
            self.hasher.verify_dummy(password)
            self._reject("no_password", email, user.id)
        if not self.hasher.verify(user.password_hash, password):
            self._reject("password_mismatch", email, user.id)
        if not user.is_active:
            self._reject("inactive_account", email, user.id)

        now = self.clock.now()
        if self.hasher.needs_rehash(user.password_hash):
            user.password_hash = self.hasher.hash(password)
            logger.info("password_rehashed", user_id=user.id)
        user.last_login_at = now
        user.updated_at = now
        user = self.store.save_user(user)
        logger.info("login_verified", user_id=user.id)
        return user
