from __future__ import annotations

import secrets
import threading
import uuid
from datetime import datetime, timedelta
from typing import Mapping, Optional

from authcore.clock import Clock, SystemClock
from authcore.logging import email_digest, get_logger
from authcore.service.credentials import CredentialVerifier
from authcore.service.errors import (
    AccountAlreadyExists,
    AuthenticationError,
    InvalidCredentials,
    InvalidResetToken,
    SocialAuthError,
    UserNotFound,
    ValidationError,
)
from authcore.service.events import (
    EventBus,
    PasswordChanged,
    PasswordResetRequested,
    UserDeleted,
    UserLoggedIn,
    UserRegistered,
)
from authcore.service.passwords import PasswordHasher
from authcore.service.sessions import AuthStore, SessionManager
from authcore.service.social import SocialProfile, SocialProfileResolver
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Provider, TokenPair, User, UserStatus, hash_token

logger = get_logger(__name__)

OAUTH_STATE_TTL = timedelta(minutes=10)
PASSWORD_RESET_TTL = timedelta(minutes=15)


class AccountService:
    """Registration, sign-in and account lifecycle on top of :class:`SessionManager`.

    Domain events are published after the state change they describe has been
    stored; handler failures are contained by the :class:`EventBus`.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        verifier: CredentialVerifier,
        hasher: PasswordHasher,
        *,
        events: Optional[EventBus] = None,
        resolvers: Optional[Mapping[Provider, SocialProfileResolver]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.verifier = verifier
        self.hasher = hasher
        self.events = events or EventBus()
        self.resolvers = dict(resolvers or {})
        self.clock = clock or SystemClock()
        # Pending OAuth states and reset tokens live in process memory
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, tuple[Provider, datetime]] = {}
        self._reset_tokens: dict[str, tuple[str, datetime]] = {}

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None or user.deleted_at is not None:
            raise UserNotFound(user_id)
        return user

    def _save(self, user: User) -> User:
        user.touch(self.clock.now())
        try:
            return self.store.save_user(user)
        except ConstraintViolation as exc:
            raise AccountAlreadyExists(detail={"field": exc.field}) from exc

    @staticmethod
    def _social_provider(provider: Provider | str) -> Provider:
        try:
            resolved = Provider(provider)
        except ValueError as exc:
            raise ValidationError(
                "unsupported provider", detail={"provider": str(provider)}
            ) from exc
        if not resolved.is_social:
            raise ValidationError("unsupported provider", detail={"provider": resolved.value})
        return resolved

    def register(
        self,
        email: str,
        password: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        pre_verified: bool = False,
    ) -> tuple[User, TokenPair]:
        if not email or not email.strip():
            raise ValidationError("email is required", detail={"field": "email"})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        # Unique across every provider, not only local accounts
        if self.store.get_user_by_email(email) is not None:
            logger.info("register_rejected", reason="email_taken", email_hash=email_digest(email))
            raise AccountAlreadyExists()

        user = User.new_local(
            email,
            self.hasher.hash(password),
            email_verified=pre_verified,
            now=self.clock.now(),
        )
        try:
            user = self.store.create_user(user)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            raise AccountAlreadyExists(detail={"field": exc.field}) from exc

        pair = self.sessions.issue_initial_session(user.id, user.email, device_info, ip_address)
        logger.info("user_registered", user_id=user.id, provider=user.provider.value)
        self.events.publish(
            UserRegistered(
                user_id=user.id,
                email=user.email,
                provider=user.provider.value,
                email_verified=user.email_verified,
            )
        )
        return user, pair

    def login(
        self,
        email: str,
        password: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> tuple[User, TokenPair]:
        user = self.verifier.authenticate(email, password)
        pair = self.sessions.issue_initial_session(user.id, user.email, device_info, ip_address)
        self.events.publish(
            UserLoggedIn(
                user_id=user.id,
                provider=Provider.LOCAL.value,
                device_info=device_info,
                ip_address=ip_address,
            )
        )
        return user, pair

    def social_login(
        self,
        provider: Provider | str,
        profile: SocialProfile,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> tuple[User, TokenPair]:
        """Sign in with a provider identity, creating the account on first use.

        An existing account with the same email under any other identity is
        never linked implicitly; that needs :meth:`link_social_account`.
        """
        provider = self._social_provider(provider)
        if not profile.external_id or not profile.email:
            raise ValidationError("social profile is incomplete")
        now = self.clock.now()

        user = self.store.get_user_by_provider(provider, profile.external_id)
        if user is not None:
            if not user.is_active:
                logger.info("social_login_rejected", reason="inactive_account", user_id=user.id)
                raise AuthenticationError("account is not active", error_code="account_inactive")
            user.last_login_at = now
            user = self._save(user)
        else:
            if self.store.get_user_by_email(profile.email) is not None:
                logger.info(
                    "social_login_rejected",
                    reason="email_taken",
                    provider=provider.value,
                    email_hash=email_digest(profile.email),
                )
                raise AccountAlreadyExists()
            user = User.new_social(profile.email, provider, profile.external_id, now=now)
            user.last_login_at = now
            try:
                user = self.store.create_user(user)
            except ConstraintViolation as exc:
                raise AccountAlreadyExists(detail={"field": exc.field}) from exc
            logger.info("user_registered", user_id=user.id, provider=provider.value)
            self.events.publish(
                UserRegistered(
                    user_id=user.id,
                    email=user.email,
                    provider=provider.value,
                    email_verified=True,
                )
            )

        pair = self.sessions.issue_initial_session(user.id, user.email, device_info, ip_address)
        self.events.publish(
            UserLoggedIn(
                user_id=user.id,
                provider=provider.value,
                device_info=device_info,
                ip_address=ip_address,
            )
        )
        return user, pair

    def _purge_expired(self, now: datetime) -> None:
        for pending in (self._oauth_states, self._reset_tokens):
            for key in [k for k, (_, expires_at) in pending.items() if expires_at <= now]:
                pending.pop(key, None)

    def start_oauth(self, provider: Provider | str) -> tuple[str, str]:
        """Begin a provider sign-in; returns ``(authorization_url, state)``.

        The state is single-use and must come back with the authorization code
        within ``OAUTH_STATE_TTL``.
        """
        provider = self._social_provider(provider)
        resolver = self.resolvers.get(provider)
        if resolver is None:
            logger.warning("oauth_not_configured", provider=provider.value)
            raise ValidationError(
                "provider is not configured", detail={"provider": provider.value}
            )
        now = self.clock.now()
        state = uuid.uuid4().hex
        with self._state_lock:
            self._purge_expired(now)
            self._oauth_states[state] = (provider, now + OAUTH_STATE_TTL)
        logger.info("oauth_started", provider=provider.value)
        return resolver.authorization_url(state), state

    def _consume_oauth_state(self, provider: Provider, state: Optional[str]) -> None:
        now = self.clock.now()
        with self._state_lock:
            stored = self._oauth_states.pop(state, None) if state else None
        if stored is None:
            reason = "missing" if not state else "unknown"
        elif stored[0] is not provider:
            reason = "provider_mismatch"
        elif stored[1] <= now:
            reason = "expired"
        else:
            return
        logger.warning("oauth_state_rejected", provider=provider.value, reason=reason)
        raise SocialAuthError(error_code="oauth_state_invalid")

    async def social_login_with_code(
        self,
        provider: Provider | str,
        code: str,
        state: Optional[str],
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> tuple[User, TokenPair]:
        provider = self._social_provider(provider)
        resolver = self.resolvers.get(provider)
        if resolver is None:
            raise ValidationError(
                "provider is not configured", detail={"provider": provider.value}
            )
        self._consume_oauth_state(provider, state)
        profile = await resolver.fetch_profile(code)
        return self.social_login(
            provider, profile, device_info=device_info, ip_address=ip_address
        )

    def link_social_account(
        self, user_id: str, provider: Provider | str, profile: SocialProfile
    ) -> User:
        provider = self._social_provider(provider)
        user = self._require_user(user_id)
        owner = self.store.get_user_by_provider(provider, profile.external_id)
        if owner is not None:
            if owner.id == user.id:
                return user
            raise AccountAlreadyExists("this social identity is linked to another account")
        if user.provider.is_social:
            raise ValidationError(
                "account already has a linked social identity",
                detail={"provider": user.provider.value},
            )
        user.provider = provider
        user.provider_id = profile.external_id
        user = self._save(user)
        logger.info("social_account_linked", user_id=user.id, provider=provider.value)
        return user

    def unlink_social_account(self, user_id: str, provider: Provider | str) -> User:
        provider = self._social_provider(provider)
        user = self._require_user(user_id)
        if user.provider is not provider:
            raise ValidationError("provider is not linked", detail={"provider": provider.value})
        if not user.password_hash:
            raise ValidationError("cannot remove the only sign-in method")
        user.provider = Provider.LOCAL
        user.provider_id = None
        user = self._save(user)
        logger.info("social_account_unlinked", user_id=user.id, provider=provider.value)
        return user

    def verify_email(self, user_id: str) -> User:
        user = self._require_user(user_id)
        if user.email_verified and user.status is not UserStatus.PENDING_VERIFICATION:
            return user
        user.email_verified = True
        if user.status is UserStatus.PENDING_VERIFICATION:
            user.status = UserStatus.ACTIVE
        user = self._save(user)
        logger.info("email_verified", user_id=user.id)
        return user

    def deactivate_account(self, user_id: str) -> User:
        user = self._require_user(user_id)
        user.status = UserStatus.INACTIVE
        user = self._save(user)
        self.sessions.logout_all(user.id)
        logger.info("account_deactivated", user_id=user.id)
        return user

    def reactivate_account(self, user_id: str) -> User:
        user = self._require_user(user_id)
        if user.status in (UserStatus.ACTIVE, UserStatus.PENDING_VERIFICATION):
            return user
        user.status = (
            UserStatus.ACTIVE if user.email_verified else UserStatus.PENDING_VERIFICATION
        )
        user = self._save(user)
        logger.info("account_reactivated", user_id=user.id)
        return user

    def _set_password(self, user: User, new_password: str, *, via_reset: bool) -> User:
        if not new_password:
            raise ValidationError("password is required", detail={"field": "new_password"})
        user.password_hash = self.hasher.hash(new_password)
        user = self._save(user)
        revoked = self.sessions.logout_all(user.id)
        logger.info(
            "password_changed", user_id=user.id, via_reset=via_reset, sessions_revoked=revoked
        )
        self.events.publish(
            PasswordChanged(user_id=user.id, email=user.email, via_reset=via_reset)
        )
        return user

    def change_password(self, user_id: str, current_password: str, new_password: str) -> User:
        """Replace the password of a signed-in user and sign out every device."""
        user = self._require_user(user_id)
        if not user.password_hash:
            raise ValidationError("account has no password to change")
        if not current_password or not self.hasher.verify(user.password_hash, current_password):
            logger.info("password_change_rejected", reason="bad_current_password", user_id=user.id)
            raise InvalidCredentials("current password is incorrect")
        return self._set_password(user, new_password, via_reset=False)

    def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a single-use reset token and publish it for delivery by mail.

        Unknown and social-only addresses get ``None`` and no mail, so callers
        must answer the same way in every case.
        """
        user = self.store.get_user_by_email(email) if email else None
        if user is None or user.deleted_at is not None or not user.password_hash:
            logger.info("password_reset_skipped", email_hash=email_digest(email or ""))
            return None
        now = self.clock.now()
        token = secrets.token_urlsafe(32)
        with self._state_lock:
            self._purge_expired(now)
            self._reset_tokens[hash_token(token)] = (user.id, now + PASSWORD_RESET_TTL)
        logger.info("password_reset_requested", user_id=user.id)
        self.events.publish(
            PasswordResetRequested(
                user_id=user.id,
                email=user.email,
                token=token,
                expires_minutes=int(PASSWORD_RESET_TTL.total_seconds() // 60),
            )
        )
        return token

    def complete_password_reset(self, token: str, new_password: str) -> User:
        if not new_password:
            raise ValidationError("password is required", detail={"field": "new_password"})
        now = self.clock.now()
        with self._state_lock:
            stored = self._reset_tokens.pop(hash_token(token), None) if token else None
        if stored is None or stored[1] <= now:
            logger.warning("password_reset_invalid_token", token_prefix=(token or "")[:8])
            raise InvalidResetToken()
        user = self._require_user(stored[0])
        if not user.password_hash:
            raise ValidationError("cannot reset the password of a social account")
        user = self._set_password(user, new_password, via_reset=True)
        logger.info("password_reset_completed", user_id=user.id)
        return user

    def before_delete(self, user: User) -> None:
        """Hook run before an account is deleted; raise to veto the deletion."""

    def delete_account(self, user_id: str) -> None:
        user = self._require_user(user_id)
        self.before_delete(user)
        now = self.clock.now()
        if not self.store.soft_delete_user(user.id, now):
            raise UserNotFound(user_id)
        # Not transactional with the soft delete; refresh re-checks the user
        self.sessions.logout_all(user.id)
        logger.info("account_deleted", user_id=user.id)
        self.events.publish(UserDeleted(user_id=user.id, email=user.email))
