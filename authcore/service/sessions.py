from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Protocol

from authcore.clock import Clock, SystemClock
from authcore.logging import get_logger
from authcore.service.credentials import UserStore
from authcore.service.errors import (
    InvalidAccessToken,
    InvalidRefreshToken,
    InvalidToken,
    NotFoundError,
)
from authcore.service.tokens import ACCESS, REFRESH, TokenCodec
from authcore.storage.models import RefreshSession, TokenPair

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, session: RefreshSession) -> RefreshSession: ...

    def get_session(self, session_id: str) -> Optional[RefreshSession]: ...

    def get_session_by_token(self, token: str) -> Optional[RefreshSession]: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[RefreshSession]: ...

    def deactivate_session(self, session_id: str) -> None: ...

    def deactivate_if_active(self, session_id: str, now: datetime) -> bool: ...

    def touch_session(self, session_id: str, used_at: datetime) -> None: ...

    def deactivate_user_sessions(self, user_id: str) -> int: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def prune_sessions(self, now: datetime) -> int: ...

    def cap_user_sessions(
        self,
        user_id: str,
        max_kept: int,
        now: datetime,
        *,
        device_info: Optional[str] = None,
        keep_session_id: Optional[str] = None,
    ) -> int: ...


class AuthStore(UserStore, SessionStore, Protocol):
    """Both halves of the storage contract, as implemented by the stores."""


class SessionManager:
    """Issues token pairs and drives refresh-session rotation and revocation.

    Sessions move ACTIVE -> DEACTIVATED on rotation, logout or revoke-all and
    ACTIVE -> EXPIRED with time; callers cannot tell the two terminal states
    apart. Rotation flips the presented session with a single conditional
    update in the store, so of two concurrent refreshes with the same token
    exactly one wins.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        *,
        clock: Optional[Clock] = None,
        max_sessions_per_user: Optional[int] = None,
    ) -> None:
        if max_sessions_per_user is not None and max_sessions_per_user < 1:
            raise ValueError("max_sessions_per_user must be at least 1")
        self.store = store
        self.codec = codec
        self.clock = clock or SystemClock()
        self.max_sessions_per_user = max_sessions_per_user

    def _now(self) -> datetime:
        return self.clock.now()

    def _mint(
        self,
        user_id: str,
        email: str,
        *,
        device_info: Optional[str],
        ip_address: Optional[str],
    ) -> tuple[TokenPair, RefreshSession]:
        access_token = self.codec.issue_access(user_id, email)
        refresh_token, token_id = self.codec.issue_refresh(user_id)
        claims = self.codec.decode_unsafe(refresh_token) or {}
        session = RefreshSession.new(
            user_id,
            refresh_token,
            token_id,
            self.codec.expires_at(claims),
            device_info=device_info,
            ip_address=ip_address,
            now=self._now(),
        )
        session = self.store.create_session(session)
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.codec.access_ttl_seconds,
        )
        return pair, session

    def issue_initial_session(
        self,
        user_id: str,
        email: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokenPair:
        pair, session = self._mint(
            user_id, email, device_info=device_info, ip_address=ip_address
        )
        logger.info(
            "session_issued",
            user_id=user_id,
            session_id=session.id,
            device_info=device_info,
        )
        if self.max_sessions_per_user:
            evicted = self.store.cap_user_sessions(
                user_id,
                self.max_sessions_per_user,
                self._now(),
                device_info=device_info,
                keep_session_id=session.id,
            )
            if evicted:
                logger.info(
                    "session_cap_enforced",
                    user_id=user_id,
                    evicted=evicted,
                    max_sessions=self.max_sessions_per_user,
                )
        return pair

    def _reject_refresh(self, reason: str, **fields: Any) -> None:
        logger.info("refresh_rejected", reason=reason, **fields)
        raise InvalidRefreshToken()

    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair, consuming the old one."""
        try:
            claims = self.codec.verify(refresh_token, REFRESH)
        except InvalidToken:
            self._reject_refresh("token_invalid")

        session = self.store.get_session_by_token(refresh_token)
        if session is None:
            self._reject_refresh("session_unknown", user_id=claims.get("sub"))

        now = self._now()
        if not session.is_valid(now):
            if not session.is_active and not session.is_expired(now):
                # A consumed token came back; worth a louder log line
                logger.warning(
                    "refresh_token_reused", user_id=session.user_id, session_id=session.id
                )
            self._reject_refresh("session_invalid", session_id=session.id)

        if claims.get("jti") != session.token_id:
            self._reject_refresh("token_id_mismatch", session_id=session.id)

        user = self.store.get_user(str(claims["sub"]))
        if user is None or not user.is_active or user.id != session.user_id:
            self._reject_refresh(
                "user_ineligible", session_id=session.id, user_id=claims.get("sub")
            )

        if not self.store.deactivate_if_active(session.id, now):
            self._reject_refresh("lost_rotation_race", session_id=session.id)

        pair, successor = self._mint(
            user.id,
            user.email,
            device_info=session.device_info,
            ip_address=session.ip_address,
        )
        logger.info(
            "session_rotated",
            user_id=user.id,
            session_id=session.id,
            successor_id=successor.id,
        )
        return pair

    def logout(self, refresh_token: str) -> None:
        """Deactivate the session behind ``refresh_token``. Unknown tokens are ignored."""
        session = self.store.get_session_by_token(refresh_token)
        if session is None:
            logger.info("logout_unknown_token")
            return
        self.store.deactivate_session(session.id)
        logger.info("logout", user_id=session.user_id, session_id=session.id)

    def logout_all(self, user_id: str) -> int:
        count = self.store.deactivate_user_sessions(user_id)
        logger.info("logout_all", user_id=user_id, deactivated=count)
        return count

    def authenticate_access_token(self, access_token: str) -> dict[str, Any]:
        try:
            return self.codec.verify(access_token, ACCESS)
        except InvalidToken as exc:
            raise InvalidAccessToken() from exc

    def list_sessions(self, user_id: str) -> List[RefreshSession]:
        return self.store.list_active_sessions(user_id, self._now())

    def revoke_session(self, user_id: str, session_id: str) -> None:
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError(
                "session not found",
                detail={"session_id": session_id},
                error_code="session_not_found",
            )
        self.store.deactivate_session(session_id)
        logger.info("session_revoked", user_id=user_id, session_id=session_id)

    def prune_expired(self) -> int:
        removed = self.store.prune_sessions(self._now())
        if removed:
            logger.info("sessions_pruned", removed=removed)
        return removed

    def get_remaining_time(self, token: str) -> int:
        return self.codec.remaining_seconds(token)

    def is_expiring_soon(self, token: str, threshold_seconds: Optional[int] = None) -> bool:
        return self.codec.is_expiring_soon(token, threshold_seconds)
