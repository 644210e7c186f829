from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    Provider,
    RefreshSession,
    User,
    UserStatus,
    hash_token,
    normalize_email,
)


class MemoryStore:
    """In-process user and refresh-session store.

    All reads return copies so callers cannot mutate stored rows without going
    through the store. When ``fs_root`` is given, state is snapshotted to
    ``<fs_root>/state/memory_store.json`` after every write and reloaded on
    start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, RefreshSession] = {}
        # token hash -> session id
        self._sessions_by_token: Dict[str, str] = {}
        # RLock so compound operations can call the simple ones
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info(
                    "memory_store_loaded",
                    users=len(self.users),
                    sessions=len(self.sessions),
                )

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        return any(
            u.email == email and u.deleted_at is None and u.id != exclude_id
            for u in self.users.values()
        )

    def _identity_taken(
        self, provider: Provider, provider_id: Optional[str], *, exclude_id: Optional[str] = None
    ) -> bool:
        if not provider_id:
            return False
        return any(
            u.provider == provider
            and u.provider_id == provider_id
            and u.deleted_at is None
            and u.id != exclude_id
            for u in self.users.values()
        )

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "user_id"})
            if self._email_taken(user.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self._identity_taken(user.provider, user.provider_id):
                raise ConstraintViolation(
                    "provider identity already exists", {"field": "provider_id"}
                )
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.email == normalized and u.deleted_at is None
                ),
                None,
            )
            return replace(user) if user else None

    def get_user_by_provider(self, provider: Provider | str, provider_id: str) -> Optional[User]:
        provider = Provider(provider)
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.provider == provider
                    and u.provider_id == provider_id
                    and u.deleted_at is None
                ),
                None,
            )
            return replace(user) if user else None

    def save_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            if self._email_taken(user.email, exclude_id=user.id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self._identity_taken(user.provider, user.provider_id, exclude_id=user.id):
                raise ConstraintViolation(
                    "provider identity already exists", {"field": "provider_id"}
                )
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    def soft_delete_user(self, user_id: str, deleted_at: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at is not None:
                return False
            user.deleted_at = deleted_at
            user.updated_at = deleted_at
            self._persist_state()
            return True

    # refresh sessions
    def create_session(self, session: RefreshSession) -> RefreshSession:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            if session.token_hash in self._sessions_by_token:
                raise ConstraintViolation("token already stored", {"field": "token"})
            self.sessions[session.id] = replace(session)
            self._sessions_by_token[session.token_hash] = session.id
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_token(self, token: str) -> Optional[RefreshSession]:
        with self._data_lock:
            session_id = self._sessions_by_token.get(hash_token(token))
            if session_id is None:
                return None
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_active_sessions(self, user_id: str, now: datetime) -> List[RefreshSession]:
        with self._data_lock:
            active = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_valid(now)
            ]
        active.sort(key=lambda s: (s.created_at, s.id), reverse=True)
        return active

    def deactivate_session(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return
            sess.is_active = False
            self._persist_state()

    def deactivate_if_active(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_valid(now):
                return False
            sess.is_active = False
            sess.last_used_at = now
            self._persist_state()
            return True

    def touch_session(self, session_id: str, used_at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_used_at = used_at
            self._persist_state()

    def deactivate_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.is_active:
                    sess.is_active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.user_id == user_id]
            for sid in stale:
                self._drop_session(sid)
            if stale:
                self._persist_state()
            return len(stale)

    def prune_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if not s.is_valid(now)]
            for sid in stale:
                self._drop_session(sid)
            if stale:
                self._persist_state()
            return len(stale)

    def cap_user_sessions(
        self,
        user_id: str,
        max_kept: int,
        now: datetime,
        *,
        device_info: Optional[str] = None,
        keep_session_id: Optional[str] = None,
    ) -> int:
        if max_kept < 1:
            raise ValueError("max_kept must be at least 1")
        with self._data_lock:
            # Insertion order breaks ties between sessions created in the same instant
            order = {sid: pos for pos, sid in enumerate(self.sessions)}
            candidates = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id
                and s.is_valid(now)
                and (device_info is None or s.device_info == device_info)
            ]
            protected = self.sessions.get(keep_session_id) if keep_session_id else None
            slots = max_kept
            if protected is not None and any(s.id == protected.id for s in candidates):
                candidates = [s for s in candidates if s.id != protected.id]
                slots -= 1
            candidates.sort(key=lambda s: (s.created_at, order[s.id]), reverse=True)
            evicted = 0
            for sess in candidates[slots:]:
                if protected is not None and sess.created_at > protected.created_at:
                    continue
                sess.is_active = False
                evicted += 1
            if evicted:
                self._persist_state()
            return evicted

    def _drop_session(self, session_id: str) -> None:
        sess = self.sessions.pop(session_id, None)
        if sess:
            self._sessions_by_token.pop(sess.token_hash, None)

    # persistence
    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "provider": user.provider.value,
            "password_hash": user.password_hash,
            "provider_id": user.provider_id,
            "status": user.status.value,
            "email_verified": user.email_verified,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "deleted_at": self._serialize_datetime(user.deleted_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            provider=Provider(data.get("provider", Provider.LOCAL.value)),
            password_hash=data.get("password_hash"),
            provider_id=data.get("provider_id"),
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            email_verified=data.get("email_verified", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_session(self, sess: RefreshSession) -> dict:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "token_hash": sess.token_hash,
            "token_id": sess.token_id,
            "expires_at": self._serialize_datetime(sess.expires_at),
            "created_at": self._serialize_datetime(sess.created_at),
            "device_info": sess.device_info,
            "ip_address": sess.ip_address,
            "is_active": sess.is_active,
            "last_used_at": self._serialize_datetime(sess.last_used_at),
        }

    def _deserialize_session(self, data: dict) -> RefreshSession:
        return RefreshSession(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            token_id=data["token_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            device_info=data.get("device_info"),
            ip_address=data.get("ip_address"),
            is_active=data.get("is_active", True),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self._sessions_by_token = {s.token_hash: s.id for s in self.sessions.values()}
        return True
