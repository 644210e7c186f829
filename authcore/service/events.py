from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from authcore.logging import get_logger

logger = get_logger(__name__)

USER_REGISTERED = "user.registered"
USER_LOGGED_IN = "user.logged_in"
USER_DELETED = "user.deleted"
PASSWORD_RESET_REQUESTED = "user.password_reset_requested"
PASSWORD_CHANGED = "user.password_changed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DomainEvent:
    name: str = field(init=False, default="")
    occurred_at: datetime = field(default_factory=_utcnow, kw_only=True)


@dataclass(frozen=True)
class UserRegistered(DomainEvent):
    user_id: str
    email: str
    provider: str = "local"
    email_verified: bool = False
    name: str = field(init=False, default=USER_REGISTERED)


@dataclass(frozen=True)
class UserLoggedIn(DomainEvent):
    user_id: str
    provider: str = "local"
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    name: str = field(init=False, default=USER_LOGGED_IN)


@dataclass(frozen=True)
class UserDeleted(DomainEvent):
    user_id: str
    email: str
    name: str = field(init=False, default=USER_DELETED)


@dataclass(frozen=True)
class PasswordResetRequested(DomainEvent):
    user_id: str
    email: str
    # Raw reset token; only the mail handler ever sees it
    token: str = field(repr=False)
    expires_minutes: int = 15
    name: str = field(init=False, default=PASSWORD_RESET_REQUESTED)


@dataclass(frozen=True)
class PasswordChanged(DomainEvent):
    user_id: str
    email: str
    via_reset: bool = False
    name: str = field(init=False, default=PASSWORD_CHANGED)


EventHandler = Callable[[DomainEvent], None]


class EventBus:
    """Synchronous fire-and-forget publish/subscribe.

    Handlers run in the publisher's thread after the core operation has
    completed. A failing handler is logged and skipped; it never changes the
    result of the operation that published the event.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, name: str, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.setdefault(name, []).append(handler)

    def unsubscribe(self, name: str, handler: Optional[EventHandler] = None) -> None:
        with self._lock:
            if handler is None:
                self._handlers.pop(name, None)
                return
            handlers = self._handlers.get(name, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: DomainEvent) -> int:
        """Deliver ``event``; returns the number of handlers that succeeded."""
        with self._lock:
            handlers = list(self._handlers.get(event.name, []))
        delivered = 0
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                logger.error(
                    "event_handler_failed",
                    event_name=event.name,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )
                continue
            delivered += 1
        return delivered
