from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authcore.clock import Clock, SystemClock
from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.accounts import AccountService
from authcore.service.credentials import CredentialVerifier
from authcore.service.email import EmailService, register_email_handlers
from authcore.service.events import EventBus
from authcore.service.passwords import PasswordHasher
from authcore.service.pruning import SessionPruner
from authcore.service.sessions import SessionManager
from authcore.service.social import build_resolvers
from authcore.service.tokens import TokenCodec
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Wires every service from one :class:`Settings` instance."""

    def __init__(self, settings: Optional[Settings] = None, *, clock: Optional[Clock] = None):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        # Secrets are checked before any connection is opened
        self.codec = TokenCodec.from_settings(self.settings, clock=self.clock)
        self.hasher = PasswordHasher.from_settings(self.settings)

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.events = EventBus()
        self.sessions = SessionManager(
            self.store,
            self.codec,
            clock=self.clock,
            max_sessions_per_user=self.settings.max_sessions_per_user,
        )
        self.verifier = CredentialVerifier(self.store, self.hasher, clock=self.clock)
        self.resolvers = build_resolvers(self.settings)
        self.accounts = AccountService(
            self.store,
            self.sessions,
            self.verifier,
            self.hasher,
            events=self.events,
            resolvers=self.resolvers,
            clock=self.clock,
        )
        self.email = EmailService.from_settings(self.settings)
        register_email_handlers(self.events, self.email)
        self.pruner: Optional[SessionPruner] = (
            SessionPruner(self.sessions, interval=self.settings.session_prune_interval_seconds)
            if self.settings.session_pruner_enabled
            else None
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            access_token_ttl=self.settings.access_token_ttl,
            refresh_token_ttl=self.settings.refresh_token_ttl,
            max_sessions_per_user=self.settings.max_sessions_per_user,
            social_providers=sorted(p.value for p in self.resolvers),
            email_configured=self.email.is_configured,
            pruner_enabled=self.pruner is not None,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; the locked re-check prevents two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment."""

    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
