import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment for anything that builds Settings.from_env (runtime, CLI)
_test_tmp_dir = tempfile.mkdtemp(prefix="authcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-do-not-use-in-production")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-do-not-use-in-production")
os.environ.setdefault("PASSWORD_PEPPER", "test-pepper-do-not-use-in-production")
# Small argon2 memory cost keeps the suite fast; time cost stays at the floor
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("SESSION_PRUNER_ENABLED", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.clock import FrozenClock  # noqa: E402
from authcore.config import Settings  # noqa: E402
from authcore.service.accounts import AccountService  # noqa: E402
from authcore.service.credentials import CredentialVerifier  # noqa: E402
from authcore.service.events import EventBus  # noqa: E402
from authcore.service.passwords import PasswordHasher  # noqa: E402
from authcore.service.sessions import SessionManager  # noqa: E402
from authcore.service.tokens import TokenCodec  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402
from authcore.storage.models import User  # noqa: E402


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings(tmp_path):
    """Explicit test settings; independent of the process environment."""
    return Settings(
        access_token_secret="unit-access-secret",
        refresh_token_secret="unit-refresh-secret",
        access_token_ttl="1h",
        refresh_token_ttl="7d",
        password_pepper="unit-pepper",
        argon2_memory_cost=1024,
        argon2_parallelism=1,
        use_memory_store=True,
        shared_fs_root=str(tmp_path),
        test_mode=True,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def codec(settings, clock):
    return TokenCodec.from_settings(settings, clock=clock)


@pytest.fixture
def hasher(settings):
    return PasswordHasher.from_settings(settings)


@pytest.fixture
def session_manager(memory_store, codec, clock):
    return SessionManager(memory_store, codec, clock=clock)


@pytest.fixture
def verifier(memory_store, hasher, clock):
    return CredentialVerifier(memory_store, hasher, clock=clock)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def account_service(memory_store, session_manager, verifier, hasher, event_bus, clock):
    return AccountService(
        memory_store,
        session_manager,
        verifier,
        hasher,
        events=event_bus,
        clock=clock,
    )


@pytest.fixture
def local_user(memory_store, hasher, clock):
    """Verified local account with password ``CorrectHorse9!``."""
    user = User.new_local(
        "alice@example.com",
        hasher.hash("CorrectHorse9!"),
        email_verified=True,
        now=clock.now(),
    )
    return memory_store.create_user(user)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
