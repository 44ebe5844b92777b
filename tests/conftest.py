import asyncio
import sys
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, AsyncIterator, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from salescoach.services.llm import LanguageModelClient  # noqa: E402
from salescoach.services.redis import RedisCrudService  # noqa: E402
from salescoach.services.session_store import SessionStore  # noqa: E402
from salescoach.settings import Settings  # noqa: E402


class _FakeLock:
    def __init__(self, name: str, lock: asyncio.Lock, redis: "FakeRedis") -> None:
        self.name = name
        self._lock = lock
        self._redis = redis

    async def acquire(self) -> bool:
        await self._lock.acquire()
        return True

    async def owned(self) -> bool:
        return self._redis.lock_owned

    async def release(self) -> None:
        self._lock.release()


class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio.Redis the service calls."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Set False to simulate a lock that expired while held.
        self.lock_owned = True

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> bool:
        self.data[key] = value
        return True

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for k in keys if self.data.pop(k, None) is not None)

    async def scan_iter(self, match: str = "*") -> AsyncIterator[str]:
        for key in list(self.data):
            if fnmatch(key, match):
                yield key

    def lock(self, name: str, timeout: Any = None, blocking_timeout: Any = None) -> _FakeLock:
        return _FakeLock(name, self._locks.setdefault(name, asyncio.Lock()), self)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_crud(fake_redis: FakeRedis) -> RedisCrudService:
    """RedisCrudService wired to the in-memory client."""
    svc = RedisCrudService("redis://localhost:6379/0")
    svc._client = fake_redis
    return svc


@pytest.fixture
def store(redis_crud: RedisCrudService) -> SessionStore:
    return SessionStore(redis_crud=redis_crud)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(_env_file=None, openai_api_key="test-key")


@pytest.fixture
def llm() -> MagicMock:
    """LanguageModelClient mock; tests set complete.return_value or side_effect."""
    m = MagicMock(spec=LanguageModelClient)
    m.complete = AsyncMock(return_value="")
    return m
