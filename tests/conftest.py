"""Pytest configuration and fixtures."""
from typing import Any, Dict, List, Tuple
from unittest.mock import AsyncMock, Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tollgate.app.dependencies import get_app_state
from tollgate.core.principals import InMemoryKeyStore, Principal


class FakePipeline:
    """Buffers commands and runs them in order on execute()."""

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self._commands: List[Tuple[str, tuple]] = []

    def incrbyfloat(self, key: str, amount: float) -> "FakePipeline":
        self._commands.append(("incrbyfloat", (key, amount)))
        return self

    def incr(self, key: str) -> "FakePipeline":
        self._commands.append(("incr", (key,)))
        return self

    def ttl(self, key: str) -> "FakePipeline":
        self._commands.append(("ttl", (key,)))
        return self

    def expire(self, key: str, ttl: int) -> "FakePipeline":
        self._commands.append(("expire", (key, ttl)))
        return self

    async def execute(self) -> List[Any]:
        results = []
        for name, args in self._commands:
            results.append(await getattr(self.redis, name)(*args))
        self._commands = []
        return results


class FakeRedis:
    """In-memory stand-in for the handful of redis.asyncio commands in use."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.lists: Dict[str, List[str]] = {}
        self.published: List[Tuple[str, str]] = []

    async def ping(self) -> bool:
        return True

    async def get(self, key: str):
        return self.data.get(key)

    async def set(self, key: str, value: str) -> bool:
        self.data[key] = value
        return True

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                deleted += 1
            self.ttls.pop(key, None)
        return deleted

    async def incr(self, key: str) -> int:
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    async def incrbyfloat(self, key: str, amount: float) -> float:
        value = float(self.data.get(key, 0)) + float(amount)
        self.data[key] = repr(value)
        return value

    async def expire(self, key: str, ttl: int) -> bool:
        if key not in self.data:
            return False
        self.ttls[key] = ttl
        return True

    async def ttl(self, key: str) -> int:
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    async def rpush(self, key: str, *values: str) -> int:
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 0

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        return None


@pytest.fixture
def fake_redis():
    """In-memory async Redis."""
    return FakeRedis()


@pytest.fixture
def broken_redis():
    """Redis client whose every command fails with a connection error."""
    error = RedisConnectionError("Connection refused")
    mock = Mock()
    for command in ("get", "setex", "delete", "incr", "expire", "incrbyfloat", "rpush", "publish", "ping"):
        setattr(mock, command, AsyncMock(side_effect=error))
    pipe = Mock()
    pipe.execute = AsyncMock(side_effect=error)
    mock.pipeline.return_value = pipe
    return mock


@pytest.fixture
def principal():
    """Active principal with a 5 request/minute quota and $10 daily budget."""
    return Principal(
        id="key_alice",
        user_id="user_alice",
        daily_budget_usd=10.0,
        rate_limit_per_minute=5,
    )


@pytest.fixture
def key_store(principal):
    """Key store holding the test principal and an inactive one."""
    store = InMemoryKeyStore({"sk-test-alice": principal})
    store.add(
        "sk-test-inactive",
        Principal(id="key_bob", user_id="user_bob", daily_budget_usd=10.0, active=False),
    )
    return store


@pytest.fixture
def chat_response():
    """Chat-shape provider response: gpt-4, 20 prompt + 50 completion tokens."""
    return {
        "id": "chatcmpl-123",
        "object": "chat.completion",
        "model": "gpt-4",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hi"}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 20, "completion_tokens": 50, "total_tokens": 70},
    }


@pytest.fixture
def message_response():
    """Message-shape provider response: claude-3-haiku, 100 input + 200 output tokens."""
    return {
        "id": "msg_123",
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": "Hi"}],
        "model": "claude-3-haiku-20240307",
        "usage": {"input_tokens": 100, "output_tokens": 200},
    }


@pytest.fixture
def app_state():
    """Global app state, reset after the test."""
    state = get_app_state()
    yield state
    state.config_loader = None
    state.config = None
    state.redis = None
    state.http_client = None
    state.pipeline = None
