"""
Shared fixtures for the Parla test suite.

Everything runs against an in-memory SQLite database, a scripted provider and
a feed that records events instead of publishing them.
"""

from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Dict, List

import pytest

from parla.ai_providers import AIProvider
from parla.config import PROVIDERS, AISettings, Settings
from parla.database import create_session_factory, init_db
from parla.realtime import RealtimeFeed
from parla.store import Store

USER_ID = "user-1"
OTHER_USER_ID = "user-2"

# ===== DOUBLES =====


class TickingClock:
    """Advances one millisecond per reading so insert order is deterministic."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(milliseconds=1)
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeProvider(AIProvider):
    """Returns scripted replies and records every call."""

    info = PROVIDERS["gemini"]

    def __init__(self, api_key: str = "server-key"):
        super().__init__(api_key)
        self.replies: List[Any] = []
        self.translations: List[Any] = []
        self.chat_calls: List[Dict[str, Any]] = []
        self.translate_calls: List[Dict[str, Any]] = []

    async def chat(self, messages, system_prompt, language):
        self.chat_calls.append({"messages": messages, "system_prompt": system_prompt, "language": language})
        reply = self.replies.pop(0) if self.replies else '{"response": "Hola"}'
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def translate(self, word, target_language):
        self.translate_calls.append({"word": word, "target_language": target_language})
        result = self.translations.pop(0) if self.translations else "hello"
        if isinstance(result, Exception):
            raise result
        return result


class ProviderFactory:
    """Stands in for ``create_ai_provider``; always hands out the same fake."""

    def __init__(self, provider: FakeProvider):
        self.provider = provider
        self.calls: List[tuple] = []

    def __call__(self, provider_id: str, api_key: str) -> FakeProvider:
        self.calls.append((provider_id, api_key))
        return self.provider


class RecordingFeed(RealtimeFeed):

    def __init__(self):
        super().__init__(redis_client=None)
        self.events: List[Dict[str, Any]] = []

    async def publish(self, chat_id, event_type, table, record):
        self.events.append({"chat_id": chat_id, "type": event_type, "table": table, "record": record})


class RecordingSleep:

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ===== FIXTURES =====


@pytest.fixture
def settings() -> Settings:
    return Settings(environment="test",
                    log_level="WARNING",
                    database_url="sqlite://",
                    redis_url="",
                    secret_key="test-secret",
                    jwt_algorithm="HS256",
                    cors_origins=["*"],
                    message_pacing_seconds=0.5,
                    ai=AISettings(default_provider="gemini",
                                  api_keys=MappingProxyType({"gemini": "server-key"})))


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock(datetime(2024, 5, 1, 12, 0, 0))


@pytest.fixture
def store(clock) -> Store:
    engine, session_factory = create_session_factory("sqlite://")
    init_db(engine)
    yield Store(session_factory, clock=clock)
    engine.dispose()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def provider_factory(provider) -> ProviderFactory:
    return ProviderFactory(provider)


@pytest.fixture
def feed() -> RecordingFeed:
    return RecordingFeed()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def chat(store):
    """A Spanish practice chat owned by ``USER_ID``."""
    return store.create_chat(USER_ID, "Spanish practice", "Spanish")
