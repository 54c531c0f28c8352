"""
Application settings, read once from the environment.
"""

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import List, Mapping

from dotenv import load_dotenv


@dataclass(frozen=True)
class ProviderInfo:
    """Static description of one LLM backend."""
    id: str
    name: str
    chat_model: str
    translate_model: str
    key_env: str


PROVIDERS: Mapping[str, ProviderInfo] = MappingProxyType({
    "gemini": ProviderInfo(id="gemini",
                           name="Google Gemini",
                           chat_model="gemini-2.0-flash",
                           translate_model="gemini-2.0-flash",
                           key_env="GOOGLE_AI_API_KEY"),
    "openai": ProviderInfo(id="openai",
                           name="OpenAI",
                           chat_model="gpt-4o-mini",
                           translate_model="gpt-4o-mini",
                           key_env="OPENAI_API_KEY"),
    "claude": ProviderInfo(id="claude",
                           name="Anthropic Claude",
                           chat_model="claude-3-5-haiku-20241022",
                           translate_model="claude-3-5-haiku-20241022",
                           key_env="ANTHROPIC_API_KEY"),
    "groq": ProviderInfo(id="groq",
                         name="Groq",
                         chat_model="llama-3.3-70b-versatile",
                         translate_model="llama-3.1-8b-instant",
                         key_env="GROQ_API_KEY"),
})


@dataclass(frozen=True)
class AISettings:
    default_provider: str
    api_keys: Mapping[str, str]

    def server_key(self, provider_id: str) -> str:
        return self.api_keys.get(provider_id, "")


@dataclass(frozen=True)
class QuotaSettings:
    """Free-tier limits."""
    daily_message_limit: int = 20
    max_chats: int = 5


@dataclass(frozen=True)
class CacheSettings:
    response_ttl_hours: int = 24


@dataclass(frozen=True)
class ProactiveSettings:
    daily_cap: int = 2
    too_soon_minutes: int = 30
    cooldown_minutes: int = 120
    context_messages: int = 5


@dataclass(frozen=True)
class Settings:
    environment: str
    log_level: str
    database_url: str
    redis_url: str
    secret_key: str
    jwt_algorithm: str
    cors_origins: List[str]
    message_pacing_seconds: float
    ai: AISettings
    quotas: QuotaSettings = field(default_factory=QuotaSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    proactive: ProactiveSettings = field(default_factory=ProactiveSettings)


def load_settings() -> Settings:
    """Build settings from environment variables (and .env) with defaults."""
    load_dotenv()

    api_keys = {pid: os.getenv(info.key_env, "") for pid, info in PROVIDERS.items()}
    ai = AISettings(default_provider=os.getenv("AI_PROVIDER", "gemini"),
                    api_keys=MappingProxyType(api_keys))

    quotas = QuotaSettings(daily_message_limit=int(os.getenv("FREE_DAILY_MESSAGE_LIMIT", "20")),
                           max_chats=int(os.getenv("FREE_MAX_CHATS", "5")))

    cache = CacheSettings(response_ttl_hours=int(os.getenv("RESPONSE_CACHE_TTL_HOURS", "24")))

    proactive = ProactiveSettings(daily_cap=int(os.getenv("PROACTIVE_DAILY_CAP", "2")),
                                  too_soon_minutes=int(os.getenv("PROACTIVE_TOO_SOON_MINUTES", "30")),
                                  cooldown_minutes=int(os.getenv("PROACTIVE_COOLDOWN_MINUTES", "120")),
                                  context_messages=int(os.getenv("PROACTIVE_CONTEXT_MESSAGES", "5")))

    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    return Settings(environment=os.getenv("ENVIRONMENT", "development"),
                    log_level=os.getenv("LOG_LEVEL", "INFO"),
                    database_url=os.getenv("DATABASE_URL", "sqlite:///./data/parla.db"),
                    redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
                    secret_key=os.getenv("SECRET_KEY", "your-secret-key-here-change-in-production"),
                    jwt_algorithm="HS256",
                    cors_origins=origins,
                    message_pacing_seconds=float(os.getenv("MESSAGE_PACING_SECONDS", "0.5")),
                    ai=ai,
                    quotas=quotas,
                    cache=cache,
                    proactive=proactive)
