"""
Content-keyed caches for chat turns and word translations.

Both are optimisations only: lookups that miss fall through to a live
provider call, and failed writes (including a concurrent request inserting the
same key first) are logged and dropped.
"""

from datetime import timedelta
from typing import Optional

from .database import ResponseCacheEntry, TranslationCacheEntry
from .effects import best_effort
from .log import get_logger
from .parsing import ParsedResult
from .store import Store

logger = get_logger(__name__)


def normalize_text(text: str) -> str:
    return text.lower().strip()


def chat_cache_key(chat_id: str, message: str) -> str:
    return f"{chat_id}_{normalize_text(message)}"


class ResponseCache:
    """Parsed chat turns keyed by chat and message text, expiring after a TTL."""

    def __init__(self, store: Store, ttl_hours: int = 24):
        self.store = store
        self.ttl = timedelta(hours=ttl_hours)

    async def lookup(self, chat_id: str, message: str) -> Optional[ParsedResult]:
        key = chat_cache_key(chat_id, message)
        entry = self.store.find_response_cache(key, self.store.clock())
        if entry is None:
            return None

        logger.info("Response cache hit", chat_id=chat_id, hit_count=entry.hit_count + 1)
        await best_effort("Response cache hit count update",
                          lambda: self.store.increment_hit_count(ResponseCacheEntry, entry.id),
                          cache_key=key)
        return ParsedResult.from_payload(entry.response_data)

    async def save(self, chat_id: str, message: str, result: ParsedResult, language: str) -> None:
        key = chat_cache_key(chat_id, message)
        expires_at = self.store.clock() + self.ttl
        saved = await best_effort("Response cache insert",
                                  lambda: self.store.insert_response_cache(key, result.to_payload(), language,
                                                                           expires_at),
                                  cache_key=key)
        if saved is not None:
            logger.info("Response cached", chat_id=chat_id, expires_at=expires_at.isoformat())


class TranslationCache:
    """Word translations keyed by (normalised word, target language). Entries never expire."""

    def __init__(self, store: Store):
        self.store = store

    async def lookup(self, word: str, target_language: str) -> Optional[str]:
        entry = self.store.find_translation(normalize_text(word), target_language)
        if entry is None:
            return None

        logger.info("Translation cache hit", word=entry.word, target_language=target_language)
        await best_effort("Translation cache hit count update",
                          lambda: self.store.increment_hit_count(TranslationCacheEntry, entry.id),
                          word=entry.word)
        return entry.translation

    async def save(self, word: str, target_language: str, translation: str) -> None:
        saved = await best_effort("Translation cache insert",
                                  lambda: self.store.insert_translation(normalize_text(word), target_language,
                                                                        translation),
                                  word=normalize_text(word))
        if saved is not None:
            logger.info("Translation cached", word=normalize_text(word), target_language=target_language)
