"""Single-word translation with a permanent cache in front of the provider."""

from typing import Dict, Optional

from .ai_providers import create_ai_provider, resolve_provider
from .cache import TranslationCache
from .config import Settings
from .effects import best_effort
from .errors import ParlaError, ValidationError, classify_provider_error
from .log import get_logger
from .store import Store

logger = get_logger(__name__)


class TranslationService:

    def __init__(self, store: Store, settings: Settings, provider_factory=create_ai_provider):
        self.store = store
        self.settings = settings
        self.provider_factory = provider_factory
        self.cache = TranslationCache(store)

    def _count_usage(self, chat_id: str, requester_id: Optional[str]) -> None:
        """Charge the translation to the chat's owner; unknown or foreign chats are not counted."""
        chat = self.store.get_chat(chat_id)
        if chat is None or (requester_id is not None and chat.user_id != requester_id):
            return
        self.store.increment_usage(chat.user_id, "translation")

    async def translate(self,
                        word: Optional[str],
                        target_language: Optional[str],
                        chat_id: Optional[str] = None,
                        requester_id: Optional[str] = None) -> Dict[str, str]:
        if not word or not target_language:
            raise ValidationError("Missing required fields")

        cached = await self.cache.lookup(word, target_language)
        if cached is not None:
            return {"translation": cached}

        user_settings = self.store.get_user_settings(requester_id) if requester_id else None
        provider_id, api_key = resolve_provider(self.settings.ai, user_settings)
        ai = self.provider_factory(provider_id, api_key)

        try:
            translation = await ai.translate(word, target_language)
        except ParlaError:
            raise
        except Exception as e:
            logger.error("Translation failed", provider=provider_id, word=word, error=str(e))
            raise classify_provider_error(e, "Translation failed") from e

        await self.cache.save(word, target_language, translation)

        if chat_id:
            await best_effort("Usage tracking", lambda: self._count_usage(chat_id, requester_id), chat_id=chat_id)

        logger.info("Word translated", provider=provider_id, target_language=target_language)
        return {"translation": translation}
