"""
Chat turn handling: from an incoming learner message to persisted replies.

The flow is strictly sequential. Everything before the learner's message is
saved can abort without side effects. After that the message stays visible
even if generation fails, and the writes that follow a successful generation
are independent: losing one (say, a music pick) never undoes the others.
The UI reads the replies from the real-time feed, not from the return value.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from .ai_providers import AIProvider, create_ai_provider, resolve_provider
from .cache import ResponseCache
from .config import Settings
from .database import Chat, Message
from .effects import best_effort
from .entitlements import EntitlementGate
from .errors import NotFoundError, ParlaError, ValidationError, classify_provider_error
from .log import get_logger
from .parsing import ParsedResult, parse_ai_response
from .prompts import allow_english_explanations, detect_message_language, generate_system_prompt, with_reply_context
from .realtime import INSERT, UPDATE, RealtimeFeed
from .store import Store

logger = get_logger(__name__)

MUSIC_DIFFICULTIES = ("easy", "medium", "hard")

ProviderFactory = Callable[[str, str], AIProvider]


class ChatService:

    def __init__(self,
                 store: Store,
                 settings: Settings,
                 feed: Optional[RealtimeFeed] = None,
                 provider_factory: ProviderFactory = create_ai_provider,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.store = store
        self.settings = settings
        self.feed = feed or RealtimeFeed()
        self.provider_factory = provider_factory
        self.sleep = sleep
        self.gate = EntitlementGate(store, settings.quotas)
        self.cache = ResponseCache(store, ttl_hours=settings.cache.response_ttl_hours)

    def load_chat(self, chat_id: str, requester_id: Optional[str] = None) -> Chat:
        """The chat, if it exists and belongs to ``requester_id`` (when given)."""
        chat = self.store.get_chat(chat_id)
        if chat is None or (requester_id is not None and chat.user_id != requester_id):
            raise NotFoundError("Chat not found. Please create a new chat.")
        return chat

    async def handle_turn(self,
                          chat_id: Optional[str],
                          message: Optional[str],
                          language: Optional[str],
                          feature_mode: Optional[str] = None,
                          reply_to_id: Optional[str] = None,
                          requester_id: Optional[str] = None) -> Dict[str, bool]:
        if not chat_id or not message or not language:
            raise ValidationError("Missing required fields")

        chat = self.load_chat(chat_id, requester_id)
        self.gate.require(self.gate.can_proceed(chat.user_id, chat_id))

        user_settings = self.store.get_user_settings(chat.user_id)
        enable_memes = user_settings is None or user_settings.enable_memes is not False
        enable_music = user_settings is None or user_settings.enable_music is not False

        provider_id, api_key = resolve_provider(self.settings.ai, user_settings)
        ai = self.provider_factory(provider_id, api_key)

        history = self.store.list_messages(chat_id)

        user_message = self.store.insert_message(chat_id, "user", message, reply_to_id=reply_to_id)
        await self.feed.publish(chat_id, INSERT, "messages", user_message.to_dict())

        result = await self.cache.lookup(chat_id, message)
        if result is None:
            system_prompt = generate_system_prompt(language, enable_memes, enable_music, feature_mode)
            if detect_message_language(message) == "english":
                system_prompt = allow_english_explanations(system_prompt, language)

            turns = self._conversation(history, message, reply_to_id)
            try:
                raw_text = await ai.chat(turns, system_prompt, language)
            except ParlaError:
                raise
            except Exception as e:
                logger.error("AI provider call failed", provider=provider_id, chat_id=chat_id, error=str(e))
                raise classify_provider_error(e) from e

            result = parse_ai_response(raw_text)
            await self.cache.save(chat_id, message, result, language)

        if result.corrections:
            updated = await best_effort("Corrections update",
                                        lambda: self.store.update_corrections(user_message.id, result.corrections),
                                        message_id=user_message.id)
            if updated is not None:
                await self.feed.publish(chat_id, UPDATE, "messages", updated.to_dict())

        ai_reply_to_id = self._reply_link(reply_to_id, user_message, history)
        saved = await self._save_replies(chat_id, result, ai_reply_to_id)
        if not saved:
            logger.warning("Model reply had no message content", chat_id=chat_id)

        await self._save_grammar_note(chat_id, result)
        await self._save_music_recommendation(chat_id, result, saved[-1].id if saved else None, language)

        await best_effort("Chat timestamp update", lambda: self.store.touch_chat(chat_id), chat_id=chat_id)
        await best_effort("Usage tracking", lambda: self.store.increment_usage(chat.user_id, "message"),
                          user_id=chat.user_id)

        logger.info("Chat turn processed",
                    chat_id=chat_id,
                    provider=provider_id,
                    replies=len(saved),
                    feature_mode=feature_mode)
        return {"success": True}

    @staticmethod
    def _conversation(history: List[Message], message: str, reply_to_id: Optional[str]) -> List[Dict[str, str]]:
        turns = [{"role": m.role, "content": m.content} for m in history]

        content = message
        if reply_to_id:
            replied = next((m for m in history if m.id == reply_to_id), None)
            if replied is not None:
                content = with_reply_context(message, replied.content)

        turns.append({"role": "user", "content": content})
        return turns

    def _reply_link(self, reply_to_id: Optional[str], user_message: Message, history: List[Message]) -> Optional[str]:
        # a learner answering one of our messages gets answered in-thread
        if not reply_to_id:
            return None
        replied = next((m for m in history if m.id == reply_to_id), None) or self.store.get_message(reply_to_id)
        if replied is not None and replied.role == "assistant":
            return user_message.id
        return None

    async def _save_replies(self, chat_id: str, result: ParsedResult, reply_to_id: Optional[str]) -> List[Message]:
        contents = result.contents
        saved = []
        for i, content in enumerate(contents):
            reply = self.store.insert_message(chat_id, "assistant", content,
                                              reply_to_id=reply_to_id if i == 0 else None)
            await self.feed.publish(chat_id, INSERT, "messages", reply.to_dict())
            saved.append(reply)

            if i < len(contents) - 1:
                await self.sleep(self.settings.message_pacing_seconds)
        return saved

    async def _save_grammar_note(self, chat_id: str, result: ParsedResult) -> None:
        note = result.grammar_note
        if not note or not note.get("title"):
            return
        await best_effort("Grammar note insert",
                          lambda: self.store.insert_grammar_note(chat_id,
                                                                 title=note["title"],
                                                                 content=note.get("content") or "",
                                                                 category=note.get("category") or "General"),
                          chat_id=chat_id)

    async def _save_music_recommendation(self, chat_id: str, result: ParsedResult, message_id: Optional[str],
                                         language: str) -> None:
        music = result.music_recommendation
        if not music or not music.get("title") or not music.get("artist"):
            return

        difficulty = music.get("difficulty")
        rec = await best_effort(
            "Music recommendation insert",
            lambda: self.store.insert_music_recommendation(
                chat_id,
                message_id,
                title=music["title"],
                artist=music["artist"],
                reason=music.get("reason") or "Great for learning!",
                difficulty=difficulty if difficulty in MUSIC_DIFFICULTIES else "medium",
                genre=music.get("genre") or "pop",
                language=language,
            ),
            chat_id=chat_id,
        )
        if rec is not None:
            logger.info("Music recommendation saved", chat_id=chat_id, title=rec.title)
            await self.feed.publish(chat_id, INSERT, "music_recommendations", rec.to_dict())
