"""Tests for the chat turn pipeline in ``parla.chat_service``."""

import json
from dataclasses import replace
from types import MappingProxyType

import pytest

from parla.chat_service import ChatService
from parla.database import Profile, UserSettings
from parla.errors import (EntitlementError, NotFoundError, ProviderConfigError, ProviderRateLimitError,
                          ValidationError)
from tests.conftest import OTHER_USER_ID, USER_ID


class FakeAPIError(Exception):

    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


def add_row(store, row):
    with store.session() as db:
        db.add(row)
        db.commit()


@pytest.fixture
def service(store, settings, feed, provider_factory, sleep):
    return ChatService(store, settings, feed, provider_factory=provider_factory, sleep=sleep)


def roles_and_contents(store, chat_id):
    return [(m.role, m.content) for m in store.list_messages(chat_id)]


class TestSingleMessageTurn:

    async def test_cache_miss_persists_user_and_assistant_messages(self, service, store, provider, chat):
        """A plain single-message reply produces exactly one assistant row."""
        provider.replies = [json.dumps({"response": "¡Hola! ¿Cómo estás?", "corrections": [],
                                        "grammarNote": None, "musicRecommendation": None})]

        result = await service.handle_turn(chat.id, "Hola", "Spanish", requester_id=USER_ID)

        assert result == {"success": True}
        assert roles_and_contents(store, chat.id) == [("user", "Hola"), ("assistant", "¡Hola! ¿Cómo estás?")]
        assert store.list_grammar_notes(chat.id) == []
        assert store.list_music_recommendations(chat.id) == []
        assert store.get_chat(chat.id).updated_at > chat.updated_at

    async def test_assistant_message_is_unread_and_not_proactive(self, service, store, chat):
        await service.handle_turn(chat.id, "Hola", "Spanish")

        assistant = store.list_messages(chat.id)[-1]
        assert assistant.read_at is None
        assert assistant.is_proactive is False

    async def test_history_and_new_message_sent_to_provider(self, service, store, provider, chat):
        store.insert_message(chat.id, "user", "Buenos días")
        store.insert_message(chat.id, "assistant", "¡Buenos días!")

        await service.handle_turn(chat.id, "Quiero practicar", "Spanish")

        call = provider.chat_calls[0]
        assert call["messages"] == [
            {"role": "user", "content": "Buenos días"},
            {"role": "assistant", "content": "¡Buenos días!"},
            {"role": "user", "content": "Quiero practicar"},
        ]
        assert call["language"] == "Spanish"
        assert "Respond ONLY in Spanish" in call["system_prompt"]

    async def test_english_question_relaxes_language_rule(self, service, provider, chat):
        await service.handle_turn(chat.id, "What is the difference between ser and estar?", "Spanish")

        prompt = provider.chat_calls[0]["system_prompt"]
        assert "ONLY in Spanish" not in prompt
        assert "in English when explaining, otherwise in Spanish" in prompt

    async def test_feature_mode_uses_feature_prompt(self, service, provider, chat):
        await service.handle_turn(chat.id, "Quiz me", "Spanish", feature_mode="quiz-vocab")

        assert '"quizType": "vocabulary"' in provider.chat_calls[0]["system_prompt"]

    async def test_disabled_memes_and_music_leave_out_tips(self, service, store, provider, chat):
        add_row(store, UserSettings(id=USER_ID, enable_memes=False, enable_music=False))

        await service.handle_turn(chat.id, "Hola", "Spanish")

        prompt = provider.chat_calls[0]["system_prompt"]
        assert "memes" not in prompt
        assert "9. Occasionally" not in prompt

    async def test_unset_toggles_default_to_enabled(self, service, provider, chat):
        await service.handle_turn(chat.id, "Hola", "Spanish")

        prompt = provider.chat_calls[0]["system_prompt"]
        assert "memes" in prompt
        assert "9. Occasionally" in prompt

    async def test_usage_counter_incremented(self, service, store, chat):
        await service.handle_turn(chat.id, "Hola", "Spanish")

        assert store.increment_usage(USER_ID, "message") == 2


class TestMultiMessageTurn:

    async def test_burst_persisted_in_order_with_pacing(self, service, store, provider, sleep, feed, chat):
        provider.replies = [json.dumps({"messages": [{"content": "¡Hola!"}, {"content": "  "},
                                                     {"content": "¿Qué tal?"}, {"content": "Cuéntame"}]})]

        await service.handle_turn(chat.id, "Hola", "Spanish")

        assert roles_and_contents(store, chat.id) == [
            ("user", "Hola"), ("assistant", "¡Hola!"), ("assistant", "¿Qué tal?"), ("assistant", "Cuéntame"),
        ]
        assert sleep.delays == [0.5, 0.5]
        inserts = [e["record"]["content"] for e in feed.events if e["type"] == "INSERT"]
        assert inserts == ["Hola", "¡Hola!", "¿Qué tal?", "Cuéntame"]

    async def test_empty_burst_saves_no_assistant_message(self, service, store, provider, chat):
        provider.replies = ['{"messages": [{"content": ""}, {"content": "   "}]}']

        result = await service.handle_turn(chat.id, "Hola", "Spanish")

        assert result == {"success": True}
        assert roles_and_contents(store, chat.id) == [("user", "Hola")]
        assert store.get_chat(chat.id).updated_at > chat.updated_at


class TestReplyLinks:

    async def test_reply_to_assistant_links_only_first_reply(self, service, store, provider, chat):
        earlier = store.insert_message(chat.id, "assistant", "¿Te gusta el café?")
        provider.replies = ['{"messages": [{"content": "¡Genial!"}, {"content": "Yo también"}]}']

        await service.handle_turn(chat.id, "Sí, mucho", "Spanish", reply_to_id=earlier.id)

        _, user_msg, first, second = store.list_messages(chat.id)
        assert user_msg.reply_to_id == earlier.id
        assert first.reply_to_id == user_msg.id
        assert second.reply_to_id is None

    async def test_reply_context_added_to_last_turn(self, service, store, provider, chat):
        earlier = store.insert_message(chat.id, "assistant", "x" * 150)

        await service.handle_turn(chat.id, "Vale", "Spanish", reply_to_id=earlier.id)

        last_turn = provider.chat_calls[0]["messages"][-1]
        assert last_turn["content"] == f'[Replying to: "{"x" * 100}..."]\n\nVale'

    async def test_reply_to_own_message_gets_no_backlink(self, service, store, chat):
        earlier = store.insert_message(chat.id, "user", "Hola")

        await service.handle_turn(chat.id, "Otra vez", "Spanish", reply_to_id=earlier.id)

        assert store.list_messages(chat.id)[-1].reply_to_id is None


class TestAttachments:

    async def test_corrections_grammar_note_and_music(self, service, store, provider, feed, chat):
        provider.replies = [json.dumps({
            "response": "Muy bien",
            "corrections": [{"incorrect": "Yo es", "correction": "Yo soy"}],
            "grammarNote": {"title": "Ser", "content": "## Rule\nUse soy"},
            "musicRecommendation": {"title": "Despacito", "artist": "Luis Fonsi"},
        })]

        await service.handle_turn(chat.id, "Yo es feliz", "Spanish")

        user_msg, assistant = store.list_messages(chat.id)
        assert user_msg.corrections == [{"incorrect": "Yo es", "correction": "Yo soy"}]

        [note] = store.list_grammar_notes(chat.id)
        assert (note.title, note.category) == ("Ser", "General")

        [rec] = store.list_music_recommendations(chat.id)
        assert rec.message_id == assistant.id
        assert (rec.reason, rec.difficulty, rec.genre, rec.language) == ("Great for learning!", "medium", "pop",
                                                                          "Spanish")

        tables = [(e["type"], e["table"]) for e in feed.events]
        assert tables == [("INSERT", "messages"), ("UPDATE", "messages"), ("INSERT", "messages"),
                          ("INSERT", "music_recommendations")]

    async def test_untitled_grammar_note_and_artistless_song_skipped(self, service, store, provider, chat):
        provider.replies = [json.dumps({"response": "Bien",
                                        "grammarNote": {"title": "", "content": "x"},
                                        "musicRecommendation": {"title": "Song"}})]

        await service.handle_turn(chat.id, "Hola", "Spanish")

        assert store.list_grammar_notes(chat.id) == []
        assert store.list_music_recommendations(chat.id) == []

    async def test_music_insert_failure_is_not_fatal(self, service, store, provider, chat, monkeypatch):
        provider.replies = ['{"response": "Bien", "musicRecommendation": {"title": "T", "artist": "A"}}']

        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "insert_music_recommendation", broken)

        result = await service.handle_turn(chat.id, "Hola", "Spanish")

        assert result == {"success": True}
        assert roles_and_contents(store, chat.id)[-1] == ("assistant", "Bien")

    async def test_usage_failure_is_not_fatal(self, service, store, chat, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("counter down")

        monkeypatch.setattr(store, "increment_usage", broken)

        assert await service.handle_turn(chat.id, "Hola", "Spanish") == {"success": True}


class TestResponseCache:

    async def test_cache_hit_skips_provider_and_replays_attachments(self, service, store, provider, chat):
        payload = {
            "response": "Muy bien",
            "corrections": [{"incorrect": "Yo es", "correction": "Yo soy"}],
            "grammarNote": {"title": "Ser", "content": "## Rule", "category": "Verbs"},
            "musicRecommendation": {"title": "Despacito", "artist": "Luis Fonsi", "difficulty": "easy"},
        }
        provider.replies = [json.dumps(payload)]

        await service.handle_turn(chat.id, "Yo es feliz", "Spanish")
        await service.handle_turn(chat.id, "  YO ES FELIZ ", "Spanish")

        assert len(provider.chat_calls) == 1
        messages = store.list_messages(chat.id)
        assert [m.role for m in messages] == ["user", "assistant", "user", "assistant"]
        assert messages[2].corrections == messages[0].corrections == payload["corrections"]
        assert messages[3].content == "Muy bien"

        first_note, second_note = store.list_grammar_notes(chat.id)
        assert (second_note.title, second_note.content, second_note.category) == \
            (first_note.title, first_note.content, first_note.category)

        first_rec, second_rec = store.list_music_recommendations(chat.id)
        assert second_rec.difficulty == first_rec.difficulty == "easy"

    async def test_cache_is_per_chat(self, service, store, provider, chat):
        other = store.create_chat(USER_ID, "French", "French")

        await service.handle_turn(chat.id, "Hola", "Spanish")
        await service.handle_turn(other.id, "Hola", "French")

        assert len(provider.chat_calls) == 2


class TestRejections:

    @pytest.mark.parametrize("chat_id, message, language", [
        (None, "Hola", "Spanish"),
        ("c1", "", "Spanish"),
        ("c1", "Hola", None),
    ])
    async def test_missing_fields(self, service, chat_id, message, language):
        with pytest.raises(ValidationError, match="Missing required fields"):
            await service.handle_turn(chat_id, message, language)

    async def test_unknown_chat(self, service):
        with pytest.raises(NotFoundError):
            await service.handle_turn("missing", "Hola", "Spanish")

    async def test_chat_owned_by_someone_else(self, service, store, provider, chat):
        with pytest.raises(NotFoundError):
            await service.handle_turn(chat.id, "Hola", "Spanish", requester_id=OTHER_USER_ID)
        assert store.list_messages(chat.id) == []

    async def test_over_daily_limit_rejected_before_provider(self, service, store, provider, chat):
        for i in range(20):
            store.insert_message(chat.id, "user", f"mensaje {i}")

        with pytest.raises(EntitlementError) as exc_info:
            await service.handle_turn(chat.id, "Hola", "Spanish")

        assert exc_info.value.status_code == 429
        assert "upgrade to premium" in exc_info.value.message
        assert provider.chat_calls == []
        assert len(store.list_messages(chat.id)) == 20

    async def test_nineteen_messages_still_allowed(self, service, store, provider, chat):
        for i in range(19):
            store.insert_message(chat.id, "user", f"mensaje {i}")

        await service.handle_turn(chat.id, "Hola", "Spanish")

        assert len(provider.chat_calls) == 1

    async def test_premium_user_ignores_daily_limit(self, service, store, provider, chat):
        add_row(store, Profile(id=USER_ID, is_premium=True))
        for i in range(25):
            store.insert_message(chat.id, "user", f"mensaje {i}")

        await service.handle_turn(chat.id, "Hola", "Spanish")

        assert len(provider.chat_calls) == 1

    async def test_missing_server_key_has_no_side_effects(self, store, settings, feed, provider_factory, chat):
        keyless = replace(settings, ai=replace(settings.ai, api_keys=MappingProxyType({})))
        service = ChatService(store, keyless, feed, provider_factory=provider_factory)

        with pytest.raises(ProviderConfigError) as exc_info:
            await service.handle_turn(chat.id, "Hola", "Spanish")

        assert exc_info.value.status_code == 500
        assert store.list_messages(chat.id) == []
        assert feed.events == []


class TestProviderFailures:

    async def test_provider_error_keeps_user_message(self, service, store, provider, chat):
        provider.replies = [FakeAPIError("Too many requests", status_code=429)]

        with pytest.raises(ProviderRateLimitError):
            await service.handle_turn(chat.id, "Hola", "Spanish")

        assert roles_and_contents(store, chat.id) == [("user", "Hola")]

    async def test_user_key_selects_user_provider(self, service, store, provider_factory, chat):
        add_row(store, UserSettings(id=USER_ID, ai_provider="openai", api_keys={"openai": "user-key"}))

        await service.handle_turn(chat.id, "Hola", "Spanish")

        assert provider_factory.calls == [("openai", "user-key")]

    async def test_server_default_used_without_user_key(self, service, store, provider_factory, chat):
        add_row(store, UserSettings(id=USER_ID, ai_provider="openai", api_keys={}))

        await service.handle_turn(chat.id, "Hola", "Spanish")

        assert provider_factory.calls == [("gemini", "server-key")]
