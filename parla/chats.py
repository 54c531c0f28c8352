"""Chat bookkeeping outside the AI turn: creation, read receipts, reactions and saved words."""

from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from .config import Settings
from .database import Chat, Message
from .entitlements import EntitlementGate
from .errors import ConflictError, NotFoundError, ValidationError
from .log import get_logger
from .realtime import UPDATE, RealtimeFeed
from .store import Store

logger = get_logger(__name__)


class ChatManager:

    def __init__(self, store: Store, settings: Settings, feed: Optional[RealtimeFeed] = None):
        self.store = store
        self.feed = feed or RealtimeFeed()
        self.gate = EntitlementGate(store, settings.quotas)

    def _owned_chat(self, chat_id: Optional[str], user_id: str) -> Chat:
        chat = self.store.get_chat(chat_id) if chat_id else None
        if chat is None or chat.user_id != user_id:
            raise NotFoundError("Chat not found")
        return chat

    def _owned_message(self, message_id: Optional[str], user_id: str) -> Message:
        message = self.store.get_message(message_id) if message_id else None
        if message is None:
            raise NotFoundError("Message not found")
        chat = self.store.get_chat(message.chat_id)
        if chat is None or chat.user_id != user_id:
            raise NotFoundError("Message not found")
        return message

    def create_chat(self, user_id: str, title: Optional[str], language: Optional[str]) -> Dict[str, Any]:
        if not title or not language:
            raise ValidationError("Missing required fields")
        self.gate.require(self.gate.can_create_chat(user_id))

        chat = self.store.create_chat(user_id, title, language)
        logger.info("Chat created", chat_id=chat.id, user_id=user_id, language=language)
        return chat.to_dict()

    async def mark_read(self, user_id: str, message_ids: List[str]) -> List[Dict[str, Any]]:
        """Stamp read receipts on assistant messages the user has now seen."""
        owned = [m.id for m in (self._owned_message(mid, user_id) for mid in message_ids)
                 if m.role == "assistant"]
        if not owned:
            return []

        updated = self.store.mark_read(owned)
        records = [m.to_dict() for m in updated]
        for record in records:
            await self.feed.publish(record["chat_id"], UPDATE, "messages", record)
        return records

    async def toggle_reaction(self, user_id: str, message_id: Optional[str],
                              reaction: Optional[str]) -> Dict[str, str]:
        if not message_id or not reaction:
            raise ValidationError("Missing required fields")

        message = self._owned_message(message_id, user_id)
        reactions = dict(message.reactions or {})
        if reaction in reactions:
            del reactions[reaction]
        else:
            reactions[reaction] = self.store.clock().isoformat()

        updated = self.store.set_reactions(message_id, reactions)
        await self.feed.publish(updated.chat_id, UPDATE, "messages", updated.to_dict())
        return reactions

    def save_vocabulary(self, user_id: str, chat_id: Optional[str], word: Optional[str],
                        translation: Optional[str], context: Optional[str] = None) -> Dict[str, Any]:
        if not chat_id or not word or not translation:
            raise ValidationError("Missing required fields")
        self._owned_chat(chat_id, user_id)

        if self.store.find_vocabulary(chat_id, word) is not None:
            raise ConflictError("Word already saved")
        try:
            vocab = self.store.save_vocabulary(chat_id, word, translation, context)
        except IntegrityError:
            raise ConflictError("Word already saved")
        return vocab.to_dict()

    def delete_vocabulary(self, user_id: str, vocab_id: Optional[str]) -> None:
        if not vocab_id:
            raise ValidationError("Missing required fields")
        vocab = self.store.get_vocabulary(vocab_id)
        if vocab is None:
            raise NotFoundError("Word not found")
        self._owned_chat(vocab.chat_id, user_id)
        self.store.delete_vocabulary(vocab_id)
