"""
Row-level data access over the SQLAlchemy session factory.

Each method opens its own short-lived session, the same way every request
handler in the service does, so a failure in one write never leaves another
write half-committed.
"""

from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from .database import (Chat, GrammarNote, Message, MusicRecommendation, Profile, ResponseCacheEntry,
                       SavedVocabulary, TranslationCacheEntry, UsageCounter, UserSettings, utcnow)
from .log import get_logger

logger = get_logger(__name__)


class Store:

    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self.clock = clock

    @contextmanager
    def session(self):
        db = self._session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # --- chats ---

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self.session() as db:
            return db.get(Chat, chat_id)

    def count_chats(self, user_id: str) -> int:
        with self.session() as db:
            return db.scalar(select(func.count()).select_from(Chat).where(Chat.user_id == user_id))

    def create_chat(self, user_id: str, title: str, language: str) -> Chat:
        now = self.clock()
        with self.session() as db:
            chat = Chat(user_id=user_id, title=title, language=language, created_at=now, updated_at=now)
            db.add(chat)
            db.commit()
            return chat

    def touch_chat(self, chat_id: str) -> None:
        with self.session() as db:
            db.execute(update(Chat).where(Chat.id == chat_id).values(updated_at=self.clock()))
            db.commit()

    # --- users ---

    def is_premium(self, user_id: str) -> bool:
        """Premium flag; a missing profile row or profiles table reads as free tier."""
        try:
            with self.session() as db:
                profile = db.get(Profile, user_id)
        except (OperationalError, ProgrammingError) as e:
            logger.warning("Profiles unavailable, treating user as free tier", user_id=user_id, error=str(e))
            return False
        return bool(profile and profile.is_premium)

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        with self.session() as db:
            return db.get(UserSettings, user_id)

    # --- messages ---

    def get_message(self, message_id: str) -> Optional[Message]:
        with self.session() as db:
            return db.get(Message, message_id)

    def list_messages(self, chat_id: str) -> List[Message]:
        with self.session() as db:
            stmt = select(Message).where(Message.chat_id == chat_id).order_by(Message.created_at.asc())
            return list(db.scalars(stmt))

    def recent_messages(self, chat_id: str, limit: int) -> List[Message]:
        """Newest ``limit`` messages, returned oldest-first."""
        with self.session() as db:
            stmt = (select(Message).where(Message.chat_id == chat_id)
                    .order_by(Message.created_at.desc()).limit(limit))
            return list(reversed(list(db.scalars(stmt))))

    def latest_message(self, chat_id: str) -> Optional[Message]:
        recent = self.recent_messages(chat_id, 1)
        return recent[0] if recent else None

    def count_user_messages_since(self, chat_id: str, since: datetime) -> int:
        with self.session() as db:
            stmt = (select(func.count()).select_from(Message)
                    .where(Message.chat_id == chat_id, Message.role == "user", Message.created_at >= since))
            return db.scalar(stmt)

    def count_proactive_since(self, chat_id: str, since: datetime) -> int:
        with self.session() as db:
            stmt = (select(func.count()).select_from(Message)
                    .where(Message.chat_id == chat_id,
                           Message.role == "assistant",
                           Message.is_proactive.is_(True),
                           Message.created_at >= since))
            return db.scalar(stmt)

    def insert_message(self,
                       chat_id: str,
                       role: str,
                       content: str,
                       reply_to_id: Optional[str] = None,
                       is_proactive: bool = False,
                       corrections: Optional[List[Dict[str, Any]]] = None) -> Message:
        with self.session() as db:
            message = Message(chat_id=chat_id,
                              role=role,
                              content=content,
                              corrections=corrections or [],
                              reply_to_id=reply_to_id,
                              read_at=None,
                              is_proactive=is_proactive,
                              reactions={},
                              created_at=self.clock())
            db.add(message)
            db.commit()
            return message

    def update_corrections(self, message_id: str, corrections: List[Dict[str, Any]]) -> Optional[Message]:
        with self.session() as db:
            message = db.get(Message, message_id)
            if message is None:
                return None
            message.corrections = list(corrections)
            db.commit()
            return message

    def mark_read(self, message_ids: Iterable[str]) -> List[Message]:
        """Stamp ``read_at`` on the given messages that are still unread."""
        now = self.clock()
        with self.session() as db:
            stmt = (select(Message).where(Message.id.in_(list(message_ids)), Message.read_at.is_(None))
                    .order_by(Message.created_at.asc()))
            messages = list(db.scalars(stmt))
            for message in messages:
                message.read_at = now
            db.commit()
            return messages

    def set_reactions(self, message_id: str, reactions: Dict[str, str]) -> Optional[Message]:
        with self.session() as db:
            message = db.get(Message, message_id)
            if message is None:
                return None
            message.reactions = dict(reactions)
            db.commit()
            return message

    # --- per-turn attachments ---

    def insert_grammar_note(self, chat_id: str, title: str, content: str, category: str) -> GrammarNote:
        with self.session() as db:
            note = GrammarNote(chat_id=chat_id, title=title, content=content, category=category,
                               created_at=self.clock())
            db.add(note)
            db.commit()
            return note

    def insert_music_recommendation(self, chat_id: str, message_id: Optional[str], **fields) -> MusicRecommendation:
        with self.session() as db:
            rec = MusicRecommendation(chat_id=chat_id, message_id=message_id, created_at=self.clock(), **fields)
            db.add(rec)
            db.commit()
            return rec

    def list_grammar_notes(self, chat_id: str) -> List[GrammarNote]:
        with self.session() as db:
            return list(db.scalars(select(GrammarNote).where(GrammarNote.chat_id == chat_id)))

    def list_music_recommendations(self, chat_id: str) -> List[MusicRecommendation]:
        with self.session() as db:
            return list(db.scalars(select(MusicRecommendation).where(MusicRecommendation.chat_id == chat_id)))

    # --- caches ---

    def find_response_cache(self, cache_key: str, now: datetime) -> Optional[ResponseCacheEntry]:
        with self.session() as db:
            stmt = select(ResponseCacheEntry).where(ResponseCacheEntry.cache_key == cache_key,
                                                    ResponseCacheEntry.expires_at > now)
            return db.scalars(stmt).first()

    def insert_response_cache(self, cache_key: str, response_data: Dict[str, Any], language: str,
                              expires_at: datetime) -> ResponseCacheEntry:
        """Replaces an expired entry for the key; raises ``IntegrityError`` if a live one exists."""
        now = self.clock()
        with self.session() as db:
            db.execute(delete(ResponseCacheEntry).where(ResponseCacheEntry.cache_key == cache_key,
                                                        ResponseCacheEntry.expires_at <= now))
            entry = ResponseCacheEntry(cache_key=cache_key, response_data=response_data, language=language,
                                       hit_count=0, created_at=now, expires_at=expires_at)
            db.add(entry)
            db.commit()
            return entry

    def find_translation(self, word: str, target_language: str) -> Optional[TranslationCacheEntry]:
        with self.session() as db:
            stmt = select(TranslationCacheEntry).where(TranslationCacheEntry.word == word,
                                                       TranslationCacheEntry.target_language == target_language)
            return db.scalars(stmt).first()

    def insert_translation(self, word: str, target_language: str, translation: str) -> TranslationCacheEntry:
        """Raises ``IntegrityError`` if the pair already exists."""
        with self.session() as db:
            entry = TranslationCacheEntry(word=word, target_language=target_language, translation=translation,
                                          hit_count=0, created_at=self.clock())
            db.add(entry)
            db.commit()
            return entry

    def increment_hit_count(self, model, entry_id: str) -> None:
        with self.session() as db:
            db.execute(update(model).where(model.id == entry_id).values(hit_count=model.hit_count + 1))
            db.commit()

    # --- usage ---

    def increment_usage(self, user_id: str, usage_type: str, day: Optional[date] = None) -> int:
        """Atomically bump today's counter, creating the row on first use."""
        day = day or self.clock().date()
        with self.session() as db:
            stmt = (update(UsageCounter)
                    .where(UsageCounter.user_id == user_id,
                           UsageCounter.day == day,
                           UsageCounter.usage_type == usage_type)
                    .values(count=UsageCounter.count + 1))
            if db.execute(stmt).rowcount == 0:
                db.add(UsageCounter(user_id=user_id, day=day, usage_type=usage_type, count=1))
                try:
                    db.commit()
                except IntegrityError:
                    # another request created the row first
                    db.rollback()
                    db.execute(stmt)
                    db.commit()
            else:
                db.commit()
            return db.scalar(select(UsageCounter.count).where(UsageCounter.user_id == user_id,
                                                              UsageCounter.day == day,
                                                              UsageCounter.usage_type == usage_type))

    # --- vocabulary ---

    def find_vocabulary(self, chat_id: str, word: str) -> Optional[SavedVocabulary]:
        with self.session() as db:
            stmt = select(SavedVocabulary).where(SavedVocabulary.chat_id == chat_id, SavedVocabulary.word == word)
            return db.scalars(stmt).first()

    def save_vocabulary(self, chat_id: str, word: str, translation: str,
                        context: Optional[str] = None) -> SavedVocabulary:
        with self.session() as db:
            vocab = SavedVocabulary(chat_id=chat_id, word=word, translation=translation, context=context,
                                    starred=False, created_at=self.clock())
            db.add(vocab)
            db.commit()
            return vocab

    def get_vocabulary(self, vocab_id: str) -> Optional[SavedVocabulary]:
        with self.session() as db:
            return db.get(SavedVocabulary, vocab_id)

    def delete_vocabulary(self, vocab_id: str) -> bool:
        with self.session() as db:
            vocab = db.get(SavedVocabulary, vocab_id)
            if vocab is None:
                return False
            db.delete(vocab)
            db.commit()
            return True
