"""SQLAlchemy models and engine setup."""

import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (Boolean, Column, Date, DateTime, Integer, JSON, String, Text, UniqueConstraint,
                        create_engine)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


class RecordMixin:

    def to_dict(self):
        out = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            out[column.name] = value
        return out


class Chat(RecordMixin, Base):
    __tablename__ = "chats"
    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, index=True, nullable=False)
    title = Column(String, nullable=False)
    language = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)


class Message(RecordMixin, Base):
    __tablename__ = "messages"
    id = Column(String, primary_key=True, default=_uuid)
    chat_id = Column(String, index=True, nullable=False)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    corrections = Column(JSON, default=list)
    reply_to_id = Column(String, nullable=True)
    read_at = Column(DateTime, nullable=True)
    is_proactive = Column(Boolean, default=False)
    reactions = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, index=True)


class GrammarNote(RecordMixin, Base):
    __tablename__ = "grammar_notes"
    id = Column(String, primary_key=True, default=_uuid)
    chat_id = Column(String, index=True, nullable=False)
    title = Column(String, nullable=False)
    content = Column(Text, default="")
    category = Column(String, default="General")
    created_at = Column(DateTime, default=utcnow)


class MusicRecommendation(RecordMixin, Base):
    __tablename__ = "music_recommendations"
    id = Column(String, primary_key=True, default=_uuid)
    chat_id = Column(String, index=True, nullable=False)
    message_id = Column(String, nullable=True)
    title = Column(String, nullable=False)
    artist = Column(String, nullable=False)
    reason = Column(Text)
    difficulty = Column(String, default="medium")
    genre = Column(String, default="pop")
    language = Column(String)
    created_at = Column(DateTime, default=utcnow)


class ResponseCacheEntry(RecordMixin, Base):
    __tablename__ = "response_cache"
    id = Column(String, primary_key=True, default=_uuid)
    cache_key = Column(String, unique=True, nullable=False)
    response_data = Column(JSON, nullable=False)
    language = Column(String)
    hit_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)


class TranslationCacheEntry(RecordMixin, Base):
    __tablename__ = "translation_cache"
    __table_args__ = (UniqueConstraint("word", "target_language", name="uq_translation_word_language"),)
    id = Column(String, primary_key=True, default=_uuid)
    word = Column(String, nullable=False)
    target_language = Column(String, nullable=False)
    translation = Column(Text, nullable=False)
    hit_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow)


class UserSettings(RecordMixin, Base):
    __tablename__ = "user_settings"
    id = Column(String, primary_key=True)
    enable_memes = Column(Boolean, nullable=True)
    enable_music = Column(Boolean, nullable=True)
    enable_tts = Column(Boolean, nullable=True)
    enable_stt = Column(Boolean, nullable=True)
    ai_provider = Column(String, nullable=True)
    api_keys = Column(JSON, default=dict)


class Profile(RecordMixin, Base):
    __tablename__ = "profiles"
    id = Column(String, primary_key=True)
    is_premium = Column(Boolean, default=False)


class UsageCounter(RecordMixin, Base):
    __tablename__ = "usage_counters"
    __table_args__ = (UniqueConstraint("user_id", "day", "usage_type", name="uq_usage_user_day_type"),)
    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, index=True, nullable=False)
    day = Column(Date, nullable=False)
    usage_type = Column(String, nullable=False)
    count = Column(Integer, default=0)


class SavedVocabulary(RecordMixin, Base):
    __tablename__ = "saved_vocabulary"
    __table_args__ = (UniqueConstraint("chat_id", "word", name="uq_vocab_chat_word"),)
    id = Column(String, primary_key=True, default=_uuid)
    chat_id = Column(String, index=True, nullable=False)
    word = Column(String, nullable=False)
    translation = Column(Text, nullable=False)
    context = Column(Text, nullable=True)
    starred = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)


def create_session_factory(database_url: str):
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
    else:
        kwargs = {}
    engine = create_engine(database_url, **kwargs)
    return engine, sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine) -> None:
    if engine.url.get_backend_name() == "sqlite" and engine.url.database not in (None, "", ":memory:"):
        Path(engine.url.database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)
