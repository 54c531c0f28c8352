"""
Request bodies.

Fields are optional at this layer so that a missing field is reported by the
service with the same message as an empty one.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ChatRequest(RequestModel):
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    message: Optional[str] = None
    language: Optional[str] = None
    feature_mode: Optional[str] = Field(default=None, alias="featureMode")
    reply_to_id: Optional[str] = Field(default=None, alias="replyToId")


class TranslateRequest(RequestModel):
    word: Optional[str] = None
    target_language: Optional[str] = Field(default=None, alias="targetLanguage")
    chat_id: Optional[str] = Field(default=None, alias="chatId")


class ProactiveRequest(RequestModel):
    chat_id: Optional[str] = Field(default=None, alias="chatId")


class CreateChatRequest(RequestModel):
    title: Optional[str] = None
    language: Optional[str] = None


class MarkReadRequest(RequestModel):
    message_ids: List[str] = Field(default_factory=list, alias="messageIds")


class ReactionRequest(RequestModel):
    message_id: Optional[str] = Field(default=None, alias="messageId")
    reaction: Optional[str] = None


class SaveVocabularyRequest(RequestModel):
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    word: Optional[str] = None
    translation: Optional[str] = None
    context: Optional[str] = None


class DeleteVocabularyRequest(RequestModel):
    id: Optional[str] = None
