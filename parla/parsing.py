"""
Turn raw model text into a typed reply.

Models are asked for JSON but routinely wrap it in code fences or chat around
it. Extraction is a chain of small layers, each returning a dict or None:
whole-text JSON, then a fenced block, then the outermost brace span. If all of
them miss, the text is used as a plain single message.
"""

import json
import re
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?([\s\S]*?)\n?[ \t]*```")
_PARTIAL_RESPONSE_RE = re.compile(r'\{[\s\S]*?"response"[\s\S]*?\}')


class ReplyMessage(BaseModel):
    content: str


class ParsedResult(BaseModel):
    """One assistant turn: a single reply, or a burst of short ones.

    Corrections, grammar note and music recommendation belong to the turn as a
    whole and are kept exactly as the model produced them.
    """

    model_config = ConfigDict(populate_by_name=True)

    is_multi_message: bool = Field(default=False, alias="isMultiMessage")
    response: Optional[str] = None
    messages: List[ReplyMessage] = Field(default_factory=list)
    corrections: List[Dict[str, Any]] = Field(default_factory=list)
    grammar_note: Optional[Dict[str, Any]] = Field(default=None, alias="grammarNote")
    music_recommendation: Optional[Dict[str, Any]] = Field(default=None, alias="musicRecommendation")

    @property
    def contents(self) -> List[str]:
        """Text of every assistant message this turn produces, in order."""
        if self.is_multi_message:
            return [m.content for m in self.messages]
        return [self.response] if self.response else []

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ParsedResult":
        return cls.model_validate(payload)


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def _whole_text(raw: str) -> Optional[Dict[str, Any]]:
    return _loads_object(raw.strip())


def _fenced_block(raw: str) -> Optional[Dict[str, Any]]:
    match = _FENCE_RE.search(raw)
    if not match:
        return None
    return _loads_object(match.group(1).strip())


def _brace_span(raw: str) -> Optional[Dict[str, Any]]:
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end <= start:
        return None
    return _loads_object(raw[start:end + 1])


EXTRACTION_LAYERS: List[Callable[[str], Optional[Dict[str, Any]]]] = [_whole_text, _fenced_block, _brace_span]


def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    for layer in EXTRACTION_LAYERS:
        obj = layer(raw)
        if obj is not None:
            return obj
    return None


def _attachments(obj: Dict[str, Any]) -> Dict[str, Any]:
    corrections = obj.get("corrections")
    grammar_note = obj.get("grammarNote")
    music = obj.get("musicRecommendation")
    return {
        "corrections": [c for c in corrections if isinstance(c, dict)] if isinstance(corrections, list) else [],
        "grammar_note": grammar_note if isinstance(grammar_note, dict) else None,
        "music_recommendation": music if isinstance(music, dict) else None,
    }


def _message_text(entry: Any) -> str:
    if isinstance(entry, dict):
        entry = entry.get("content")
    return entry.strip() if isinstance(entry, str) else ""


def _from_object(obj: Dict[str, Any], raw: str) -> ParsedResult:
    entries = obj.get("messages")
    # payloads we serialised ourselves say which shape they are
    multi = obj.get("isMultiMessage")
    if not isinstance(multi, bool):
        multi = isinstance(entries, list)

    if multi:
        contents = [_message_text(entry) for entry in (entries if isinstance(entries, list) else [])]
        return ParsedResult(is_multi_message=True,
                            messages=[ReplyMessage(content=c) for c in contents if c],
                            **_attachments(obj))

    response = obj.get("response")
    if not isinstance(response, str) or not response.strip():
        response = raw
    return ParsedResult(response=response, **_attachments(obj))


def _plain_text(raw: str) -> ParsedResult:
    cleaned = _PARTIAL_RESPONSE_RE.sub("", raw).strip()
    return ParsedResult(response=cleaned or raw)


def parse_ai_response(raw_text: str) -> ParsedResult:
    """Parse raw model output. Never raises on malformed model output."""
    raw_text = raw_text or ""
    obj = extract_json_object(raw_text)
    if obj is None:
        return _plain_text(raw_text)
    return _from_object(obj, raw_text)
