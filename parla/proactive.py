"""
Unsolicited check-in messages.

There is no server-side timer: clients poll ``/api/proactive-message`` (on chat
load and every 15 minutes or so) and this module decides whether a nudge is
due. Two tabs polling at the same moment can both get one through.
"""

from datetime import timedelta
from typing import Any, Dict, Optional

from .ai_providers import create_ai_provider, resolve_provider
from .config import Settings
from .entitlements import start_of_utc_day
from .errors import NotFoundError, ParlaError, ValidationError, classify_provider_error
from .log import get_logger
from .prompts import proactive_system_prompt, proactive_user_message
from .realtime import INSERT, RealtimeFeed
from .store import Store

logger = get_logger(__name__)

DAILY_LIMIT_REACHED = "Daily limit reached"
TOO_SOON = "Too soon after last message"
COOLDOWN = "Within 2 hour cooldown"


class ProactiveScheduler:

    def __init__(self, store: Store, settings: Settings, feed: Optional[RealtimeFeed] = None,
                 provider_factory=create_ai_provider):
        self.store = store
        self.settings = settings
        self.feed = feed or RealtimeFeed()
        self.provider_factory = provider_factory

    def _refusal(self, chat_id: str) -> Optional[str]:
        rules = self.settings.proactive
        now = self.store.clock()

        if self.store.count_proactive_since(chat_id, start_of_utc_day(now)) >= rules.daily_cap:
            return DAILY_LIMIT_REACHED

        last = self.store.latest_message(chat_id)
        if last is not None:
            idle = now - last.created_at
            if idle < timedelta(minutes=rules.too_soon_minutes):
                return TOO_SOON
            if idle < timedelta(minutes=rules.cooldown_minutes):
                return COOLDOWN
        return None

    async def maybe_send(self, chat_id: Optional[str], requester_id: Optional[str] = None) -> Dict[str, Any]:
        if not chat_id:
            raise ValidationError("Missing required fields")

        chat = self.store.get_chat(chat_id)
        if chat is None or (requester_id is not None and chat.user_id != requester_id):
            raise NotFoundError("Chat not found")

        reason = self._refusal(chat_id)
        if reason:
            return {"shouldSend": False, "reason": reason}

        recent = self.store.recent_messages(chat_id, self.settings.proactive.context_messages)
        lines = [f"{'User' if m.role == 'user' else 'Assistant'}: {m.content}" for m in recent]

        provider_id, api_key = resolve_provider(self.settings.ai, self.store.get_user_settings(chat.user_id))
        ai = self.provider_factory(provider_id, api_key)

        turns = [{"role": "user", "content": proactive_user_message(lines, chat.language)}]
        try:
            content = await ai.chat(turns, proactive_system_prompt(chat.language), chat.language)
        except ParlaError:
            raise
        except Exception as e:
            logger.error("Proactive message generation failed", chat_id=chat_id, error=str(e))
            raise classify_provider_error(e, "Failed to generate proactive message") from e

        content = (content or "").strip()
        if not content:
            logger.warning("Proactive message generation returned no text", chat_id=chat_id, provider=provider_id)
            raise ParlaError("Failed to generate proactive message")

        message = self.store.insert_message(chat_id, "assistant", content, is_proactive=True)
        record = message.to_dict()
        await self.feed.publish(chat_id, INSERT, "messages", record)

        logger.info("Proactive message sent", chat_id=chat_id, provider=provider_id)
        return {"success": True, "message": record, "shouldSend": True}
