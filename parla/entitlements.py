"""
Free-tier quotas.

These are soft limits: two requests racing past the count at the same time may
both be admitted, which is acceptable for a daily message allowance.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .config import QuotaSettings
from .errors import EntitlementError
from .log import get_logger
from .store import Store

logger = get_logger(__name__)


@dataclass(frozen=True)
class Entitlement:
    allowed: bool
    reason: Optional[str] = None


def start_of_utc_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class EntitlementGate:

    def __init__(self, store: Store, quotas: QuotaSettings):
        self.store = store
        self.quotas = quotas

    def can_proceed(self, user_id: str, chat_id: str) -> Entitlement:
        if self.store.is_premium(user_id):
            return Entitlement(allowed=True)

        since = start_of_utc_day(self.store.clock())
        try:
            sent_today = self.store.count_user_messages_since(chat_id, since)
        except SQLAlchemyError as e:
            logger.error("Error counting messages", chat_id=chat_id, error=str(e))
            return Entitlement(allowed=True)

        limit = self.quotas.daily_message_limit
        if sent_today >= limit:
            logger.info("Daily message limit reached", user_id=user_id, chat_id=chat_id, count=sent_today)
            return Entitlement(allowed=False,
                               reason=f"You have reached the daily limit of {limit} messages. "
                                      f"Your limit will reset tomorrow, or you can upgrade to premium "
                                      f"for unlimited messages.")
        return Entitlement(allowed=True)

    def can_create_chat(self, user_id: str) -> Entitlement:
        if self.store.is_premium(user_id):
            return Entitlement(allowed=True)

        limit = self.quotas.max_chats
        if self.store.count_chats(user_id) >= limit:
            return Entitlement(allowed=False,
                               reason=f"You have reached the maximum of {limit} chats. Please delete an "
                                      f"existing chat to create a new one, or upgrade to premium for "
                                      f"unlimited chats.")
        return Entitlement(allowed=True)

    def require(self, entitlement: Entitlement) -> None:
        if not entitlement.allowed:
            raise EntitlementError(entitlement.reason)
