"""Subscription management.

Users subscribe to research topics and receive periodic updates. Topics
are stored normalized (trimmed, case-folded); unsubscribing is a soft
delete so a later subscribe to the same topic reactivates it.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from core.config import ALLOWED_INTERVAL_HOURS, Settings
from core.database import Database
from core.logging import get_logger
from models.database import Subscription, is_valid_category
from services.errors import SubscriptionError

logger = get_logger(__name__)

INTERVAL_LABELS = {
    6: "Every 6 hours",
    12: "Every 12 hours",
    24: "Daily",
    48: "Every 2 days",
    168: "Weekly",
}

# "cs.AI: topic" or "[cs.AI] topic"
_CATEGORY_PREFIX_RE = re.compile(r"^(?:\[([^\]]+)\]|([a-z-]+\.[A-Za-z]+):)\s*(.+)$", re.IGNORECASE)


@dataclass
class SubscriptionResult:
    success: bool
    message: str
    subscription: Optional[Subscription] = None


def normalize_topic(topic: str) -> str:
    return topic.strip().casefold()


def interval_label(hours: int) -> str:
    if hours in INTERVAL_LABELS:
        return INTERVAL_LABELS[hours]
    if hours < 24:
        return f"Every {hours} hours"
    if hours < 168:
        return f"Every {round(hours / 24)} days"
    weeks = round(hours / 168)
    return f"Every {weeks} week{'s' if weeks > 1 else ''}"


def parse_subscribe_args(args: str) -> Tuple[str, Optional[str]]:
    """Split '/subscribe' arguments into (topic, category)."""
    trimmed = args.strip()
    match = _CATEGORY_PREFIX_RE.match(trimmed)
    if match:
        category = (match.group(1) or match.group(2)).strip()
        return match.group(3).strip(), category
    return trimmed, None


class SubscriptionService:
    """Create, remove, list and tune topic subscriptions."""

    def __init__(self, database: Database, settings: Settings):
        self.database = database
        self.settings = settings

    async def subscribe(self, chat_id: int, topic: str, category: Optional[str] = None,
                        interval_hours: Optional[int] = None) -> SubscriptionResult:
        normalized = normalize_topic(topic)
        if not normalized:
            return SubscriptionResult(False, "Please provide a topic to subscribe to.")
        if len(normalized) > self.settings.topic_max_length:
            return SubscriptionResult(
                False,
                f"Topic is too long. Please use fewer than {self.settings.topic_max_length} characters."
            )
        if category is not None and not is_valid_category(category):
            return SubscriptionResult(False, f"Unknown category format: {category}")

        interval = interval_hours or self.settings.default_interval_hours
        if interval not in ALLOWED_INTERVAL_HOURS:
            return SubscriptionResult(False, f"Interval must be one of {list(ALLOWED_INTERVAL_HOURS)} hours.")

        user = await self.database.get_or_create_user(chat_id)
        if user is None:
            return SubscriptionResult(False, "Failed to create subscription. Please try again.")

        existing = await self.database.find_subscription(user.id, normalized)
        if existing is not None:
            if existing.is_active:
                return SubscriptionResult(False, f"You're already subscribed to \"{topic.strip()}\".", existing)

            if await self._active_count(user.id) >= self.settings.max_subscriptions_per_user:
                return self._limit_reached()
            reactivated = await self.database.update_subscription(
                existing.id, is_active=True, category=category, interval_hours=interval
            )
            if reactivated is not None:
                logger.info("Subscription reactivated", subscription_id=existing.id, topic=normalized)
                return SubscriptionResult(True, f"✅ Reactivated subscription to \"{topic.strip()}\".", reactivated)

        if await self._active_count(user.id) >= self.settings.max_subscriptions_per_user:
            return self._limit_reached()

        subscription = await self.database.create_subscription(
            user.id, normalized, category=category, interval_hours=interval
        )
        if subscription is None:
            return SubscriptionResult(False, "Failed to create subscription. Please try again.")

        logger.info("Subscription created", subscription_id=subscription.id,
                    user_id=user.id, topic=normalized, interval_hours=interval)
        return SubscriptionResult(
            True,
            f"✅ Subscribed to \"{topic.strip()}\"!\n\n"
            f"You'll receive {interval_label(interval).lower()} updates with new papers on this topic.",
            subscription
        )

    async def unsubscribe(self, chat_id: int, topic: str) -> SubscriptionResult:
        normalized = normalize_topic(topic)
        if not normalized:
            return SubscriptionResult(False, "Please provide a topic to unsubscribe from.")

        user = await self.database.get_user(chat_id)
        if user is None or not await self.database.delete_subscription_by_topic(user.id, normalized):
            return SubscriptionResult(False, f"You're not subscribed to \"{topic.strip()}\".")

        logger.info("Subscription removed", user_id=user.id, topic=normalized)
        return SubscriptionResult(True, f"✅ Unsubscribed from \"{topic.strip()}\".")

    async def list_subscriptions(self, chat_id: int) -> List[Subscription]:
        user = await self.database.get_user(chat_id)
        if user is None:
            return []
        return await self.database.get_user_subscriptions(user.id, active_only=True)

    async def update_interval(self, subscription_id: int, interval_hours: int) -> Optional[Subscription]:
        if interval_hours not in ALLOWED_INTERVAL_HOURS:
            raise SubscriptionError(f"Interval must be one of {list(ALLOWED_INTERVAL_HOURS)} hours")
        return await self.database.update_subscription(subscription_id, interval_hours=interval_hours)

    async def _active_count(self, user_id: int) -> int:
        return await self.database.count_active_subscriptions(user_id)

    def _limit_reached(self) -> SubscriptionResult:
        limit = self.settings.max_subscriptions_per_user
        return SubscriptionResult(
            False,
            f"You've reached the maximum of {limit} subscriptions. Please unsubscribe from a topic first."
        )
