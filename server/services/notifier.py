"""Outbound notification channel (Telegram).

Uses python-telegram-bot's Bot for the Bot API. Any channel failure is
raised as DeliveryError so the worker can record the subscription as failed.
"""

import html
from typing import List, Optional, Protocol, Sequence

from telegram import Bot, LinkPreviewOptions
from telegram.constants import ParseMode
from telegram.error import TelegramError

from core.config import Settings
from core.logging import get_logger, log_api_call
from models.papers import PaperSummary
from services.errors import DeliveryError

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 4096
MAX_AUTHORS_SHOWN = 3
SUMMARY_PREVIEW_CHARS = 200


class NotificationChannel(Protocol):
    async def send(self, chat_id: int, message: str) -> None:
        ...


def _format_authors(authors: Sequence[str]) -> str:
    if not authors:
        return "Unknown authors"
    shown = ", ".join(authors[:MAX_AUTHORS_SHOWN])
    if len(authors) > MAX_AUTHORS_SHOWN:
        shown += " et al."
    return shown


def format_paper(index: int, paper: PaperSummary) -> str:
    summary = paper.summary
    if len(summary) > SUMMARY_PREVIEW_CHARS:
        summary = summary[:SUMMARY_PREVIEW_CHARS].rstrip() + "..."

    lines = [f"{index}. <b>{html.escape(paper.title)}</b>",
             f"👥 {html.escape(_format_authors(paper.authors))}"]
    if paper.published_date:
        lines.append(f"📅 {html.escape(paper.published_date)}")
    if summary:
        lines.append(html.escape(summary))
    if paper.link:
        lines.append(f'🔗 <a href="{html.escape(paper.link, quote=True)}">{html.escape(paper.paper_id)}</a>')
    return "\n".join(lines)


def format_subscription_update(topic: str, papers: Sequence[PaperSummary],
                               category: Optional[str] = None) -> str:
    """Render the update message, trimmed to the channel's length limit."""
    header = f"📬 <b>New papers on \"{html.escape(topic)}\"</b>"
    if category:
        header += f" <i>({html.escape(category)})</i>"
    header += f"\n{len(papers)} new paper{'s' if len(papers) != 1 else ''} since your last update.\n"

    blocks: List[str] = [header]
    length = len(header)
    for index, paper in enumerate(papers, start=1):
        block = format_paper(index, paper)
        remaining = len(papers) - index + 1
        footer = f"\n…and {remaining} more."
        if length + len(block) + 2 + len(footer) > MAX_MESSAGE_LENGTH:
            blocks.append(footer.strip())
            break
        blocks.append(block)
        length += len(block) + 2

    return "\n\n".join(blocks)


class TelegramNotifier:
    """NotificationChannel implementation over the Telegram Bot API."""

    def __init__(self, bot: Optional[Bot], parse_mode: str = ParseMode.HTML):
        self._bot = bot
        self.parse_mode = parse_mode
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "TelegramNotifier":
        bot = Bot(token=settings.telegram_bot_token) if settings.telegram_bot_token else None
        if bot is None:
            logger.warning("TELEGRAM_BOT_TOKEN not set, notifications will fail")
        return cls(bot, parse_mode=settings.telegram_parse_mode)

    @property
    def configured(self) -> bool:
        return self._bot is not None

    async def startup(self) -> None:
        if self._bot is None or self._initialized:
            return
        try:
            await self._bot.initialize()
            self._initialized = True
            logger.info("Telegram notifier initialized", bot_username=self._bot.username)
        except TelegramError as e:
            logger.error("Telegram notifier initialization failed", error=str(e))

    async def shutdown(self) -> None:
        if self._bot is not None and self._initialized:
            await self._bot.shutdown()
            self._initialized = False

    async def send(self, chat_id: int, message: str) -> None:
        """Send one message. Raises DeliveryError on any channel failure."""
        if self._bot is None:
            raise DeliveryError(chat_id, "notification channel not configured")

        try:
            await self._bot.send_message(
                chat_id=chat_id,
                text=message,
                parse_mode=self.parse_mode,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            )
        except TelegramError as e:
            log_api_call(logger, "telegram", "send_message", False, chat_id=chat_id, error=str(e))
            raise DeliveryError(chat_id, str(e)) from e

        log_api_call(logger, "telegram", "send_message", True, chat_id=chat_id)
