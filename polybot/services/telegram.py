"""
Telegram Bot API adapter.

Typed update models (pydantic) for the webhook payload, plus a client over
python-telegram-bot for the four Bot API calls Polybot makes: ``sendMessage``,
``setWebhook``, ``getWebhookInfo`` and ``setMyCommands``.
"""

from __future__ import annotations

import re
from typing import Optional

import structlog
from pydantic import BaseModel, Field
from telegram import Bot, BotCommand, BotCommandScopeDefault, InputFile
from telegram import error as tg_error
from telegram.request import HTTPXRequest

from polybot.config import BotConfig
from polybot.errors import ConfigurationError, TelegramError

logger = structlog.get_logger(__name__)

# Telegram rejects sendMessage text longer than this.
TELEGRAM_MAX_MESSAGE_LENGTH = 4096

# Only these update kinds are delivered to the webhook.
ALLOWED_UPDATES = ["message", "edited_message"]


# ---------------------------------------------------------------------------
# Update models
# ---------------------------------------------------------------------------


class TelegramUser(BaseModel):
    id: int
    is_bot: bool = False
    first_name: str = ""
    last_name: Optional[str] = None
    username: Optional[str] = None
    language_code: Optional[str] = None

    model_config = {"extra": "ignore"}


class Chat(BaseModel):
    id: int
    type: str = "private"
    first_name: Optional[str] = None
    username: Optional[str] = None

    model_config = {"extra": "ignore"}


class Message(BaseModel):
    message_id: int
    from_user: Optional[TelegramUser] = Field(None, alias="from")
    chat: Chat
    date: int = 0
    text: Optional[str] = None

    model_config = {"extra": "ignore", "populate_by_name": True}

    @property
    def user_id(self) -> int:
        """Sender id; channel posts without a sender fall back to the chat id."""
        return self.from_user.id if self.from_user is not None else self.chat.id


class Update(BaseModel):
    update_id: int
    message: Optional[Message] = None
    edited_message: Optional[Message] = None

    model_config = {"extra": "ignore"}

    @property
    def any_message(self) -> Optional[Message]:
        return self.message or self.edited_message


class WebhookStatus(BaseModel):
    """Subset of ``getWebhookInfo`` the IP monitor compares against."""

    url: str = ""
    has_custom_certificate: bool = False
    pending_update_count: int = 0
    ip_address: Optional[str] = None
    last_error_message: Optional[str] = None

    model_config = {"extra": "ignore"}

    @property
    def configured_ip(self) -> Optional[str]:
        return self.ip_address


# ---------------------------------------------------------------------------
# Message splitting
# ---------------------------------------------------------------------------

_SPLIT_PATTERNS = [
    r"\n\n",  # Paragraph break
    r"\n",  # Single newline
    r"(?<=[.!?])\s+",  # Sentence boundary
    r"\s+",  # Word boundary
]


def split_message(text: str, max_len: int = TELEGRAM_MAX_MESSAGE_LENGTH) -> list[str]:
    """
    Split *text* into chunks of at most *max_len* characters, preferring
    paragraph, line, sentence and word boundaries before a hard cut.

    Whitespace-only input returns an empty list.
    """
    if not text or not text.strip():
        return []
    chunks: list[str] = []
    while len(text) > max_len:
        split_pos = None
        for pattern in _SPLIT_PATTERNS:
            pos = _find_split(text, max_len, pattern)
            if pos is not None and pos > 0:
                split_pos = pos
                break
        if split_pos is None:
            split_pos = max_len
        chunks.append(text[:split_pos])
        text = text[split_pos:]
    if text:
        chunks.append(text)
    return chunks


def _find_split(text: str, max_len: int, pattern: str) -> int | None:
    """End position of the last *pattern* match at or before *max_len*."""
    best: int | None = None
    for m in re.finditer(pattern, text):
        end = m.end()
        if end > max_len:
            break
        best = end
    return best


# ---------------------------------------------------------------------------
# Bot API client
# ---------------------------------------------------------------------------


class TelegramClient:
    """
    Outbound Bot API calls over a python-telegram-bot ``Bot``.

    Usable as an async context manager; entering it initializes the bot,
    which also validates the token with ``getMe``.
    """

    def __init__(self, config: BotConfig, bot: Optional[Bot] = None) -> None:
        if bot is None:
            timeout = config.request_timeout_seconds
            bot = Bot(
                token=config.token,
                base_url=f"{config.api_url}/bot",
                request=HTTPXRequest(
                    connect_timeout=timeout,
                    read_timeout=timeout,
                    write_timeout=timeout,
                ),
            )
        self._bot = bot

    async def start(self) -> None:
        """Initialize the bot. A rejected token is a configuration error, not a transport one."""
        try:
            await self._bot.initialize()
        except tg_error.InvalidToken as e:
            raise ConfigurationError(f"initialize: bot token rejected: {e}") from e
        except tg_error.TelegramError as e:
            raise TelegramError(f"initialize: {e}") from e

    async def close(self) -> None:
        try:
            await self._bot.shutdown()
        except tg_error.TelegramError:
            logger.debug("telegram.shutdown_failed", exc_info=True)

    async def __aenter__(self) -> "TelegramClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def reply(self, chat_id: int, text: str) -> None:
        """Send *text* to *chat_id*, split into as many messages as needed."""
        for chunk in split_message(text) or ["…"]:
            try:
                await self._bot.send_message(chat_id=chat_id, text=chunk)
            except tg_error.TelegramError as e:
                raise TelegramError(f"sendMessage: {e}") from e

    async def register_webhook(self, url: str, certificate: bytes) -> None:
        """Point the bot's webhook at *url*, uploading the self-signed *certificate*."""
        try:
            await self._bot.set_webhook(
                url=url,
                certificate=InputFile(certificate, filename="cert.pem"),
                allowed_updates=ALLOWED_UPDATES,
                drop_pending_updates=True,
            )
        except tg_error.TelegramError as e:
            raise TelegramError(f"setWebhook: {e}") from e
        logger.info("telegram.webhook_registered", url=url)

    async def query_webhook_status(self) -> WebhookStatus:
        try:
            info = await self._bot.get_webhook_info()
        except tg_error.TelegramError as e:
            raise TelegramError(f"getWebhookInfo: {e}") from e
        return WebhookStatus(
            url=info.url or "",
            has_custom_certificate=bool(info.has_custom_certificate),
            pending_update_count=info.pending_update_count or 0,
            ip_address=info.ip_address,
            last_error_message=info.last_error_message,
        )

    async def set_my_commands(self, commands: list[tuple[str, str]]) -> None:
        """Publish the command menu. Telegram wants lowercase names without the slash."""
        menu = [
            BotCommand(token.lstrip("/").lower()[:32], (description or token)[:256])
            for token, description in commands
        ]
        try:
            await self._bot.set_my_commands(menu, scope=BotCommandScopeDefault())
        except tg_error.TelegramError as e:
            raise TelegramError(f"setMyCommands: {e}") from e
        logger.info("telegram.commands_synced", count=len(menu))
