from __future__ import annotations

import logging
from typing import Optional, Protocol

import discord
import requests

from .exceptions import RecipientUnreachable

logger = logging.getLogger(__name__)

# Discord rejects messages longer than this
MAX_MESSAGE_CHARS = 2000


class Transport(Protocol):
    def send(self, recipient: str, text: str, *, format: str = "markdown") -> None:  # pragma: no cover - interface
        ...


def truncate(text: str, limit: int = MAX_MESSAGE_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class DiscordWebhookTransport:
    """
    Delivers messages to Discord webhooks. The recipient is the webhook URL
    stored as the subscriber's chat id.
    """

    def __init__(self, *, bot_token: Optional[str] = None, session: Optional[requests.Session] = None) -> None:
        self._bot_token = bot_token
        self._session = session or requests.Session()

    def send(self, recipient: str, text: str, *, format: str = "markdown") -> None:
        content = truncate(text if format == "markdown" else discord.utils.escape_markdown(text))
        try:
            webhook = discord.SyncWebhook.from_url(recipient, session=self._session, bot_token=self._bot_token)
            webhook.send(content, allowed_mentions=discord.AllowedMentions.none())
        except (ValueError, discord.DiscordException, requests.RequestException) as e:
            raise RecipientUnreachable(f"Cannot deliver to {_redact(recipient)}: {e}") from e

    def close(self) -> None:
        self._session.close()


class LogTransport:
    """Logs messages instead of sending them (dry runs)."""

    def send(self, recipient: str, text: str, *, format: str = "markdown") -> None:
        logger.info("[dry-run] to %s:\n%s", _redact(recipient), text)

    def close(self) -> None:
        pass


def _redact(recipient: str) -> str:
    # Webhook URLs embed their secret token as the last path segment
    if recipient.startswith("http"):
        head, _, _ = recipient.rpartition("/")
        return head + "/***"
    return recipient
