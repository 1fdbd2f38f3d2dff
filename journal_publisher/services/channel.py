"""Telegram channel adapter: send a text or photo post via Bot API and normalize the outcome."""

import asyncio
import html
import re
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from aiogram import Bot
from aiogram.enums import ParseMode
from aiogram.exceptions import (
    ClientDecodeError,
    TelegramAPIError,
    TelegramNetworkError,
    TelegramRetryAfter,
)
from aiogram.types import LinkPreviewOptions
import structlog

from journal_publisher.services.composer import ComposedMessage

log = structlog.get_logger()

# Telegram Bot API limit for photo captions
CAPTION_LIMIT = 1024
DEFAULT_SEND_TIMEOUT = 30.0
DEFAULT_READ_MORE_LABEL = "Читать полностью"
# Keep error descriptions short; they end up in tg_error
ERROR_DESCRIPTION_MAX = 300

_ABSOLUTE_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
_HTML_TAG_RE = re.compile(r"<[^>]+>")


@dataclass(frozen=True)
class ChannelConfig:
    """Process-wide, read-only adapter configuration."""

    token: Optional[str]
    default_chat_id: Optional[str]
    site_url: str = ""
    send_timeout: float = DEFAULT_SEND_TIMEOUT
    read_more_label: str = DEFAULT_READ_MORE_LABEL

    @classmethod
    def from_settings(cls, settings: Any) -> "ChannelConfig":
        return cls(
            token=settings.BOT_TOKEN,
            default_chat_id=settings.TARGET_CHANNEL_ID,
            site_url=settings.SITE_URL,
            send_timeout=settings.SEND_TIMEOUT,
            read_more_label=settings.READ_MORE_LABEL,
        )


@dataclass(frozen=True)
class SendResult:
    ok: bool
    message_id: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, message_id: Optional[int]) -> "SendResult":
        return cls(ok=True, message_id=message_id)

    @classmethod
    def failure(cls, error: str) -> "SendResult":
        return cls(ok=False, error=(error or "telegram_error")[:ERROR_DESCRIPTION_MAX])


def visible_length(text: str) -> int:
    """Length of HTML-formatted text as Telegram counts it: tags dropped, entities decoded."""
    return len(html.unescape(_HTML_TAG_RE.sub("", text)))


def resolve_chat(chat_id: Optional[str], default_chat_id: Optional[str]) -> str:
    """Per-post chat if set, else the default; empty string when neither is usable."""
    explicit = str(chat_id or "").strip()
    if explicit:
        return explicit
    return str(default_chat_id or "").strip()


def absolute_url(url: Optional[str], site_url: str) -> Optional[str]:
    """Absolute URLs pass through; relative ones are joined to the site origin."""
    if not url:
        return None
    trimmed = str(url).strip()
    if not trimmed:
        return None
    if _ABSOLUTE_URL_RE.match(trimmed):
        return trimmed
    base = (site_url or "").strip().rstrip("/")
    return f"{base}{'' if trimmed.startswith('/') else '/'}{trimmed}"


class TelegramChannel:
    """
    Stateless Bot API client. Never raises for delivery problems and never retries:
    every outcome comes back as a SendResult.
    """

    def __init__(self, config: ChannelConfig, bot: Optional[Bot] = None) -> None:
        self.config = config
        self._bot = bot

    def resolve_target(self, chat_id: Optional[str]) -> str:
        return resolve_chat(chat_id, self.config.default_chat_id)

    def check_ready(self, target: str) -> Optional[str]:
        """Precondition code if a send to target cannot be attempted, else None."""
        if not (self.config.token or "").strip() or self._bot is None:
            return "missing_tg_token"
        if not (target or "").strip():
            return "missing_tg_chat"
        return None

    def build_text(self, message: ComposedMessage) -> str:
        """Telegram HTML: bold headline, excerpt, read-more link."""
        parts = [f"🛠 <b>{html.escape(message.headline)}</b>"]
        if message.body:
            parts.append(html.escape(message.body))
        link = html.escape(message.link_url, quote=True)
        parts.append(f'👉 <a href="{link}">{html.escape(self.config.read_more_label)}</a>')
        return "\n\n".join(parts)

    async def send(self, target: str, text: str, image: Optional[str] = None) -> SendResult:
        """
        Send text (link preview on) or, when image is given, a photo with caption.
        Relative image paths are resolved against the site origin.
        """
        problem = self.check_ready(target)
        if problem:
            return SendResult.failure(problem)
        chat = target.strip()
        photo = absolute_url(image, self.config.site_url)
        if photo and visible_length(text) > CAPTION_LIMIT:
            log.info("tg_caption_too_long", chat_id=chat, length=visible_length(text), fallback="text_message")
            photo = None
        timeout = self.config.send_timeout
        try:
            if photo:
                msg = await asyncio.wait_for(
                    self._bot.send_photo(chat, photo=photo, caption=text, parse_mode=ParseMode.HTML),
                    timeout=timeout,
                )
            else:
                msg = await asyncio.wait_for(
                    self._bot.send_message(
                        chat,
                        text,
                        parse_mode=ParseMode.HTML,
                        link_preview_options=LinkPreviewOptions(is_disabled=False),
                    ),
                    timeout=timeout,
                )
        except asyncio.TimeoutError:
            log.warning("tg_send_timeout", chat_id=chat, timeout_seconds=timeout)
            return SendResult.failure("timeout")
        except TelegramRetryAfter as e:
            log.warning("tg_send_flood_wait", chat_id=chat, retry_after=e.retry_after)
            return SendResult.failure(f"rate_limited:retry_after={e.retry_after}")
        except TelegramNetworkError as e:
            log.warning("tg_send_network_error", chat_id=chat, error=e.message)
            return SendResult.failure(f"network_error: {e.message}")
        except TelegramAPIError as e:
            log.warning("tg_send_rejected", chat_id=chat, error=e.message)
            return SendResult.failure(e.message or "telegram_error")
        except ClientDecodeError as e:
            log.warning("tg_send_malformed_response", chat_id=chat, error=str(e))
            return SendResult.failure("malformed_response")
        except Exception:
            correlation_id = str(uuid.uuid4())
            log.error("tg_send_error", chat_id=chat, correlation_id=correlation_id, exc_info=True)
            return SendResult.failure(f"telegram_failed:{correlation_id}")
        message_id = getattr(msg, "message_id", None)
        if message_id is None:
            log.warning("tg_send_malformed_response", chat_id=chat, error="no message_id")
            return SendResult.failure("malformed_response")
        log.info("tg_message_sent", chat_id=chat, message_id=message_id, with_photo=bool(photo))
        return SendResult.success(message_id)
