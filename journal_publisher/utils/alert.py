"""Operator alerts in Telegram for delivery failures (throttled per key)."""

import time

from aiogram import Bot
import structlog

log = structlog.get_logger()

# Min seconds between two alerts with the same key
ALERT_THROTTLE_SEC = 900
ALERT_MAX_LENGTH = 4000

_last_sent: dict[str, float] = {}


async def send_alert(
    bot: Bot,
    chat_id: int,
    message: str,
    alert_key: str = "default",
) -> bool:
    """
    Send message to chat_id. If an alert with the same alert_key went out less than
    ALERT_THROTTLE_SEC ago, skip it and return False.
    """
    now = time.monotonic()
    if alert_key in _last_sent and (now - _last_sent[alert_key]) < ALERT_THROTTLE_SEC:
        return False
    try:
        await bot.send_message(chat_id, message[:ALERT_MAX_LENGTH], parse_mode=None)
    except Exception as e:
        log.warning("alert_send_failed", chat_id=chat_id, alert_key=alert_key, error=str(e))
        return False
    _last_sent[alert_key] = now
    return True


def reset_throttle() -> None:
    _last_sent.clear()
