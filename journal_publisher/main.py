"""Entry point: aiohttp control API + background scheduler posting journal articles to Telegram."""

import asyncio
import functools
import os
import sys
from typing import Optional
from urllib.parse import urlparse

import aiohttp.web
from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.client.session.aiohttp import AiohttpSession
from aiogram.enums import ParseMode
import structlog

from journal_publisher.config import Settings
from journal_publisher.database.connection import close_pool, create_pool_with_retry
from journal_publisher.database.repository import PostRepository
from journal_publisher.services.channel import ChannelConfig, TelegramChannel
from journal_publisher.services.control import ControlSurface
from journal_publisher.services.delivery import DeliveryMachine
from journal_publisher.services.scheduler import Scheduler
from journal_publisher.utils.alert import send_alert
from journal_publisher.utils.logging import configure_logging
from journal_publisher.web.control_api import create_app

# Bot API session timeout (seconds); each send is additionally bounded by SEND_TIMEOUT
BOT_SESSION_TIMEOUT = 60


def create_bot(config: Settings) -> Optional[Bot]:
    """Bot with HTML parse mode and optional proxy. None when BOT_TOKEN is not set."""
    log = structlog.get_logger()
    if not config.BOT_TOKEN:
        log.warning("bot_token_missing", msg="Sends will fail with missing_tg_token until BOT_TOKEN is set")
        return None
    proxy_url = (config.TELEGRAM_PROXY or os.environ.get("HTTP_PROXY") or "").strip()
    if proxy_url:
        session = AiohttpSession(timeout=BOT_SESSION_TIMEOUT, proxy=proxy_url)
        try:
            p = urlparse(proxy_url)
            safe_proxy = f"{p.scheme}://{p.hostname or ''}:{p.port or ''}"
        except ValueError:
            safe_proxy = "(proxy set)"
        log.info("telegram_proxy_enabled", proxy=safe_proxy)
    else:
        session = AiohttpSession(timeout=BOT_SESSION_TIMEOUT)
    return Bot(
        token=config.BOT_TOKEN,
        session=session,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )


def main() -> None:
    """Run publisher: start control API server, then run the scheduler until stopped."""
    configure_logging()
    log = structlog.get_logger()
    try:
        config = Settings()
    except Exception as e:
        log.error("config_load_failed", error=str(e), exc_info=True)
        sys.exit(1)
    configure_logging(config.LOG_LEVEL)
    api_token = (config.CONTROL_API_TOKEN or "").strip()
    if not api_token:
        log.error("control_api_token_required", msg="CONTROL_API_TOKEN must be set")
        sys.exit(1)
    if not config.SITE_URL:
        log.warning("site_url_missing", msg="Article links and relative cover images will be relative")

    async def run() -> None:
        pool = await create_pool_with_retry(config.DATABASE_URL)
        bot = create_bot(config)
        repo = PostRepository(pool)
        channel = TelegramChannel(ChannelConfig.from_settings(config), bot)
        machine = DeliveryMachine(
            repo,
            channel,
            site_url=config.SITE_URL,
            path_prefix=config.JOURNAL_PATH_PREFIX,
        )
        control = ControlSurface(repo, machine)
        alert = None
        if bot is not None and config.ALERT_CHAT_ID:
            alert = functools.partial(send_alert, bot, config.ALERT_CHAT_ID)
        scheduler = Scheduler(
            repo,
            machine,
            interval=config.SCHEDULER_INTERVAL,
            batch_size=config.SCHEDULER_BATCH_SIZE,
            concurrency=config.SCHEDULER_CONCURRENCY,
            stale_after_sec=config.STALE_SEND_AFTER_SEC,
            alert=alert,
        )

        app = create_app(control, api_token, prefix=config.CONTROL_API_PREFIX)
        runner = aiohttp.web.AppRunner(app)
        await runner.setup()
        site = aiohttp.web.TCPSite(runner, "0.0.0.0", config.CONTROL_API_PORT)
        await site.start()
        log.info("control_api_started", port=config.CONTROL_API_PORT, prefix=config.CONTROL_API_PREFIX)

        scheduler_task = asyncio.create_task(scheduler.run_forever())
        try:
            await scheduler_task
        finally:
            scheduler_task.cancel()
            try:
                await scheduler_task
            except asyncio.CancelledError:
                pass
            if bot is not None:
                await bot.session.close()
            await runner.cleanup()
            await close_pool(pool)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        log.info("shutdown")
    except Exception as e:
        log.error("fatal", exc_info=True, error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
