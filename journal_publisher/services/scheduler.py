"""Background scheduler: send posts with tg_status=pending when tg_publish_at <= now."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import structlog

from journal_publisher.database.models import Post
from journal_publisher.database.repository import PostRepository
from journal_publisher.services.delivery import DeliveryMachine, utcnow
from journal_publisher.services.errors import PublisherError

log = structlog.get_logger()

AlertFn = Callable[[str, str], Awaitable[Any]]


@dataclass
class PassStats:
    due: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    recovered: int = 0


class Scheduler:
    """
    One pass: recover stale in-flight claims, fetch due posts, send each with bounded
    concurrency. Passes never overlap; a failure on one post does not stop the others.
    """

    def __init__(
        self,
        repo: PostRepository,
        machine: DeliveryMachine,
        interval: int = 30,
        batch_size: int = 25,
        concurrency: int = 2,
        stale_after_sec: int = 600,
        alert: Optional[AlertFn] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repo = repo
        self.machine = machine
        self.interval = interval
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)
        self.stale_after_sec = stale_after_sec
        self.alert = alert
        self.clock = clock
        self._pass_lock = asyncio.Lock()

    async def run_pass(self) -> Optional[PassStats]:
        """Run one pass. Returns None if a previous pass is still running."""
        if self._pass_lock.locked():
            log.warning("scheduler_pass_skipped", reason="previous_pass_running")
            return None
        async with self._pass_lock:
            stats = PassStats()
            now = self.clock()
            recovered = await self.repo.recover_stale_sends(now - timedelta(seconds=self.stale_after_sec))
            for post_id in recovered:
                log.warning("stale_send_recovered", post_id=post_id, msg="Send outcome unknown, marked error")
                await self.machine.record_action(post_id, "stale_send_recovered", "scheduler")
            stats.recovered = len(recovered)
            posts = await self.repo.list_due_posts(now, limit=self.batch_size)
            stats.due = len(posts)
            semaphore = asyncio.Semaphore(self.concurrency)
            outcomes = await asyncio.gather(*(self._process(post, semaphore) for post in posts))
            for outcome in outcomes:
                setattr(stats, outcome, getattr(stats, outcome) + 1)
            if stats.due or stats.recovered:
                log.info(
                    "scheduler_pass_done",
                    due=stats.due,
                    sent=stats.sent,
                    failed=stats.failed,
                    skipped=stats.skipped,
                    recovered=stats.recovered,
                )
            return stats

    async def _process(self, post: Post, semaphore: asyncio.Semaphore) -> str:
        async with semaphore:
            try:
                result = await self.machine.send_scheduled(post)
            except PublisherError as e:
                log.warning("scheduler_post_not_sendable", post_id=post.id, error=e.code)
                return "skipped"
            except Exception as e:
                log.error("scheduler_post_error", post_id=post.id, error=str(e), exc_info=True)
                return "failed"
            if result is None:
                return "skipped"
            if result.ok:
                return "sent"
            await self._alert_failure(post, result.error or "")
            return "failed"

    async def _alert_failure(self, post: Post, error: str) -> None:
        if self.alert is None:
            return
        text = f"⚠️ Статья #{post.id} «{post.title}» не отправлена в Telegram: {error}"
        try:
            await self.alert(text, "delivery_failed")
        except Exception as e:
            log.warning("scheduler_alert_failed", post_id=post.id, error=str(e))

    async def run_forever(self) -> None:
        """Loop: run a pass every `interval` seconds. Runs until cancelled."""
        log.info("scheduler_started", interval=self.interval, batch_size=self.batch_size)
        while True:
            try:
                await self.run_pass()
            except asyncio.CancelledError:
                log.info("scheduler_stopped")
                raise
            except Exception as e:
                log.error("scheduler_tick_error", error=str(e), exc_info=True)
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                log.info("scheduler_stopped")
                raise
