"""Delivery state machine for posting blog articles to the Telegram channel.

States seen by operators: unscheduled, pending, sent, error. A send attempt first
claims the post by moving it to the internal 'sending' status with a conditional
update; only the holder of that claim writes the final sent/error result, so a
scheduled and a manual attempt can never both reach the Bot API for one post.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from journal_publisher.database.models import Post, TgStatus
from journal_publisher.database.repository import PostRepository
from journal_publisher.services.channel import SendResult, TelegramChannel
from journal_publisher.services.composer import DEFAULT_PATH_PREFIX, compose_message
from journal_publisher.services.errors import ConflictError, PostNotFoundError, PreconditionError

log = structlog.get_logger()

# Statuses a send may be claimed from
AUTO_SEND_STATUSES = frozenset({TgStatus.PENDING})
MANUAL_SEND_STATUSES = frozenset({None, TgStatus.PENDING, TgStatus.ERROR})
FORCED_SEND_STATUSES = MANUAL_SEND_STATUSES | {TgStatus.SENT}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken as UTC; aware ones are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_due_for_auto_send(post: Post, now: datetime) -> bool:
    """Scheduler may send: pending (so never sent, errored or in flight) and publish time reached."""
    return post.is_due(now)


def check_manual_send(post: Post, force: bool) -> None:
    """Raise ConflictError if a publish-now request must be rejected for this post."""
    if post.tg_status is TgStatus.SENDING:
        raise ConflictError("send_in_progress")
    if post.tg_status is TgStatus.SENT and not force:
        raise ConflictError("already_sent")


def _changed(post: Post, changes: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in changes.items() if getattr(post, k) != v}


def reset_changes(post: Post) -> dict[str, Any]:
    """error/sent/pending -> pending with error and posted time cleared; publish time kept."""
    if post.tg_status is TgStatus.SENDING:
        raise ConflictError("send_in_progress")
    return _changed(post, {"tg_status": TgStatus.PENDING, "tg_error": None, "tg_posted_at": None})


def cancel_changes(post: Post) -> dict[str, Any]:
    """Drop the publish time. Status is left as is so an errored post stays visible."""
    if post.tg_status is TgStatus.SENDING:
        raise ConflictError("send_in_progress")
    if post.tg_status is TgStatus.SENT:
        raise ConflictError("already_sent")
    return _changed(post, {"tg_publish_at": None})


def schedule_changes(
    post: Post,
    publish_at: Optional[datetime],
    publish_at_given: bool,
    chat_id: Optional[str] = None,
    force_resend: bool = False,
) -> dict[str, Any]:
    """
    Set publish time and/or chat. A never-scheduled post becomes pending. With
    force_resend an error/sent post is reset to pending; timing stays with the scheduler.
    """
    if post.tg_status is TgStatus.SENDING:
        raise ConflictError("send_in_progress")
    if publish_at_given and publish_at is None and post.tg_status is TgStatus.SENT and not force_resend:
        # same rule as cancel_changes
        raise ConflictError("already_sent")
    changes: dict[str, Any] = {}
    if publish_at_given:
        changes["tg_publish_at"] = as_utc(publish_at)
    if chat_id is not None:
        changes["tg_chat_id"] = chat_id.strip() or None
    if post.tg_status is None:
        changes["tg_status"] = TgStatus.PENDING
    if force_resend and post.tg_status in (TgStatus.ERROR, TgStatus.SENT):
        changes.update(reset_changes(post))
    return _changed(post, changes)


class DeliveryMachine:
    """Claims, composes, sends and records the outcome for one post at a time."""

    def __init__(
        self,
        repo: PostRepository,
        channel: TelegramChannel,
        site_url: str,
        path_prefix: str = DEFAULT_PATH_PREFIX,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repo = repo
        self.channel = channel
        self.site_url = site_url
        self.path_prefix = path_prefix
        self.clock = clock

    async def load(self, post_id: int) -> Post:
        post = await self.repo.get_post(post_id)
        if post is None:
            raise PostNotFoundError(post_id)
        return post

    def _check_ready(self, post: Post) -> None:
        problem = self.channel.check_ready(self.channel.resolve_target(post.tg_chat_id))
        if problem:
            raise PreconditionError(problem)

    async def publish_now(self, post_id: int, force: bool = False, actor: str = "operator") -> SendResult:
        """
        Send immediately, ignoring the publish time. Raises PreconditionError or
        ConflictError before any send; delivery failures are returned and persisted.
        """
        post = await self.load(post_id)
        check_manual_send(post, force)
        self._check_ready(post)
        allowed = FORCED_SEND_STATUSES if force else MANUAL_SEND_STATUSES
        claimed = await self.repo.claim_for_send(post.id, allowed, self.clock())
        if claimed is None:
            current = await self.load(post_id)
            check_manual_send(current, force)
            raise ConflictError("state_changed")
        return await self._send_claimed(claimed, actor)

    async def send_scheduled(self, post: Post) -> Optional[SendResult]:
        """
        Scheduler path. Returns None when the post is no longer due or another
        attempt claimed it first.
        """
        now = self.clock()
        if not is_due_for_auto_send(post, now):
            log.info("scheduled_send_skipped", post_id=post.id, reason="not_due", tg_status=post.tg_status)
            return None
        self._check_ready(post)
        claimed = await self.repo.claim_for_send(post.id, AUTO_SEND_STATUSES, now, due_only=True)
        if claimed is None:
            log.info("scheduled_send_skipped", post_id=post.id, reason="claimed_elsewhere")
            return None
        return await self._send_claimed(claimed, "scheduler")

    async def _send_claimed(self, post: Post, actor: str) -> SendResult:
        target = self.channel.resolve_target(post.tg_chat_id)
        message = compose_message(post, self.site_url, self.path_prefix)
        text = self.channel.build_text(message)
        log.info("tg_send_start", post_id=post.id, chat_id=target, actor=actor, with_photo=bool(post.cover_image))
        try:
            result = await self.channel.send(target, text, post.cover_image)
        except Exception:
            # The claim must end in a terminal state even if the adapter breaks its contract
            log.error("tg_send_unexpected_error", post_id=post.id, exc_info=True)
            result = SendResult.failure("internal_error")
        if result.ok:
            written = await self.repo.finish_sent(post.id, self.clock())
            log.info("tg_post_sent", post_id=post.id, chat_id=target, message_id=result.message_id, actor=actor)
            await self.record_action(
                post.id, "sent", actor, {"chat_id": target, "message_id": result.message_id},
            )
        else:
            written = await self.repo.finish_error(post.id, result.error or "telegram_error")
            log.warning("tg_post_failed", post_id=post.id, chat_id=target, error=result.error, actor=actor)
            await self.record_action(post.id, "send_failed", actor, {"chat_id": target, "error": result.error})
        if not written:
            log.error("tg_claim_lost", post_id=post.id, ok=result.ok, msg="Post left 'sending' before result was written")
        return result

    async def record_action(
        self,
        post_id: int,
        action: str,
        actor: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append to the delivery log. A log write failure does not undo the transition."""
        try:
            await self.repo.add_delivery_log(post_id, action, actor=actor, details=details)
        except Exception as e:
            log.warning("delivery_log_write_failed", post_id=post_id, action=action, error=str(e))
