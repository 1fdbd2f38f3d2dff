"""Operator actions: schedule, cancel, reset to pending, publish now."""

from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from journal_publisher.database.models import Post
from journal_publisher.database.repository import PostRepository
from journal_publisher.services.channel import SendResult
from journal_publisher.services.delivery import (
    DeliveryMachine,
    as_utc,
    cancel_changes,
    reset_changes,
    schedule_changes,
)
from journal_publisher.services.errors import ConflictError, PreconditionError

log = structlog.get_logger()

# Max post id accepted from callers (ids are int4 in blog_posts)
POST_ID_MAX = 2_000_000_000

ACTOR = "operator"


def validate_post_id(raw: Any) -> int:
    """Parse a caller-supplied post id or raise PreconditionError(invalid_post_id)."""
    if isinstance(raw, bool):
        raise PreconditionError("invalid_post_id")
    try:
        post_id = int(raw)
    except (TypeError, ValueError):
        raise PreconditionError("invalid_post_id") from None
    if post_id < 1 or post_id > POST_ID_MAX:
        raise PreconditionError("invalid_post_id")
    return post_id


class ControlSurface:
    """Thin orchestration over DeliveryMachine; every write is conditional on the loaded status."""

    def __init__(self, repo: PostRepository, machine: DeliveryMachine) -> None:
        self.repo = repo
        self.machine = machine

    async def get_state(self, post_id: Any) -> Post:
        return await self.machine.load(validate_post_id(post_id))

    async def list_posts(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        publish_from: Optional[datetime] = None,
        publish_to: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Post]:
        return await self.repo.list_posts(
            status=status,
            search=search,
            publish_from=as_utc(publish_from),
            publish_to=as_utc(publish_to),
            limit=limit,
        )

    async def schedule(
        self,
        post_id: Any,
        publish_at: Optional[datetime] = None,
        chat_id: Optional[str] = None,
        force_resend: bool = False,
        *,
        publish_at_given: bool = True,
    ) -> Post:
        """
        Set tg_publish_at (None clears it) and optionally tg_chat_id. Pass
        publish_at_given=False to leave the publish time untouched.
        """
        return await self._apply(
            post_id,
            "scheduled",
            lambda post: schedule_changes(post, publish_at, publish_at_given, chat_id, force_resend),
        )

    async def cancel_schedule(self, post_id: Any) -> Post:
        return await self._apply(post_id, "schedule_cancelled", cancel_changes)

    async def reset_pending(self, post_id: Any) -> Post:
        return await self._apply(post_id, "reset_pending", reset_changes)

    async def publish_now(self, post_id: Any, force: bool = False) -> SendResult:
        return await self.machine.publish_now(validate_post_id(post_id), force=force, actor=ACTOR)

    async def _apply(
        self,
        post_id: Any,
        action: str,
        plan: Callable[[Post], dict[str, Any]],
    ) -> Post:
        post = await self.machine.load(validate_post_id(post_id))
        changes = plan(post)
        if not changes:
            log.info("tg_control_noop", post_id=post.id, action=action)
            return post
        updated = await self.repo.update_delivery(post.id, post.tg_status, changes)
        if updated is None:
            log.warning("tg_control_conflict", post_id=post.id, action=action, expected_status=post.tg_status)
            raise ConflictError("state_changed")
        log.info("tg_control_applied", post_id=post.id, action=action, fields=sorted(changes))
        await self.machine.record_action(
            post.id,
            action,
            ACTOR,
            {k: (v.value if hasattr(v, "value") else v) for k, v in changes.items()},
        )
        return updated
