"""Shared fakes: in-memory post repository and a recording channel."""

import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional
from unittest.mock import MagicMock

import pytest

from journal_publisher.database.models import Post, TgStatus
from journal_publisher.database.repository import ERROR_MAX_LENGTH, UPDATABLE_FIELDS
from journal_publisher.services.channel import ChannelConfig, SendResult, TelegramChannel
from journal_publisher.services.delivery import DeliveryMachine

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
SITE_URL = "https://example.com/"


def make_post(**overrides: Any) -> Post:
    fields: dict[str, Any] = {
        "id": 1,
        "slug": "septic-guide",
        "title": "Septic Guide",
        "excerpt": "Short summary.",
        "is_published": True,
    }
    fields.update(overrides)
    return Post(**fields)


def assert_invariants(post: Post) -> None:
    assert (post.tg_posted_at is not None) == (post.tg_status is TgStatus.SENT)
    if post.tg_error is not None:
        assert post.tg_status is TgStatus.ERROR


class FakePostRepository:
    """Same contract as PostRepository; each method is atomic between awaits."""

    def __init__(self, *posts: Post) -> None:
        self.posts: dict[int, Post] = {p.id: dataclasses.replace(p) for p in posts}
        self.update_calls: list[tuple[int, dict[str, Any]]] = []
        self.claims: list[int] = []
        self.delivery_log: list[dict[str, Any]] = []

    def snapshot(self, post_id: int) -> Post:
        return dataclasses.replace(self.posts[post_id])

    async def get_post(self, post_id: int) -> Optional[Post]:
        post = self.posts.get(post_id)
        return dataclasses.replace(post) if post else None

    async def list_due_posts(self, now: datetime, limit: int = 25) -> list[Post]:
        due = [p for p in self.posts.values() if p.is_due(now)]
        due.sort(key=lambda p: (p.tg_publish_at, p.id))
        return [dataclasses.replace(p) for p in due[:limit]]

    async def list_posts(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        publish_from: Optional[datetime] = None,
        publish_to: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Post]:
        items = list(self.posts.values())
        if status == "none":
            items = [p for p in items if p.tg_status is None]
        elif status:
            items = [p for p in items if p.tg_status is TgStatus.parse(status)]
        if search:
            needle = search.lower()
            items = [p for p in items if needle in p.title.lower() or needle in p.slug.lower()]
        if publish_from:
            items = [p for p in items if p.tg_publish_at and p.tg_publish_at >= publish_from]
        if publish_to:
            items = [p for p in items if p.tg_publish_at and p.tg_publish_at <= publish_to]
        return [dataclasses.replace(p) for p in items[:limit]]

    async def update_delivery(
        self,
        post_id: int,
        expected_status: Optional[TgStatus],
        fields: Mapping[str, Any],
    ) -> Optional[Post]:
        assert set(fields) <= UPDATABLE_FIELDS
        self.update_calls.append((post_id, dict(fields)))
        post = self.posts.get(post_id)
        if post is None or post.tg_status is not expected_status:
            return None
        self.posts[post_id] = dataclasses.replace(post, **fields)
        return self.snapshot(post_id)

    async def claim_for_send(
        self,
        post_id: int,
        allowed_statuses: Iterable[Optional[TgStatus]],
        now: datetime,
        due_only: bool = False,
    ) -> Optional[Post]:
        post = self.posts.get(post_id)
        if post is None or post.tg_status not in set(allowed_statuses):
            return None
        if due_only and (post.tg_publish_at is None or post.tg_publish_at > now):
            return None
        self.claims.append(post_id)
        self.posts[post_id] = dataclasses.replace(
            post, tg_status=TgStatus.SENDING, tg_posted_at=None, tg_error=None, tg_attempted_at=now,
        )
        return self.snapshot(post_id)

    async def finish_sent(self, post_id: int, posted_at: datetime) -> bool:
        post = self.posts.get(post_id)
        if post is None or post.tg_status is not TgStatus.SENDING:
            return False
        self.posts[post_id] = dataclasses.replace(
            post, tg_status=TgStatus.SENT, tg_posted_at=posted_at, tg_error=None,
        )
        return True

    async def finish_error(self, post_id: int, error: str) -> bool:
        post = self.posts.get(post_id)
        if post is None or post.tg_status is not TgStatus.SENDING:
            return False
        self.posts[post_id] = dataclasses.replace(
            post, tg_status=TgStatus.ERROR, tg_error=error[:ERROR_MAX_LENGTH], tg_posted_at=None,
        )
        return True

    async def recover_stale_sends(self, older_than: datetime) -> list[int]:
        recovered = []
        for post_id, post in self.posts.items():
            if post.tg_status is TgStatus.SENDING and (
                post.tg_attempted_at is None or post.tg_attempted_at < older_than
            ):
                self.posts[post_id] = dataclasses.replace(
                    post, tg_status=TgStatus.ERROR, tg_error="send_interrupted",
                )
                recovered.append(post_id)
        return recovered

    async def add_delivery_log(
        self,
        post_id: int,
        action: str,
        actor: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.delivery_log.append({"post_id": post_id, "action": action, "actor": actor, "details": details})


class RecordingChannel(TelegramChannel):
    """TelegramChannel whose network call is replaced by canned results."""

    def __init__(
        self,
        results: Optional[list[SendResult]] = None,
        delay: float = 0.0,
        token: Optional[str] = "123:abc",
        default_chat_id: Optional[str] = "-100500",
    ) -> None:
        super().__init__(
            ChannelConfig(token=token, default_chat_id=default_chat_id, site_url=SITE_URL),
            bot=MagicMock(),
        )
        self.results = list(results or [])
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def send(self, target: str, text: str, image: Optional[str] = None) -> SendResult:
        problem = self.check_ready(target)
        if problem:
            return SendResult.failure(problem)
        self.calls.append({"target": target, "text": text, "image": image})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.results:
            return self.results.pop(0)
        return SendResult.success(1000 + len(self.calls))


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> Clock:
    return Clock()


def make_machine(
    repo: FakePostRepository,
    channel: TelegramChannel,
    clock: Clock,
) -> DeliveryMachine:
    return DeliveryMachine(repo, channel, site_url=SITE_URL, path_prefix="journal", clock=clock)
