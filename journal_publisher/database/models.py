"""Dataclasses for blog posts and their messaging delivery state."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class TgStatus(str, Enum):
    """Values of blog_posts.tg_status. NULL in the DB means never scheduled."""

    PENDING = "pending"
    SENT = "sent"
    ERROR = "error"
    # Internal: a send attempt holds the post. Only claim/finish write it.
    SENDING = "sending"

    @classmethod
    def parse(cls, value: Any) -> Optional["TgStatus"]:
        """Parse a raw status; None stays None, unknown values raise ValueError."""
        if value is None:
            return None
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Invalid tg_status: {value!r}; allowed: {[s.value for s in cls]}") from None


class DeliveryState(str, Enum):
    """Operator-facing state derived from tg_status and tg_publish_at."""

    UNSCHEDULED = "unscheduled"
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SENT = "sent"
    ERROR = "error"


@dataclass
class Post:
    """One row from blog_posts (content fields read-only, tg_* fields owned by delivery)."""

    id: int
    slug: str
    title: str
    excerpt: Optional[str] = None
    content_html: Optional[str] = None
    content_md: Optional[str] = None
    cover_image: Optional[str] = None
    is_published: bool = False
    tg_status: Optional[TgStatus] = None
    tg_publish_at: Optional[datetime] = None
    tg_posted_at: Optional[datetime] = None
    tg_chat_id: Optional[str] = None
    tg_error: Optional[str] = None
    tg_attempted_at: Optional[datetime] = None

    @property
    def delivery_state(self) -> DeliveryState:
        if self.tg_status is TgStatus.SENDING:
            return DeliveryState.IN_FLIGHT
        if self.tg_status is TgStatus.SENT:
            return DeliveryState.SENT
        if self.tg_status is TgStatus.ERROR:
            return DeliveryState.ERROR
        if self.tg_publish_at is None:
            return DeliveryState.UNSCHEDULED
        return DeliveryState.PENDING

    def is_due(self, now: datetime) -> bool:
        """True if the scheduler may pick this post up at `now`."""
        return (
            self.tg_status is TgStatus.PENDING
            and self.tg_publish_at is not None
            and self.tg_publish_at <= now
        )

    def delivery_view(self) -> dict[str, Any]:
        """JSON-friendly slice shown to operators."""
        return {
            "id": self.id,
            "slug": self.slug,
            "title": self.title,
            "is_published": self.is_published,
            "tg_status": self.tg_status.value if self.tg_status else None,
            "delivery_state": self.delivery_state.value,
            "tg_publish_at": _iso(self.tg_publish_at),
            "tg_posted_at": _iso(self.tg_posted_at),
            "tg_chat_id": self.tg_chat_id,
            "tg_error": self.tg_error,
            "tg_attempted_at": _iso(self.tg_attempted_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
