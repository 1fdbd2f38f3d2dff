"""Blog post delivery state: reads, conditional updates and the delivery log."""

import json
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

import asyncpg
import structlog

from journal_publisher.database.models import Post, TgStatus

log = structlog.get_logger()

POST_COLUMNS = """
    id, slug, title, excerpt, content_html, content_md, cover_image, is_published,
    tg_status, tg_publish_at, tg_posted_at, tg_chat_id, tg_error, tg_attempted_at
"""

# Columns the control surface may write through update_delivery
UPDATABLE_FIELDS = frozenset({
    "tg_status", "tg_publish_at", "tg_posted_at", "tg_chat_id", "tg_error",
})

# Max length for tg_error to keep rows small and readable in the listing
ERROR_MAX_LENGTH = 500

LIST_LIMIT_MAX = 200


def row_to_post(row: Mapping[str, Any]) -> Post:
    """Build Post from a DB row. Unknown tg_status values raise ValueError."""
    return Post(
        id=row["id"],
        slug=row["slug"] or "",
        title=row["title"] or "",
        excerpt=row["excerpt"],
        content_html=row["content_html"],
        content_md=row["content_md"],
        cover_image=row["cover_image"],
        is_published=bool(row["is_published"]),
        tg_status=TgStatus.parse(row["tg_status"]),
        tg_publish_at=row["tg_publish_at"],
        tg_posted_at=row["tg_posted_at"],
        tg_chat_id=row["tg_chat_id"],
        tg_error=row["tg_error"],
        tg_attempted_at=row.get("tg_attempted_at"),
    )


def _status_value(status: Optional[TgStatus]) -> Optional[str]:
    return status.value if status is not None else None


def _rowcount(result: str) -> int:
    # result is like "UPDATE 2"
    try:
        return int(result.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


class PostRepository:
    """asyncpg-backed access to the delivery slice of blog_posts."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_post(self, post_id: int) -> Optional[Post]:
        row = await self.pool.fetchrow(
            f"SELECT {POST_COLUMNS} FROM blog_posts WHERE id = $1",
            post_id,
        )
        return row_to_post(row) if row else None

    async def list_due_posts(self, now: datetime, limit: int = 25) -> list[Post]:
        """Posts with tg_status=pending and tg_publish_at <= now, oldest first."""
        rows = await self.pool.fetch(
            f"""
            SELECT {POST_COLUMNS}
            FROM blog_posts
            WHERE tg_status = 'pending'
              AND tg_publish_at IS NOT NULL
              AND tg_publish_at <= $1
            ORDER BY tg_publish_at, id
            LIMIT $2
            """,
            now,
            limit,
        )
        return [row_to_post(r) for r in rows]

    async def list_posts(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        publish_from: Optional[datetime] = None,
        publish_to: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Post]:
        """
        Operator listing. status is a TgStatus value or "none" (never scheduled);
        search matches title or slug case-insensitively.
        """
        clauses: list[str] = []
        args: list[Any] = []
        if status:
            if status == "none":
                clauses.append("tg_status IS NULL")
            else:
                args.append(TgStatus.parse(status).value)
                clauses.append(f"tg_status = ${len(args)}")
        if search and search.strip():
            args.append(f"%{search.strip()}%")
            clauses.append(f"(title ILIKE ${len(args)} OR slug ILIKE ${len(args)})")
        if publish_from is not None:
            args.append(publish_from)
            clauses.append(f"tg_publish_at >= ${len(args)}")
        if publish_to is not None:
            args.append(publish_to)
            clauses.append(f"tg_publish_at <= ${len(args)}")
        args.append(max(1, min(limit, LIST_LIMIT_MAX)))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.pool.fetch(
            f"""
            SELECT {POST_COLUMNS}
            FROM blog_posts
            {where}
            ORDER BY tg_publish_at DESC NULLS LAST, id DESC
            LIMIT ${len(args)}
            """,
            *args,
        )
        return [row_to_post(r) for r in rows]

    async def update_delivery(
        self,
        post_id: int,
        expected_status: Optional[TgStatus],
        fields: Mapping[str, Any],
    ) -> Optional[Post]:
        """
        Write tg_* fields only if tg_status still equals expected_status.
        Returns the updated post, or None if the row is gone or its status moved on.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        if not fields:
            raise ValueError("Nothing to update")
        assignments: list[str] = []
        args: list[Any] = [post_id, _status_value(expected_status)]
        for name, value in fields.items():
            if isinstance(value, TgStatus):
                value = value.value
            args.append(value)
            assignments.append(f"{name} = ${len(args)}")
        row = await self.pool.fetchrow(
            f"""
            UPDATE blog_posts SET {', '.join(assignments)}
            WHERE id = $1 AND tg_status IS NOT DISTINCT FROM $2
            RETURNING {POST_COLUMNS}
            """,
            *args,
        )
        return row_to_post(row) if row else None

    async def claim_for_send(
        self,
        post_id: int,
        allowed_statuses: Iterable[Optional[TgStatus]],
        now: datetime,
        due_only: bool = False,
    ) -> Optional[Post]:
        """
        Atomically move the post to 'sending' if its status is one of allowed_statuses
        (and, with due_only, tg_publish_at <= now). Only the caller that gets a Post back
        may write the final result.
        """
        allowed = [s.value if s is not None else "" for s in allowed_statuses]
        due_clause = "AND tg_publish_at IS NOT NULL AND tg_publish_at <= $2" if due_only else ""
        row = await self.pool.fetchrow(
            f"""
            UPDATE blog_posts
            SET tg_status = 'sending', tg_posted_at = NULL, tg_error = NULL, tg_attempted_at = $2
            WHERE id = $1
              AND COALESCE(tg_status, '') = ANY($3::text[])
              {due_clause}
            RETURNING {POST_COLUMNS}
            """,
            post_id,
            now,
            allowed,
        )
        return row_to_post(row) if row else None

    async def finish_sent(self, post_id: int, posted_at: datetime) -> bool:
        """sending -> sent. Returns True if this call made the transition."""
        result = await self.pool.execute(
            """
            UPDATE blog_posts SET tg_status = 'sent', tg_posted_at = $2, tg_error = NULL
            WHERE id = $1 AND tg_status = 'sending'
            """,
            post_id,
            posted_at,
        )
        return _rowcount(result) == 1

    async def finish_error(self, post_id: int, error: str) -> bool:
        """sending -> error with a short description. Returns True if this call made the transition."""
        result = await self.pool.execute(
            """
            UPDATE blog_posts SET tg_status = 'error', tg_error = $2, tg_posted_at = NULL
            WHERE id = $1 AND tg_status = 'sending'
            """,
            post_id,
            (error or "unknown_error")[:ERROR_MAX_LENGTH],
        )
        return _rowcount(result) == 1

    async def recover_stale_sends(self, older_than: datetime) -> list[int]:
        """
        Move posts stuck in 'sending' since before older_than to 'error' (send_interrupted).
        Returns ids of recovered posts.
        """
        rows = await self.pool.fetch(
            """
            UPDATE blog_posts SET tg_status = 'error', tg_error = 'send_interrupted'
            WHERE tg_status = 'sending'
              AND (tg_attempted_at IS NULL OR tg_attempted_at < $1)
            RETURNING id
            """,
            older_than,
        )
        return [r["id"] for r in rows]

    async def add_delivery_log(
        self,
        post_id: int,
        action: str,
        actor: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append row to tg_delivery_log."""
        await self.pool.execute(
            """
            INSERT INTO tg_delivery_log (post_id, action, actor, details) VALUES ($1, $2, $3, $4)
            """,
            post_id,
            action,
            actor,
            json.dumps(details, default=str) if details is not None else None,
        )
