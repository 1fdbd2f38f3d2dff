"""Build channel-ready message parts (headline, excerpt, link) from a blog post."""

from dataclasses import dataclass

from journal_publisher.database.models import Post
from journal_publisher.utils.text import (
    normalize_whitespace,
    strip_html,
    strip_markdown,
    truncate_excerpt,
)

DEFAULT_PATH_PREFIX = "journal"


@dataclass(frozen=True)
class ComposedMessage:
    """Destination-neutral message; markup is applied by the channel adapter."""

    headline: str
    body: str
    link_url: str


def build_excerpt(post: Post) -> str:
    """
    Explicit excerpt wins and is never truncated. Otherwise text derived from
    content_html (preferred) or content_md, cut to the excerpt length policy.
    Empty string when the post has no usable text.
    """
    explicit = normalize_whitespace(post.excerpt)
    if explicit:
        return explicit
    source = strip_html(post.content_html) or strip_markdown(post.content_md)
    if not source:
        return ""
    return truncate_excerpt(source)


def build_article_url(site_url: str, slug: str, path_prefix: str = DEFAULT_PATH_PREFIX) -> str:
    base = (site_url or "").strip().rstrip("/")
    prefix = (path_prefix or DEFAULT_PATH_PREFIX).strip("/")
    return f"{base}/{prefix}/{slug or ''}"


def compose_message(
    post: Post,
    site_url: str,
    path_prefix: str = DEFAULT_PATH_PREFIX,
) -> ComposedMessage:
    """Compose headline + excerpt + article link for one post."""
    return ComposedMessage(
        headline=normalize_whitespace(post.title),
        body=build_excerpt(post),
        link_url=build_article_url(site_url, post.slug, path_prefix),
    )
