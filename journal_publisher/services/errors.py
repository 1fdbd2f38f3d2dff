"""Errors raised by the delivery services before any send is attempted."""


class PublisherError(Exception):
    """Base error with a short machine-readable code."""

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code


class PreconditionError(PublisherError):
    """Request cannot be served (config, missing destination, bad id). No state was changed."""


class PostNotFoundError(PreconditionError):
    def __init__(self, post_id: int) -> None:
        super().__init__("post_not_found", f"post {post_id} not found")
        self.post_id = post_id


class ConflictError(PublisherError):
    """Post state does not allow the action (already sent, send in progress, lost race)."""
