"""aiohttp control API for operators: list, schedule, cancel, reset, publish now."""

import secrets
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal, Optional, Union

from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, ValidationError
import structlog

from journal_publisher.services.control import ControlSurface
from journal_publisher.services.errors import ConflictError, PostNotFoundError, PublisherError

log = structlog.get_logger()

# Generic message for 500 to avoid leaking internal details
HTTP_500_MESSAGE = "Internal server error"
CLIENT_MAX_SIZE = 64 * 1024
DEFAULT_PREFIX = "/master/blog-posts"

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class ScheduleBody(BaseModel):
    """PATCH body. Omitted tg_publish_at keeps the current time; null clears it."""

    model_config = ConfigDict(extra="ignore")

    tg_publish_at: Optional[datetime] = None
    tg_chat_id: Optional[Union[str, int]] = None
    force_resend: bool = False


class PublishNowBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    force: bool = False


class ListQuery(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: Optional[Literal["pending", "sent", "error", "sending", "none"]] = None
    search: Optional[str] = Field(default=None, max_length=200)
    tg_publish_from: Optional[datetime] = None
    tg_publish_to: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=200)


def _check_auth(request: web.Request, expected_token: str) -> bool:
    """Return True only if Authorization: Bearer matches expected_token. Empty token => reject."""
    if not expected_token or not expected_token.strip():
        return False
    auth = request.headers.get("Authorization")
    if not auth or not auth.startswith("Bearer "):
        return False
    return secrets.compare_digest(auth[7:].strip(), expected_token.strip())


def _error(error: str, status: int, **extra: Any) -> web.Response:
    return web.json_response({"ok": False, "error": error, **extra}, status=status)


def _status_for(e: PublisherError) -> int:
    if isinstance(e, PostNotFoundError):
        return 404
    if isinstance(e, ConflictError):
        return 409
    return 400


@web.middleware
async def auth_and_errors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if not _check_auth(request, request.app.get("api_token") or ""):
        log.warning("control_api_unauthorized", path=request.path)
        return _error("Forbidden", 403)
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except PublisherError as e:
        log.info("control_api_rejected", path=request.path, error=e.code)
        return _error(e.code, _status_for(e))
    except ValidationError as e:
        return _error("invalid_body", 400, details=e.errors(include_url=False, include_context=False))
    except Exception as e:
        log.error("control_api_error", path=request.path, error=str(e), exc_info=True)
        return _error(HTTP_500_MESSAGE, 500)


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except Exception as e:
        log.warning("control_api_bad_json", path=request.path, error=str(e))
        raise web.HTTPBadRequest(
            text='{"ok": false, "error": "Invalid JSON"}', content_type="application/json"
        ) from None
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text='{"ok": false, "error": "JSON object required"}', content_type="application/json"
        )
    return body


def _control(request: web.Request) -> ControlSurface:
    return request.app["control"]


async def handle_list(request: web.Request) -> web.Response:
    """GET {prefix}?status=&search=&tg_publish_from=&tg_publish_to=&limit="""
    query = ListQuery.model_validate(dict(request.query))
    posts = await _control(request).list_posts(
        status=query.status,
        search=query.search,
        publish_from=query.tg_publish_from,
        publish_to=query.tg_publish_to,
        limit=query.limit,
    )
    return web.json_response({"ok": True, "items": [p.delivery_view() for p in posts]})


async def handle_get_state(request: web.Request) -> web.Response:
    post = await _control(request).get_state(request.match_info["post_id"])
    return web.json_response({"ok": True, "post": post.delivery_view()})


async def handle_patch(request: web.Request) -> web.Response:
    """
    PATCH {prefix}/{id}/tg with { tg_publish_at?, tg_chat_id?, force_resend? }.
    { tg_publish_at: null } alone cancels; { force_resend: true } alone resets to pending.
    """
    body = ScheduleBody.model_validate(await _json_body(request))
    control = _control(request)
    post_id = request.match_info["post_id"]
    given = body.model_fields_set
    if given == {"tg_publish_at"} and body.tg_publish_at is None:
        post = await control.cancel_schedule(post_id)
    elif body.force_resend and "tg_publish_at" not in given and body.tg_chat_id is None:
        post = await control.reset_pending(post_id)
    else:
        post = await control.schedule(
            post_id,
            body.tg_publish_at,
            chat_id=str(body.tg_chat_id) if body.tg_chat_id is not None else None,
            force_resend=body.force_resend,
            publish_at_given="tg_publish_at" in given,
        )
    return web.json_response({"ok": True, "post": post.delivery_view()})


async def handle_cancel(request: web.Request) -> web.Response:
    post = await _control(request).cancel_schedule(request.match_info["post_id"])
    return web.json_response({"ok": True, "post": post.delivery_view()})


async def handle_reset(request: web.Request) -> web.Response:
    post = await _control(request).reset_pending(request.match_info["post_id"])
    return web.json_response({"ok": True, "post": post.delivery_view()})


async def handle_publish_now(request: web.Request) -> web.Response:
    """POST {prefix}/{id}/tg/publish-now with { force? }. Delivery failure => 502 with the error."""
    body = PublishNowBody.model_validate(await _json_body(request))
    control = _control(request)
    post_id = request.match_info["post_id"]
    result = await control.publish_now(post_id, force=body.force)
    post = await control.get_state(post_id)
    if not result.ok:
        return _error(result.error or "telegram_error", 502, post=post.delivery_view())
    return web.json_response({"ok": True, "message_id": result.message_id, "post": post.delivery_view()})


def create_app(
    control: ControlSurface,
    api_token: str,
    prefix: str = DEFAULT_PREFIX,
) -> web.Application:
    """Create aiohttp app with the control routes under prefix. Empty api_token rejects every request."""
    app = web.Application(client_max_size=CLIENT_MAX_SIZE, middlewares=[auth_and_errors_middleware])
    app["control"] = control
    app["api_token"] = api_token
    base = "/" + prefix.strip().strip("/") if prefix.strip().strip("/") else DEFAULT_PREFIX
    app.router.add_get(base, handle_list)
    app.router.add_get(base + "/{post_id}/tg", handle_get_state)
    app.router.add_patch(base + "/{post_id}/tg", handle_patch)
    app.router.add_post(base + "/{post_id}/tg/cancel", handle_cancel)
    app.router.add_post(base + "/{post_id}/tg/reset", handle_reset)
    app.router.add_post(base + "/{post_id}/tg/publish-now", handle_publish_now)
    return app
