from __future__ import annotations

from contextvars import ContextVar

user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)
request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)


def set_request_context(user_id: str | None, request_id: str | None = None) -> None:
    user_id_ctx.set(user_id)
    if request_id is not None:
        request_id_ctx.set(request_id)


def get_user_id() -> str | None:
    return user_id_ctx.get()


def get_request_id() -> str | None:
    return request_id_ctx.get()
