from __future__ import annotations

import logging
from typing import Any

from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.domain.models import AuditLog, now_utc
from app.infra.db import get_engine

AUDITED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
SKIPPED_PATHS = frozenset({"/healthz", "/readyz"})
API_PREFIX = "/api/"
STATE_KEY = "hierarchy_audit"

logger = logging.getLogger(__name__)


def write_audit_log(
    *,
    actor_id: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    with Session(get_engine()) as session:
        session.add(
            AuditLog(
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=status_code,
                detail=detail or {},
            )
        )
        session.commit()


def _merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        current = merged.get(key)
        merged[key] = _merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def outcome_for(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in (401, 403):
        return "denied"
    if status_code == 404:
        return "not_found"
    if status_code == 409:
        return "conflict"
    if status_code >= 400:
        return "rejected"
    return "success"


def resource_for(route_path: str) -> str:
    """Collapse a route template into a dotted resource name.

    ``/api/hierarchy/structure/{unit_id}/path`` becomes ``hierarchy.structure.path``.
    """
    trimmed = route_path[len(API_PREFIX) :] if route_path.startswith(API_PREFIX) else route_path.lstrip("/")
    parts = [part for part in trimmed.split("/") if part and not part.startswith("{")]
    return ".".join(parts) or "root"


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    context = dict(getattr(request.state, STATE_KEY, None) or {})
    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource
    if detail:
        context["detail"] = _merge(context.get("detail") or {}, detail)
    setattr(request.state, STATE_KEY, context)


class AuditMiddleware(BaseHTTPMiddleware):
    """Persists one audit row per structural write, after the response is built."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        path = request.url.path
        method = request.method
        context: dict[str, Any] = getattr(request.state, STATE_KEY, None) or {}
        if path in SKIPPED_PATHS or (method not in AUDITED_METHODS and not context):
            return response

        actor_id = (getattr(request.state, "claims", None) or {}).get("sub")
        route_path = getattr(request.scope.get("route"), "path", path)
        resource = context.get("resource") or resource_for(route_path)
        action = context.get("action") or f"{resource}.{method.lower()}"
        detail = _merge(
            {
                "who": {"actor_id": actor_id, "request_id": request.headers.get("x-request-id")},
                "when": {"request_ts": now_utc().isoformat()},
                "where": {
                    "route": route_path,
                    "path": path,
                    "client_ip": request.client.host if request.client is not None else None,
                },
                "what": {"method": method, "targets": dict(request.path_params)},
                "result": {"status_code": response.status_code, "outcome": outcome_for(response.status_code)},
            },
            context.get("detail") or {},
        )
        try:
            write_audit_log(
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=response.status_code,
                detail=detail,
            )
        except Exception:
            logger.warning("audit write failed for %s %s", method, path, exc_info=True)
        return response
