from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlmodel import Session

from app.domain.models import User, UserStatus
from app.domain.permissions import has_permission, permission_names_for_role
from app.infra.auth import decode_access_token
from app.infra.context import set_request_context
from app.infra.db import get_engine

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/token")


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    set_request_context(claims.get("sub"), request.headers.get("x-request-id"))
    return claims


def get_current_user(
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
) -> User:
    with Session(get_engine(), expire_on_commit=False) as session:
        user = session.get(User, claims["sub"])
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    return user


def get_current_permissions(
    user: Annotated[User, Depends(get_current_user)],
) -> list[str]:
    if user.status != UserStatus.ACTIVE:
        return []
    return permission_names_for_role(user.role)


def require_perm(permission: str) -> Callable[[list[str]], list[str]]:
    def _checker(
        granted: Annotated[list[str], Depends(get_current_permissions)],
    ) -> list[str]:
        if not has_permission(granted, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
            )
        return granted

    return _checker
