from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import require_perm
from app.domain.models import (
    BootstrapAdminRequest,
    RoleRead,
    RoleReassignRead,
    UserCreate,
    UserRead,
    UserUpdate,
)
from app.domain.permissions import PERM_IDENTITY_READ, PERM_IDENTITY_WRITE, PERM_WILDCARD
from app.domain.roles import SystemRole
from app.infra.audit import set_audit_context
from app.services.errors import ConflictError, HierarchyError, NotFoundError
from app.services.identity_service import IdentityService
from app.services.role_service import RoleService

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


def get_role_service() -> RoleService:
    return RoleService()


Service = Annotated[IdentityService, Depends(get_identity_service)]
Roles = Annotated[RoleService, Depends(get_role_service)]


def _handle_identity_error(exc: HierarchyError) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, request: Request, service: Service) -> UserRead:
    try:
        user = service.bootstrap_admin(payload)
    except HierarchyError as exc:
        _handle_identity_error(exc)
        raise
    set_audit_context(request, action="identity.bootstrap_admin", detail={"what": {"user_id": user.id}})
    return UserRead.model_validate(user)


@router.post(
    "/users",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_IDENTITY_WRITE))],
)
def create_user(payload: UserCreate, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.create_user(payload))
    except HierarchyError as exc:
        _handle_identity_error(exc)
        raise


@router.get(
    "/users",
    response_model=list[UserRead],
    dependencies=[Depends(require_perm(PERM_IDENTITY_READ))],
)
def list_users(service: Service) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in service.list_users()]


@router.get(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_IDENTITY_READ))],
)
def get_user(user_id: str, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.get_user(user_id))
    except HierarchyError as exc:
        _handle_identity_error(exc)
        raise


@router.patch(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_IDENTITY_WRITE))],
)
def update_user(user_id: str, payload: UserUpdate, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.update_user(user_id, payload))
    except HierarchyError as exc:
        _handle_identity_error(exc)
        raise


@router.get(
    "/roles",
    response_model=list[RoleRead],
    dependencies=[Depends(require_perm(PERM_IDENTITY_READ))],
)
def list_roles(roles: Roles) -> list[RoleRead]:
    return roles.list_roles()


@router.get(
    "/roles/{role}",
    response_model=RoleRead,
    dependencies=[Depends(require_perm(PERM_IDENTITY_READ))],
)
def get_role(role: str, roles: Roles) -> RoleRead:
    if role not in {item.value for item in SystemRole}:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="role not found")
    return roles.describe_role(role)


@router.post(
    "/roles/recompute",
    response_model=RoleReassignRead,
    dependencies=[Depends(require_perm(PERM_WILDCARD))],
)
def recompute_roles(request: Request, roles: Roles) -> RoleReassignRead:
    result = RoleReassignRead(**roles.reassign_all_roles())
    set_audit_context(request, action="identity.roles.recompute", detail={"result": result.model_dump()})
    return result
