from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.api.deps import get_current_user, require_perm
from app.domain.models import (
    AppointmentCreate,
    AppointmentDismissRequest,
    AppointmentRead,
    ChannelCreationResult,
    ChannelMembershipResult,
    ChannelRead,
    EmployeePage,
    EmployeeRead,
    OrgTreeNode,
    OrgUnitCreate,
    OrgUnitRead,
    OrgUnitType,
    OrgUnitUpdate,
    PositionCreate,
    PositionPage,
    PositionRead,
    PositionUpdate,
    User,
    UserHierarchyInfoRead,
)
from app.domain.permissions import (
    PERM_APPOINTMENT_WRITE,
    PERM_CHANNEL_MANAGE,
    PERM_HIERARCHY_READ,
    PERM_POSITION_WRITE,
    PERM_STRUCTURE_WRITE,
)
from app.infra.audit import set_audit_context
from app.services.appointment_service import AppointmentService
from app.services.channel_sync_service import ChannelSyncService
from app.services.errors import (
    ConflictError,
    HierarchyError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from app.services.hierarchy_query_service import HierarchyQueryService
from app.services.org_tree_service import OrgTreeService
from app.services.position_service import PositionService

router = APIRouter()


def get_org_tree_service() -> OrgTreeService:
    return OrgTreeService()


def get_position_service() -> PositionService:
    return PositionService()


def get_appointment_service() -> AppointmentService:
    return AppointmentService()


def get_query_service() -> HierarchyQueryService:
    return HierarchyQueryService()


def get_channel_sync_service() -> ChannelSyncService:
    return ChannelSyncService()


OrgTree = Annotated[OrgTreeService, Depends(get_org_tree_service)]
Positions = Annotated[PositionService, Depends(get_position_service)]
Appointments = Annotated[AppointmentService, Depends(get_appointment_service)]
Queries = Annotated[HierarchyQueryService, Depends(get_query_service)]
Channels = Annotated[ChannelSyncService, Depends(get_channel_sync_service)]
CurrentUser = Annotated[User, Depends(get_current_user)]


def _handle_hierarchy_error(exc: HierarchyError) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, PermissionDenied):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    raise exc


@router.get(
    "/structure",
    response_model=list[OrgUnitRead],
    dependencies=[Depends(require_perm(PERM_HIERARCHY_READ))],
)
def list_units(
    service: OrgTree,
    unit_type: OrgUnitType | None = None,
    hierarchy_level: int | None = None,
    parent_id: str | None = None,
    roots_only: bool = False,
) -> list[OrgUnitRead]:
    units = service.list_units(
        unit_type=unit_type,
        hierarchy_level=hierarchy_level,
        parent_id=parent_id,
        roots_only=roots_only,
    )
    return [OrgUnitRead.model_validate(item) for item in units]


@router.post(
    "/structure",
    response_model=OrgUnitRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_STRUCTURE_WRITE))],
)
def create_unit(payload: OrgUnitCreate, request: Request, service: OrgTree) -> OrgUnitRead:
    try:
        unit = service.create_unit(payload)
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise
    set_audit_context(request, action="hierarchy.unit.create", detail={"what": {"unit_id": unit.id}})
    return OrgUnitRead.model_validate(unit)


@router.get(
    "/structure/tree",
    response_model=list[OrgTreeNode],
    dependencies=[Depends(require_perm(PERM_HIERARCHY_READ))],
)
def get_tree(
    service: OrgTree,
    root_id: str | None = None,
    max_depth: Annotated[int | None, Query(ge=0)] = None,
) -> list[OrgTreeNode]:
    try:
        return service.get_subtree(root_id, max_depth)
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise


@router.get(
    "/structure/{unit_id}",
    response_model=OrgUnitRead,
    dependencies=[Depends(require_perm(PERM_HIERARCHY_READ))],
)
def get_unit(unit_id: str, service: OrgTree) -> OrgUnitRead:
    try:
        return OrgUnitRead.model_validate(service.get_unit(unit_id))
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise


@router.get(
    "/structure/{unit_id}/path",
    response_model=list[OrgUnitRead],
    dependencies=[Depends(require_perm(PERM_HIERARCHY_READ))],
)
def get_unit_path(unit_id: str, service: OrgTree) -> list[OrgUnitRead]:
    try:
        return [OrgUnitRead.model_validate(item) for item in service.get_unit_path(unit_id)]
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise


@router.put(
    "/structure/{unit_id}",
    response_model=OrgUnitRead,
    dependencies=[Depends(require_perm(PERM_STRUCTURE_WRITE))],
)
def update_unit(unit_id: str, payload: OrgUnitUpdate, service: OrgTree) -> OrgUnitRead:
    try:
        return OrgUnitRead.model_validate(service.update_unit(unit_id, payload))
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise


@router.delete(
    "/structure/{unit_id}",
    dependencies=[Depends(require_perm(PERM_STRUCTURE_WRITE))],
)
def delete_unit(unit_id: str, request: Request, service: OrgTree, force: bool = False) -> dict[str, list[str]]:
    try:
        deleted = service.delete_unit(unit_id, force=force)
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise
    set_audit_context(request, action="hierarchy.unit.delete", detail={"what": {"deleted_ids": deleted}})
    return {"deleted_ids": deleted}


@router.get(
    "/positions",
    response_model=PositionPage,
    dependencies=[Depends(require_perm(PERM_HIERARCHY_READ))],
)
def list_positions(
    service: Positions,
    organization_unit_id: str | None = None,
    is_managerial: bool | None = None,
    include_inactive: bool = False,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> PositionPage:
    items, total = service.list_positions(
        organization_unit_id=organization_unit_id,
        is_managerial=is_managerial,
        include_inactive=include_inactive,
        page=page,
        limit=limit,
    )
    return PositionPage(
        items=[PositionRead.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.post(
    "/positions",
    response_model=PositionRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_POSITION_WRITE))],
)
def create_position(payload: PositionCreate, service: Positions) -> PositionRead:
    try:
        return PositionRead.model_validate(service.create_position(payload))
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise


@router.get(
    "/positions/{position_id}",
    response_model=PositionRead,
    dependencies=[Depends(require_perm(PERM_HIERARCHY_READ))],
)
def get_position(position_id: str, service: Positions) -> PositionRead:
    try:
        return PositionRead.model_validate(service.get_position(position_id))
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise


@router.put(
    "/positions/{position_id}",
    response_model=PositionRead,
    dependencies=[Depends(require_perm(PERM_POSITION_WRITE))],
)
def update_position(position_id: str, payload: PositionUpdate, service: Positions) -> PositionRead:
    try:
        return PositionRead.model_validate(service.update_position(position_id, payload))
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise


@router.post(
    "/appointments",
    response_model=AppointmentRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_APPOINTMENT_WRITE))],
)
def assign_appointment(payload: AppointmentCreate, request: Request, service: Appointments) -> AppointmentRead:
    try:
        appointment = service.assign_appointment(payload)
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise
    set_audit_context(
        request,
        action="hierarchy.appointment.assign",
        detail={"what": {"appointment_id": appointment.id, "user_id": appointment.user_id}},
    )
    return AppointmentRead.model_validate(appointment)


@router.put(
    "/appointments/{appointment_id}/dismiss",
    response_model=AppointmentRead,
    dependencies=[Depends(require_perm(PERM_APPOINTMENT_WRITE))],
)
def dismiss_appointment(
    appointment_id: str,
    payload: AppointmentDismissRequest,
    request: Request,
    service: Appointments,
) -> AppointmentRead:
    try:
        appointment = service.dismiss(appointment_id, payload)
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise
    set_audit_context(
        request,
        action="hierarchy.appointment.dismiss",
        detail={"what": {"appointment_id": appointment.id, "user_id": appointment.user_id}},
    )
    return AppointmentRead.model_validate(appointment)


@router.get(
    "/users/{user_id}/hierarchy",
    response_model=UserHierarchyInfoRead,
    dependencies=[Depends(require_perm(PERM_HIERARCHY_READ))],
)
def get_user_hierarchy(user_id: str, service: Queries) -> UserHierarchyInfoRead:
    try:
        return service.get_user_hierarchy_info(user_id)
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise


@router.get(
    "/users/{user_id}/subordinates",
    response_model=list[EmployeeRead],
    dependencies=[Depends(require_perm(PERM_HIERARCHY_READ))],
)
def get_subordinates(user_id: str, service: Queries, direct: bool = False) -> list[EmployeeRead]:
    try:
        return service.get_subordinates(user_id, direct_only=direct)
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise


@router.get(
    "/users/{user_id}/appointments",
    response_model=list[AppointmentRead],
    dependencies=[Depends(require_perm(PERM_HIERARCHY_READ))],
)
def get_appointment_history(user_id: str, service: Appointments, current: bool = False) -> list[AppointmentRead]:
    try:
        history = service.get_appointment_history(user_id, current_only=current)
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise
    return [AppointmentRead.model_validate(item) for item in history]


@router.get(
    "/users/{user_id}/supervisor",
    response_model=EmployeeRead | None,
    dependencies=[Depends(require_perm(PERM_HIERARCHY_READ))],
)
def get_supervisor(user_id: str, service: Queries) -> EmployeeRead | None:
    try:
        return service.get_direct_supervisor(user_id)
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise


@router.get(
    "/organizations/{unit_id}/employees",
    response_model=EmployeePage,
    dependencies=[Depends(require_perm(PERM_HIERARCHY_READ))],
)
def list_employees(
    unit_id: str,
    service: Queries,
    include_descendants: bool = True,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> EmployeePage:
    try:
        items, total = service.get_subtree_employees(
            unit_id,
            include_descendants=include_descendants,
            page=page,
            limit=limit,
        )
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise
    return EmployeePage(items=items, total=total, page=page, limit=limit)


@router.post(
    "/organizations/{unit_id}/create-channel",
    response_model=ChannelCreationResult,
    dependencies=[Depends(require_perm(PERM_CHANNEL_MANAGE))],
)
def create_organization_channel(
    unit_id: str,
    request: Request,
    user: CurrentUser,
    service: Channels,
) -> ChannelCreationResult:
    try:
        result = service.create_organization_channel(unit_id, user.id)
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise
    set_audit_context(
        request,
        action="hierarchy.channel.create",
        detail={"what": {"unit_id": unit_id, "channel_id": result.channel_id, "created": result.created}},
    )
    return result


@router.post(
    "/channels/{channel_id}/sync-membership/{unit_id}",
    response_model=ChannelMembershipResult,
    dependencies=[Depends(require_perm(PERM_CHANNEL_MANAGE))],
)
def sync_channel_membership(channel_id: str, unit_id: str, service: Channels) -> ChannelMembershipResult:
    try:
        return service.sync_organization_channel_membership(channel_id, unit_id)
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise


@router.get(
    "/channels/{channel_id}",
    response_model=ChannelRead,
    dependencies=[Depends(require_perm(PERM_HIERARCHY_READ))],
)
def get_channel(channel_id: str, service: Channels) -> ChannelRead:
    try:
        return ChannelRead.model_validate(service.get_channel(channel_id))
    except HierarchyError as exc:
        _handle_hierarchy_error(exc)
        raise
