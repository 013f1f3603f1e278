from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, SQLModel

from app.domain.roles import RolePermissions, SystemRole
from app.domain.state_machine import AppointmentType, ChannelStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


class OrgUnitType(StrEnum):
    TOP_LEVEL_GOVERNMENT = "top_level_government"
    MINISTRY = "ministry"
    COMMITTEE = "committee"
    DEPARTMENT = "department"
    DIVISION = "division"
    AGENCY = "agency"
    ADMINISTRATION = "administration"


class UserStatus(StrEnum):
    ACTIVE = "active"
    BLOCKED = "blocked"
    DISMISSED = "dismissed"


class ChannelRole(StrEnum):
    SUBSCRIBER = "subscriber"
    MEMBER = "member"
    MODERATOR = "moderator"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    username: str = Field(index=True, unique=True)
    full_name: str
    status: UserStatus = Field(default=UserStatus.ACTIVE, index=True)
    role: SystemRole = Field(default=SystemRole.GUEST, index=True)
    role_updated_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class OrganizationUnit(SQLModel, table=True):
    __tablename__ = "organization_units"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    short_name: str | None = None
    code: str | None = Field(default=None, index=True, unique=True)
    unit_type: OrgUnitType = Field(index=True)
    hierarchy_level: int = Field(default=0, index=True)
    parent_id: str | None = Field(default=None, foreign_key="organization_units.id", index=True)
    path: str = Field(index=True, unique=True)
    order_index: int = Field(default=0)
    description: str | None = None
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Position(SQLModel, table=True):
    __tablename__ = "positions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_unit_id: str = Field(foreign_key="organization_units.id", index=True)
    title: str = Field(index=True)
    code: str | None = Field(default=None, index=True, unique=True)
    is_managerial: bool = Field(default=False)
    can_manage_subordinates: bool = Field(default=False)
    can_assign_tasks: bool = Field(default=False)
    can_issue_disciplinary_actions: bool = Field(default=False)
    reports_to_position_id: str | None = Field(default=None, foreign_key="positions.id", index=True)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            "uq_appointments_user_current",
            "user_id",
            unique=True,
            sqlite_where=text("is_current = 1"),
            postgresql_where=text("is_current"),
        ),
        Index("ix_appointments_position_current", "position_id", "is_current"),
        Index("ix_appointments_unit_current", "organization_unit_id", "is_current"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    organization_unit_id: str = Field(foreign_key="organization_units.id")
    position_id: str = Field(foreign_key="positions.id")
    position_title_snapshot: str
    appointment_type: AppointmentType = Field(default=AppointmentType.PERMANENT)
    start_date: datetime = Field(default_factory=now_utc, index=True)
    end_date: datetime | None = None
    is_current: bool = Field(default=True)
    dismissal_reason: str | None = None
    appointment_order_reference: str | None = None
    dismissal_order_reference: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Channel(SQLModel, table=True):
    __tablename__ = "channels"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str
    description: str | None = None
    channel_type: str = Field(default="public")
    owner_id: str | None = Field(default=None, index=True)
    organization_unit_id: str | None = Field(
        default=None,
        foreign_key="organization_units.id",
        index=True,
    )
    auto_created: bool = Field(default=False, index=True)
    is_verified: bool = Field(default=False)
    is_pinned: bool = Field(default=False)
    tags: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    allowed_roles: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    subscriber_count: int = Field(default=0)
    status: ChannelStatus = Field(default=ChannelStatus.UNINITIALIZED)
    last_sync_error: str | None = None
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class ChannelSubscription(SQLModel, table=True):
    __tablename__ = "channel_subscriptions"
    __table_args__ = (Index("ix_channel_subscriptions_user", "user_id"),)

    channel_id: str = Field(foreign_key="channels.id", primary_key=True)
    user_id: str = Field(foreign_key="users.id", primary_key=True)
    role: ChannelRole = Field(default=ChannelRole.SUBSCRIBER)
    notifications: bool = Field(default=True)
    joined_at: datetime = Field(default_factory=now_utc)
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class UserCreate(BaseModel):
    username: str
    full_name: str
    status: UserStatus = UserStatus.ACTIVE


class UserUpdate(BaseModel):
    full_name: str | None = None
    status: UserStatus | None = None


class UserRead(ORMReadModel):
    id: str
    username: str
    full_name: str
    status: UserStatus
    role: SystemRole
    role_updated_at: datetime | None
    created_at: datetime


class BootstrapAdminRequest(BaseModel):
    username: str
    full_name: str
    organization_name: str = "System Administration"
    position_title: str = "Системный администратор"


class OrgUnitCreate(BaseModel):
    name: str
    unit_type: OrgUnitType
    hierarchy_level: int = PydanticField(ge=0)
    parent_id: str | None = None
    order_index: int | None = None
    short_name: str | None = None
    code: str | None = None
    description: str | None = None


class OrgUnitUpdate(BaseModel):
    name: str | None = None
    unit_type: OrgUnitType | None = None
    hierarchy_level: int | None = PydanticField(default=None, ge=0)
    parent_id: str | None = None
    order_index: int | None = None
    short_name: str | None = None
    code: str | None = None
    description: str | None = None


class OrgUnitRead(ORMReadModel):
    id: str
    name: str
    short_name: str | None
    code: str | None
    unit_type: OrgUnitType
    hierarchy_level: int
    parent_id: str | None
    path: str
    order_index: int
    description: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class OrgTreeNode(BaseModel):
    id: str
    name: str
    unit_type: OrgUnitType
    hierarchy_level: int
    parent_id: str | None
    path: str
    order_index: int
    depth: int
    employee_count: int = 0
    children: list[OrgTreeNode] = PydanticField(default_factory=list)


class PositionCreate(BaseModel):
    organization_unit_id: str
    title: str
    code: str | None = None
    is_managerial: bool = False
    can_manage_subordinates: bool = False
    can_assign_tasks: bool = False
    can_issue_disciplinary_actions: bool = False
    reports_to_position_id: str | None = None


class PositionUpdate(BaseModel):
    title: str | None = None
    code: str | None = None
    is_managerial: bool | None = None
    can_manage_subordinates: bool | None = None
    can_assign_tasks: bool | None = None
    can_issue_disciplinary_actions: bool | None = None
    reports_to_position_id: str | None = None
    is_active: bool | None = None


class PositionRead(ORMReadModel):
    id: str
    organization_unit_id: str
    title: str
    code: str | None
    is_managerial: bool
    can_manage_subordinates: bool
    can_assign_tasks: bool
    can_issue_disciplinary_actions: bool
    reports_to_position_id: str | None
    is_active: bool
    created_at: datetime


class PositionPage(BaseModel):
    items: list[PositionRead]
    total: int
    page: int
    limit: int


class AppointmentCreate(BaseModel):
    user_id: str
    organization_unit_id: str
    position_id: str
    appointment_type: AppointmentType = AppointmentType.PERMANENT
    start_date: datetime | None = None
    appointment_order_reference: str | None = None


class AppointmentDismissRequest(BaseModel):
    dismissal_reason: str | None = None
    dismissal_order_reference: str | None = None
    dismissal_date: datetime | None = None


class AppointmentRead(ORMReadModel):
    id: str
    user_id: str
    organization_unit_id: str
    position_id: str
    position_title_snapshot: str
    appointment_type: AppointmentType
    start_date: datetime
    end_date: datetime | None
    is_current: bool
    dismissal_reason: str | None
    appointment_order_reference: str | None
    dismissal_order_reference: str | None


class EmployeeRead(BaseModel):
    user_id: str
    username: str
    full_name: str
    position_id: str
    position_title: str
    organization_unit_id: str
    organization_unit_name: str
    is_active: bool


class EmployeePage(BaseModel):
    items: list[EmployeeRead]
    total: int
    page: int
    limit: int


class PositionPermissionsRead(BaseModel):
    can_manage_subordinates: bool
    can_assign_tasks: bool
    can_issue_disciplinary_actions: bool
    can_create_channels: bool
    can_initiate_group_calls: bool


class UserHierarchyInfoRead(BaseModel):
    user_id: str
    role: SystemRole
    role_permissions: RolePermissions
    current_appointment: AppointmentRead | None = None
    current_position: PositionRead | None = None
    current_unit: OrgUnitRead | None = None
    organization_path: list[OrgUnitRead] = PydanticField(default_factory=list)
    direct_supervisor: EmployeeRead | None = None
    direct_subordinates: list[EmployeeRead] = PydanticField(default_factory=list)
    permissions: PositionPermissionsRead | None = None


class ChannelRead(ORMReadModel):
    id: str
    name: str
    description: str | None
    channel_type: str
    owner_id: str | None
    organization_unit_id: str | None
    auto_created: bool
    is_verified: bool
    is_pinned: bool
    tags: list[str]
    allowed_roles: list[str]
    subscriber_count: int
    status: ChannelStatus
    last_sync_error: str | None
    last_synced_at: datetime | None


class ChannelSubscriptionRead(ORMReadModel):
    channel_id: str
    user_id: str
    role: ChannelRole
    notifications: bool


class ChannelCreationResult(BaseModel):
    channel_id: str | None = None
    subscribers_added: int = 0
    created: bool = False
    success: bool
    error: str | None = None


class ChannelMembershipResult(BaseModel):
    channel_id: str
    organization_unit_id: str
    users_added: int = 0
    users_updated: int = 0
    users_removed: int = 0
    users_skipped: int = 0
    subscriber_count: int = 0
    success: bool
    errors: list[str] = PydanticField(default_factory=list)


class ChannelSyncReport(BaseModel):
    user_id: str
    old_unit_id: str | None
    new_unit_id: str | None
    channels_added: list[str] = PydanticField(default_factory=list)
    channels_removed: list[str] = PydanticField(default_factory=list)
    channels_failed: list[str] = PydanticField(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.channels_failed


class RoleRead(BaseModel):
    role: SystemRole
    permissions: RolePermissions
    permission_names: list[str]


class RoleReassignRead(BaseModel):
    updated: int
    unchanged: int
    errors: int
