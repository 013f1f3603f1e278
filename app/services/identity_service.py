from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.models import (
    Appointment,
    AppointmentCreate,
    BootstrapAdminRequest,
    OrgUnitCreate,
    OrganizationUnit,
    OrgUnitType,
    Position,
    PositionCreate,
    User,
    UserCreate,
    UserStatus,
    UserUpdate,
    now_utc,
)
from app.domain.roles import SystemRole
from app.infra.db import get_engine
from app.services.appointment_service import AppointmentService
from app.services.channel_sync_service import ChannelSyncService
from app.services.errors import ConflictError, NotFoundError
from app.services.org_tree_service import OrgTreeService
from app.services.position_service import PositionService

logger = logging.getLogger(__name__)


class IdentityService:
    def __init__(
        self,
        org_tree: OrgTreeService | None = None,
        positions: PositionService | None = None,
        appointments: AppointmentService | None = None,
        channel_sync: ChannelSyncService | None = None,
    ) -> None:
        self._org_tree = org_tree or OrgTreeService()
        self._positions = positions or PositionService()
        self._appointments = appointments or AppointmentService()
        self._channels = channel_sync or ChannelSyncService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _insert_user(self, username: str, full_name: str, **extra: object) -> User:
        with self._session() as session:
            user = User(username=username, full_name=full_name, **extra)
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("username already exists") from exc
            session.refresh(user)
            return user

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        """Create the first user as system administrator.

        The role is not written here: the user is appointed to an
        administrator position so the resolver derives it like any other.
        Each step reuses what an interrupted earlier attempt left behind,
        so a failed bootstrap can simply be retried.
        """
        with self._session() as session:
            admins = session.exec(
                select(func.count()).select_from(User).where(User.role == SystemRole.SUPER_ADMIN)
            ).one()
            if admins:
                raise ConflictError("identity store already initialized")
            admin = session.exec(select(User).where(User.username == payload.username)).first()
            if admin is not None and self._has_current_appointment(session, admin.id):
                raise ConflictError("username already exists")

        if admin is None:
            admin = self._insert_user(payload.username, payload.full_name)
        unit = self._bootstrap_unit(payload.organization_name)
        position = self._bootstrap_position(unit.id, payload.position_title)
        self._appointments.assign_appointment(
            AppointmentCreate(user_id=admin.id, organization_unit_id=unit.id, position_id=position.id)
        )
        logger.info("bootstrap administrator %s created in unit %s", admin.id, unit.id)
        return self.get_user(admin.id)

    def _has_current_appointment(self, session: Session, user_id: str) -> bool:
        current = session.exec(
            select(Appointment.id)
            .where(Appointment.user_id == user_id)
            .where(col(Appointment.is_current).is_(True))
        ).first()
        return current is not None

    def _bootstrap_unit(self, name: str) -> OrganizationUnit:
        for unit in self._org_tree.list_units(unit_type=OrgUnitType.ADMINISTRATION, roots_only=True):
            if unit.name == name:
                return unit
        return self._org_tree.create_unit(
            OrgUnitCreate(name=name, unit_type=OrgUnitType.ADMINISTRATION, hierarchy_level=1)
        )

    def _bootstrap_position(self, unit_id: str, title: str) -> Position:
        existing, _ = self._positions.list_positions(organization_unit_id=unit_id)
        for position in existing:
            if position.title == title:
                return position
        return self._positions.create_position(
            PositionCreate(
                organization_unit_id=unit_id,
                title=title,
                is_managerial=True,
                can_manage_subordinates=True,
                can_assign_tasks=True,
            )
        )

    def create_user(self, payload: UserCreate) -> User:
        return self._insert_user(payload.username, payload.full_name, status=payload.status)

    def list_users(self) -> list[User]:
        with self._session() as session:
            return list(session.exec(select(User).order_by(col(User.username))).all())

    def get_user(self, user_id: str) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    def update_user(self, user_id: str, payload: UserUpdate) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            was_active = user.status == UserStatus.ACTIVE
            if payload.full_name is not None:
                user.full_name = payload.full_name
            if payload.status is not None:
                user.status = payload.status
            user.updated_at = now_utc()
            session.add(user)
            current_unit_id = session.exec(
                select(Appointment.organization_unit_id)
                .where(Appointment.user_id == user_id)
                .where(col(Appointment.is_current).is_(True))
            ).first()
            session.commit()
            session.refresh(user)

        is_active = user.status == UserStatus.ACTIVE
        if current_unit_id is not None and was_active != is_active:
            # The appointment stays on record; only channel membership follows the status.
            if is_active:
                self._sync_channels(user_id, None, current_unit_id)
            else:
                self._sync_channels(user_id, current_unit_id, None)
        return user

    def _sync_channels(self, user_id: str, old_unit_id: str | None, new_unit_id: str | None) -> None:
        try:
            self._channels.sync_on_appointment_change(user_id, old_unit_id, new_unit_id)
        except Exception:
            logger.exception(
                "channel sync after status change failed user=%s old_unit=%s new_unit=%s",
                user_id,
                old_unit_id,
                new_unit_id,
            )
