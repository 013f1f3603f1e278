from __future__ import annotations

import logging
import os

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.models import (
    Appointment,
    AppointmentCreate,
    AppointmentDismissRequest,
    OrganizationUnit,
    Position,
    now_utc,
)
from app.domain.roles import AppointmentSnapshot
from app.infra import events
from app.infra.db import get_engine, supports_row_locks
from app.infra.events import event_bus
from app.infra.user_directory import UserDirectory
from app.services.channel_sync_service import ChannelSyncService
from app.services.errors import ConflictError, NotFoundError, ValidationError
from app.services.role_service import RoleService

logger = logging.getLogger(__name__)

APPOINTMENT_MAX_RETRIES = int(os.getenv("APPOINTMENT_MAX_RETRIES", "3"))


class AppointmentService:
    """Append-only appointment ledger.

    A user holds at most one current appointment. Assignment closes the
    previous one, opens the new one and rewrites the cached role inside a
    single transaction; channel membership follows after commit.
    """

    def __init__(
        self,
        role_service: RoleService | None = None,
        channel_sync: ChannelSyncService | None = None,
        user_directory: UserDirectory | None = None,
    ) -> None:
        self._users = user_directory or UserDirectory()
        self._roles = role_service or RoleService(self._users)
        self._channels = channel_sync or ChannelSyncService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def assign_appointment(self, payload: AppointmentCreate) -> Appointment:
        result: tuple[Appointment, str | None] | None = None
        for attempt in range(1, APPOINTMENT_MAX_RETRIES + 1):
            try:
                result = self._assign_once(payload)
                break
            except IntegrityError:
                logger.warning(
                    "concurrent appointment for user %s (attempt %s/%s)",
                    payload.user_id,
                    attempt,
                    APPOINTMENT_MAX_RETRIES,
                )
        if result is None:
            raise ConflictError("concurrent appointment change for user, retry later")

        appointment, old_unit_id = result
        self._sync_channels(payload.user_id, old_unit_id, appointment.organization_unit_id)
        return appointment

    def _assign_once(self, payload: AppointmentCreate) -> tuple[Appointment, str | None]:
        with self._session() as session:
            user = self._users.get_user_for_update(session, payload.user_id, lock=supports_row_locks(session))
            if user is None:
                raise NotFoundError("user not found")
            if not self._users.is_active(user):
                raise ValidationError("user is not active")
            unit = session.get(OrganizationUnit, payload.organization_unit_id)
            if unit is None or not unit.is_active:
                raise NotFoundError("org unit not found")
            position = session.get(Position, payload.position_id)
            if position is None or not position.is_active:
                raise NotFoundError("position not found")
            if position.organization_unit_id != unit.id:
                raise ValidationError("position does not belong to org unit")

            ts = now_utc()
            old_unit_id: str | None = None
            current = session.exec(
                select(Appointment)
                .where(Appointment.user_id == user.id)
                .where(col(Appointment.is_current).is_(True))
            ).first()
            if current is not None:
                old_unit_id = current.organization_unit_id
                current.is_current = False
                current.end_date = ts
                current.updated_at = ts
                session.add(current)
                session.flush()

            appointment = Appointment(
                user_id=user.id,
                organization_unit_id=unit.id,
                position_id=position.id,
                position_title_snapshot=position.title,
                appointment_type=payload.appointment_type,
                start_date=payload.start_date or ts,
                appointment_order_reference=payload.appointment_order_reference,
            )
            session.add(appointment)
            session.flush()

            role, _ = self._roles.apply_role(
                session,
                user,
                AppointmentSnapshot(
                    position_title=position.title,
                    unit_type=str(unit.unit_type),
                    unit_level=unit.hierarchy_level,
                    organization_unit_id=unit.id,
                ),
            )
            event_bus.publish_dict(
                events.APPOINTMENT_CREATED,
                {
                    "appointment_id": appointment.id,
                    "user_id": user.id,
                    "organization_unit_id": unit.id,
                    "position_id": position.id,
                    "previous_unit_id": old_unit_id,
                    "role": str(role),
                },
                session=session,
            )
            session.commit()
            session.refresh(appointment)
            logger.info(
                "user %s appointed to position %s in unit %s (previous unit %s)",
                user.id,
                position.id,
                unit.id,
                old_unit_id,
            )
            return appointment, old_unit_id

    def dismiss(self, appointment_id: str, payload: AppointmentDismissRequest) -> Appointment:
        with self._session() as session:
            appointment = session.get(Appointment, appointment_id)
            if appointment is None:
                raise NotFoundError("appointment not found")
            user = self._users.get_user_for_update(session, appointment.user_id, lock=supports_row_locks(session))
            session.refresh(appointment)
            if not appointment.is_current:
                raise ConflictError("appointment is already closed")

            ts = now_utc()
            appointment.is_current = False
            appointment.end_date = payload.dismissal_date or ts
            appointment.dismissal_reason = payload.dismissal_reason
            appointment.dismissal_order_reference = payload.dismissal_order_reference
            appointment.updated_at = ts
            session.add(appointment)
            session.flush()

            if user is not None:
                self._roles.apply_role(session, user, self._roles.current_snapshot(session, user.id))
            event_bus.publish_dict(
                events.APPOINTMENT_DISMISSED,
                {
                    "appointment_id": appointment.id,
                    "user_id": appointment.user_id,
                    "organization_unit_id": appointment.organization_unit_id,
                    "dismissal_reason": appointment.dismissal_reason,
                },
                session=session,
            )
            session.commit()
            session.refresh(appointment)

        self._sync_channels(appointment.user_id, appointment.organization_unit_id, None)
        return appointment

    def get_appointment_history(self, user_id: str, current_only: bool = False) -> list[Appointment]:
        with self._session() as session:
            if self._users.get_user(session, user_id) is None:
                raise NotFoundError("user not found")
            statement = select(Appointment).where(Appointment.user_id == user_id)
            if current_only:
                statement = statement.where(col(Appointment.is_current).is_(True))
            statement = statement.order_by(col(Appointment.is_current).desc(), col(Appointment.start_date).desc())
            return list(session.exec(statement).all())

    def _sync_channels(self, user_id: str, old_unit_id: str | None, new_unit_id: str | None) -> None:
        try:
            report = self._channels.sync_on_appointment_change(user_id, old_unit_id, new_unit_id)
        except Exception:
            logger.exception(
                "channel sync failed user=%s old_unit=%s new_unit=%s",
                user_id,
                old_unit_id,
                new_unit_id,
            )
            return
        if not report.success:
            logger.warning("channel sync left %s channels behind for user %s", len(report.channels_failed), user_id)
