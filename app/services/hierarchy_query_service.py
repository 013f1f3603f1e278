from __future__ import annotations

from collections import defaultdict, deque
from typing import Any

from sqlalchemy import func
from sqlmodel import Session, col, select

from app.domain.models import (
    Appointment,
    AppointmentRead,
    EmployeeRead,
    OrganizationUnit,
    OrgUnitRead,
    Position,
    PositionPermissionsRead,
    PositionRead,
    User,
    UserHierarchyInfoRead,
    UserStatus,
)
from app.domain.paths import ancestor_paths, path_depth, subtree_clause
from app.infra.db import get_engine
from app.services.errors import NotFoundError
from app.services.role_service import RoleService


def _employee(appointment: Appointment, user: User, unit: OrganizationUnit) -> EmployeeRead:
    return EmployeeRead(
        user_id=user.id,
        username=user.username,
        full_name=user.full_name,
        position_id=appointment.position_id,
        position_title=appointment.position_title_snapshot,
        organization_unit_id=unit.id,
        organization_unit_name=unit.name,
        is_active=user.status == UserStatus.ACTIVE,
    )


class HierarchyQueryService:
    """Read-only queries over the unit tree and the position reporting graph."""

    def __init__(self, role_service: RoleService | None = None) -> None:
        self._roles = role_service or RoleService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _employees_query(self) -> Any:
        return (
            select(Appointment, User, OrganizationUnit)
            .join(User, col(User.id) == col(Appointment.user_id))
            .join(OrganizationUnit, col(OrganizationUnit.id) == col(Appointment.organization_unit_id))
            .where(col(Appointment.is_current).is_(True))
        )

    def _require_user(self, session: Session, user_id: str) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _current_appointment(self, session: Session, user_id: str) -> Appointment | None:
        return session.exec(
            select(Appointment)
            .where(Appointment.user_id == user_id)
            .where(col(Appointment.is_current).is_(True))
        ).first()

    def _supervisor(self, session: Session, appointment: Appointment | None) -> EmployeeRead | None:
        if appointment is None:
            return None
        position = session.get(Position, appointment.position_id)
        if position is None or position.reports_to_position_id is None:
            return None
        row = session.exec(
            self._employees_query()
            .where(Appointment.position_id == position.reports_to_position_id)
            .order_by(col(Appointment.start_date))
        ).first()
        if row is None:
            return None
        return _employee(*row)

    def _subordinate_positions(self, session: Session, position_id: str, direct_only: bool) -> list[str]:
        reports: dict[str, list[str]] = defaultdict(list)
        for child_id, parent_id in session.exec(
            select(Position.id, Position.reports_to_position_id).where(
                col(Position.reports_to_position_id).is_not(None)
            )
        ).all():
            reports[parent_id].append(child_id)
        if direct_only:
            return list(reports.get(position_id, []))

        visited = {position_id}
        found: list[str] = []
        queue = deque([position_id])
        while queue:
            for child_id in reports.get(queue.popleft(), []):
                if child_id in visited:
                    continue
                visited.add(child_id)
                found.append(child_id)
                queue.append(child_id)
        return found

    def _subordinates(self, session: Session, appointment: Appointment | None, direct_only: bool) -> list[EmployeeRead]:
        if appointment is None:
            return []
        position_ids = self._subordinate_positions(session, appointment.position_id, direct_only)
        if not position_ids:
            return []
        rows = session.exec(
            self._employees_query()
            .where(col(Appointment.position_id).in_(position_ids))
            .where(Appointment.user_id != appointment.user_id)
            .order_by(col(User.full_name))
        ).all()
        return [_employee(*row) for row in rows]

    def get_direct_supervisor(self, user_id: str) -> EmployeeRead | None:
        with self._session() as session:
            self._require_user(session, user_id)
            return self._supervisor(session, self._current_appointment(session, user_id))

    def get_subordinates(self, user_id: str, direct_only: bool = False) -> list[EmployeeRead]:
        with self._session() as session:
            self._require_user(session, user_id)
            return self._subordinates(session, self._current_appointment(session, user_id), direct_only)

    def get_subtree_employees(
        self,
        unit_id: str,
        *,
        include_descendants: bool = True,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[EmployeeRead], int]:
        with self._session() as session:
            unit = session.get(OrganizationUnit, unit_id)
            if unit is None or not unit.is_active:
                raise NotFoundError("org unit not found")
            statement = self._employees_query()
            if include_descendants:
                statement = statement.where(subtree_clause(unit.path))
            else:
                statement = statement.where(Appointment.organization_unit_id == unit.id)
            total = session.exec(select(func.count()).select_from(statement.subquery())).one()
            rows = session.exec(
                statement.order_by(col(User.full_name), col(User.id)).offset((page - 1) * limit).limit(limit)
            ).all()
            return [_employee(*row) for row in rows], int(total)

    def get_user_hierarchy_info(self, user_id: str) -> UserHierarchyInfoRead:
        role, role_permissions = self._roles.user_permissions(user_id)
        with self._session() as session:
            self._require_user(session, user_id)
            info = UserHierarchyInfoRead(user_id=user_id, role=role, role_permissions=role_permissions)
            appointment = self._current_appointment(session, user_id)
            if appointment is None:
                return info

            position = session.get(Position, appointment.position_id)
            unit = session.get(OrganizationUnit, appointment.organization_unit_id)
            info.current_appointment = AppointmentRead.model_validate(appointment)
            if position is not None:
                info.current_position = PositionRead.model_validate(position)
                info.permissions = PositionPermissionsRead(
                    can_manage_subordinates=position.can_manage_subordinates,
                    can_assign_tasks=position.can_assign_tasks,
                    can_issue_disciplinary_actions=position.can_issue_disciplinary_actions,
                    can_create_channels=position.is_managerial,
                    can_initiate_group_calls=position.is_managerial,
                )
            if unit is not None:
                info.current_unit = OrgUnitRead.model_validate(unit)
                chain = session.exec(
                    select(OrganizationUnit).where(col(OrganizationUnit.path).in_(ancestor_paths(unit.path)))
                ).all()
                info.organization_path = [
                    OrgUnitRead.model_validate(item) for item in sorted(chain, key=lambda item: path_depth(item.path))
                ]
            info.direct_supervisor = self._supervisor(session, appointment)
            info.direct_subordinates = self._subordinates(session, appointment, direct_only=True)
            return info
