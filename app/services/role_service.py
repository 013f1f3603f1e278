from __future__ import annotations

import logging

from sqlmodel import Session, col, select

from app.domain.models import Appointment, OrganizationUnit, RoleRead, User, now_utc
from app.domain.permissions import permission_names_for
from app.domain.roles import AppointmentSnapshot, RolePermissions, SystemRole, get_role_permissions, resolve
from app.infra import events
from app.infra.db import get_engine
from app.infra.events import event_bus
from app.infra.user_directory import UserDirectory
from app.services.errors import NotFoundError

logger = logging.getLogger(__name__)

HIERARCHICAL_ACTIONS = frozenset(
    {
        "can_manage_subordinates",
        "can_assign_tasks",
        "can_issue_disciplinary_actions",
        "can_give_commendations",
    }
)
ORGANIZATIONAL_ACTIONS = frozenset(
    {
        "can_create_channels",
        "can_manage_groups",
        "can_moderate_communication",
    }
)


class RoleService:
    """Owns the cached ``users.role`` projection.

    ``apply_role`` is the only code path that writes the column; every caller
    passes the snapshot of the appointment the role depends on.
    """

    def __init__(self, user_directory: UserDirectory | None = None) -> None:
        self._users = user_directory or UserDirectory()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def current_snapshot(self, session: Session, user_id: str) -> AppointmentSnapshot | None:
        row = session.exec(
            select(Appointment, OrganizationUnit)
            .join(OrganizationUnit, col(OrganizationUnit.id) == col(Appointment.organization_unit_id))
            .where(Appointment.user_id == user_id)
            .where(col(Appointment.is_current).is_(True))
        ).first()
        if row is None:
            return None
        appointment, unit = row
        return AppointmentSnapshot(
            position_title=appointment.position_title_snapshot,
            unit_type=str(unit.unit_type),
            unit_level=unit.hierarchy_level,
            organization_unit_id=unit.id,
        )

    def apply_role(
        self,
        session: Session,
        user: User,
        snapshot: AppointmentSnapshot | None,
    ) -> tuple[SystemRole, RolePermissions]:
        role, permissions = resolve(snapshot)
        previous = user.role
        if previous != role:
            user.role = role
            user.role_updated_at = now_utc()
            user.updated_at = user.role_updated_at
            session.add(user)
            event_bus.publish_dict(
                events.ROLE_CHANGED,
                {
                    "user_id": user.id,
                    "previous_role": str(previous),
                    "role": str(role),
                    "position_title": snapshot.position_title if snapshot is not None else None,
                },
                session=session,
            )
            logger.info(
                "role changed for user %s: %s -> %s",
                user.id,
                previous,
                role,
            )
        return role, permissions

    def recompute_user_role(self, user_id: str) -> SystemRole:
        with self._session() as session:
            user = self._users.get_user(session, user_id)
            if user is None:
                raise NotFoundError("user not found")
            role, _ = self.apply_role(session, user, self.current_snapshot(session, user_id))
            session.commit()
            return role

    def reassign_all_roles(self) -> dict[str, int]:
        updated = 0
        unchanged = 0
        errors = 0
        with self._session() as session:
            user_ids = self._users.list_user_ids(session)
        for user_id in user_ids:
            try:
                with self._session() as session:
                    user = self._users.get_user(session, user_id)
                    if user is None:
                        continue
                    previous = user.role
                    role, _ = self.apply_role(session, user, self.current_snapshot(session, user_id))
                    session.commit()
            except Exception:
                logger.exception("role recomputation failed for user %s", user_id)
                errors += 1
                continue
            if role != previous:
                updated += 1
            else:
                unchanged += 1
        logger.info("role reassignment completed: updated=%s unchanged=%s errors=%s", updated, unchanged, errors)
        return {"updated": updated, "unchanged": unchanged, "errors": errors}

    def get_role_permissions(self, role: SystemRole | str) -> RolePermissions:
        return get_role_permissions(role)

    def describe_role(self, role: SystemRole | str) -> RoleRead:
        permissions = get_role_permissions(role)
        return RoleRead(
            role=SystemRole(role),
            permissions=permissions,
            permission_names=permission_names_for(permissions),
        )

    def permission_names(self, role: SystemRole | str) -> list[str]:
        return permission_names_for(get_role_permissions(role))

    def list_roles(self) -> list[RoleRead]:
        return [self.describe_role(role) for role in SystemRole]

    def user_permissions(self, user_id: str) -> tuple[SystemRole, RolePermissions]:
        with self._session() as session:
            user = self._users.get_user(session, user_id)
            if user is None:
                raise NotFoundError("user not found")
            snapshot = self.current_snapshot(session, user_id)
        derived, _ = resolve(snapshot)
        role = SystemRole(user.role)
        if derived != role:
            # reassign_all_roles repairs a drifted projection
            logger.warning("cached role %s differs from derived role %s for user %s", role, derived, user_id)
        permissions = get_role_permissions(role)
        if snapshot is not None and not permissions.has_wildcard_scope:
            permissions = permissions.model_copy(update={"organization_scope": (snapshot.organization_unit_id,)})
        return role, permissions

    def can_manage_user(self, manager_id: str, target_user_id: str) -> bool:
        manager_role, _ = self.user_permissions(manager_id)
        target_role, _ = self.user_permissions(target_user_id)
        return get_role_permissions(manager_role).hierarchy_level < get_role_permissions(target_role).hierarchy_level

    def can_access_unit(self, user_id: str, organization_unit_id: str) -> bool:
        _, permissions = self.user_permissions(user_id)
        if permissions.has_wildcard_scope:
            return True
        if not permissions.organization_scope:
            return False
        with self._session() as session:
            target = session.get(OrganizationUnit, organization_unit_id)
            if target is None:
                raise NotFoundError("org unit not found")
            scoped_units = session.exec(
                select(OrganizationUnit).where(col(OrganizationUnit.id).in_(list(permissions.organization_scope)))
            ).all()
        return any(target.path == unit.path or target.path.startswith(f"{unit.path}.") for unit in scoped_units)

    def can_perform(
        self,
        user_id: str,
        action: str,
        *,
        target_user_id: str | None = None,
        target_unit_id: str | None = None,
    ) -> bool:
        _, permissions = self.user_permissions(user_id)
        if not bool(getattr(permissions, action, False)):
            return False
        if target_user_id is not None and action in HIERARCHICAL_ACTIONS:
            return self.can_manage_user(user_id, target_user_id)
        if target_unit_id is not None and action in ORGANIZATIONAL_ACTIONS:
            return self.can_access_unit(user_id, target_unit_id)
        return True
