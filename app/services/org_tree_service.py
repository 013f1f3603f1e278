from __future__ import annotations

import logging
import os

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.models import (
    Appointment,
    OrganizationUnit,
    OrgTreeNode,
    OrgUnitCreate,
    OrgUnitType,
    OrgUnitUpdate,
    now_utc,
)
from app.domain.paths import (
    ancestor_paths,
    child_path,
    is_within,
    last_ordinal,
    path_depth,
    rebase_path,
    subtree_clause,
)
from app.infra import events
from app.infra.context import get_user_id
from app.infra.db import get_engine, supports_row_locks
from app.infra.events import event_bus
from app.services.channel_sync_service import ChannelSyncService
from app.services.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

UNIT_PATH_MAX_RETRIES = int(os.getenv("UNIT_PATH_MAX_RETRIES", "3"))

# Inclusive hierarchy_level bounds per unit type.
LEVEL_RANGES: dict[OrgUnitType, tuple[int, int]] = {
    OrgUnitType.TOP_LEVEL_GOVERNMENT: (0, 1),
    OrgUnitType.MINISTRY: (1, 4),
    OrgUnitType.COMMITTEE: (1, 6),
    OrgUnitType.AGENCY: (1, 6),
    OrgUnitType.ADMINISTRATION: (1, 8),
    OrgUnitType.DEPARTMENT: (2, 8),
    OrgUnitType.DIVISION: (3, 10),
}
REQUIRED_FIELDS = frozenset({"name", "unit_type", "hierarchy_level", "order_index"})


def validate_level(unit_type: OrgUnitType, level: int, parent: OrganizationUnit | None) -> None:
    low, high = LEVEL_RANGES[OrgUnitType(unit_type)]
    if not low <= level <= high:
        raise ValidationError(f"hierarchy_level {level} is outside {low}..{high} for {unit_type}")
    if parent is not None and level <= parent.hierarchy_level:
        raise ValidationError("child hierarchy_level must be greater than the parent's")


class OrgTreeService:
    def __init__(self, channel_sync: ChannelSyncService | None = None) -> None:
        self._channels = channel_sync or ChannelSyncService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_active(self, session: Session, unit_id: str, *, lock: bool = False) -> OrganizationUnit:
        statement = select(OrganizationUnit).where(OrganizationUnit.id == unit_id)
        if lock and supports_row_locks(session):
            statement = statement.with_for_update()
        unit = session.exec(statement).first()
        if unit is None or not unit.is_active:
            raise NotFoundError("org unit not found")
        return unit

    def _next_ordinal(self, session: Session, parent_id: str | None) -> int:
        statement = select(OrganizationUnit.path)
        if parent_id is None:
            statement = statement.where(col(OrganizationUnit.parent_id).is_(None))
        else:
            statement = statement.where(OrganizationUnit.parent_id == parent_id)
        return max((last_ordinal(path) for path in session.exec(statement).all()), default=0) + 1

    def _ensure_code_free(self, session: Session, code: str | None, unit_id: str | None = None) -> None:
        if code is None:
            return
        existing = session.exec(select(OrganizationUnit).where(OrganizationUnit.code == code)).first()
        if existing is not None and existing.id != unit_id:
            raise ConflictError("org unit code already exists")

    def create_unit(self, payload: OrgUnitCreate) -> OrganizationUnit:
        unit: OrganizationUnit | None = None
        for attempt in range(1, UNIT_PATH_MAX_RETRIES + 1):
            try:
                unit = self._create_once(payload)
                break
            except IntegrityError:
                logger.warning(
                    "org unit path collision under parent %s (attempt %s/%s)",
                    payload.parent_id,
                    attempt,
                    UNIT_PATH_MAX_RETRIES,
                )
        if unit is None:
            raise ConflictError("org unit path conflict, retry later")

        try:
            result = self._channels.create_organization_channel(unit.id, get_user_id())
            if not result.success:
                logger.warning("organization channel for unit %s incomplete: %s", unit.id, result.error)
        except Exception:
            logger.exception("organization channel creation failed for unit %s", unit.id)
        return unit

    def _create_once(self, payload: OrgUnitCreate) -> OrganizationUnit:
        with self._session() as session:
            parent = None
            if payload.parent_id is not None:
                parent = self._get_active(session, payload.parent_id, lock=True)
            validate_level(payload.unit_type, payload.hierarchy_level, parent)
            self._ensure_code_free(session, payload.code)

            ordinal = self._next_ordinal(session, payload.parent_id)
            unit = OrganizationUnit(
                name=payload.name,
                short_name=payload.short_name,
                code=payload.code,
                unit_type=payload.unit_type,
                hierarchy_level=payload.hierarchy_level,
                parent_id=payload.parent_id,
                path=child_path(parent.path if parent is not None else None, ordinal),
                order_index=payload.order_index if payload.order_index is not None else ordinal,
                description=payload.description,
            )
            session.add(unit)
            session.flush()
            event_bus.publish_dict(
                events.UNIT_CREATED,
                {
                    "unit_id": unit.id,
                    "parent_id": unit.parent_id,
                    "path": unit.path,
                    "unit_type": str(unit.unit_type),
                    "hierarchy_level": unit.hierarchy_level,
                },
                session=session,
            )
            session.commit()
            session.refresh(unit)
            logger.info("org unit created id=%s path=%s", unit.id, unit.path)
            return unit

    def get_unit(self, unit_id: str) -> OrganizationUnit:
        with self._session() as session:
            return self._get_active(session, unit_id)

    def list_units(
        self,
        *,
        unit_type: OrgUnitType | None = None,
        hierarchy_level: int | None = None,
        parent_id: str | None = None,
        roots_only: bool = False,
    ) -> list[OrganizationUnit]:
        with self._session() as session:
            statement = select(OrganizationUnit).where(col(OrganizationUnit.is_active).is_(True))
            if unit_type is not None:
                statement = statement.where(OrganizationUnit.unit_type == unit_type)
            if hierarchy_level is not None:
                statement = statement.where(OrganizationUnit.hierarchy_level == hierarchy_level)
            if parent_id is not None:
                statement = statement.where(OrganizationUnit.parent_id == parent_id)
            if roots_only:
                statement = statement.where(col(OrganizationUnit.parent_id).is_(None))
            statement = statement.order_by(col(OrganizationUnit.order_index), col(OrganizationUnit.name))
            return list(session.exec(statement).all())

    def update_unit(self, unit_id: str, payload: OrgUnitUpdate) -> OrganizationUnit:
        updates = payload.model_dump(exclude_unset=True)
        with self._session() as session:
            unit = self._get_active(session, unit_id)
            reparent = "parent_id" in updates and updates["parent_id"] != unit.parent_id
            parent_id = updates.pop("parent_id", unit.parent_id)
            parent = None
            if parent_id is not None:
                parent = self._get_active(session, parent_id, lock=reparent)
            if reparent and parent is not None and is_within(parent.path, unit.path):
                raise ConflictError("cannot move an org unit under itself or its descendant")

            unit_type = updates.get("unit_type") or unit.unit_type
            level = updates.get("hierarchy_level")
            if level is None:
                level = unit.hierarchy_level
            validate_level(unit_type, level, parent)
            children = session.exec(
                select(OrganizationUnit)
                .where(OrganizationUnit.parent_id == unit.id)
                .where(col(OrganizationUnit.is_active).is_(True))
            ).all()
            if any(child.hierarchy_level <= level for child in children):
                raise ValidationError("hierarchy_level must stay above every child's level")
            if "code" in updates:
                self._ensure_code_free(session, updates["code"], unit.id)

            for key, value in updates.items():
                if value is None and key in REQUIRED_FIELDS:
                    continue
                setattr(unit, key, value)
            unit.updated_at = now_utc()

            old_path = unit.path
            if reparent:
                new_path = child_path(
                    parent.path if parent is not None else None,
                    self._next_ordinal(session, parent_id),
                )
                subtree = session.exec(select(OrganizationUnit).where(subtree_clause(old_path))).all()
                for item in subtree:
                    item.path = rebase_path(item.path, old_path, new_path)
                    item.updated_at = unit.updated_at
                    session.add(item)
                unit.parent_id = parent_id
                logger.info("org unit %s moved %s -> %s (%s units)", unit.id, old_path, new_path, len(subtree))

            session.add(unit)
            event_bus.publish_dict(
                events.UNIT_UPDATED,
                {
                    "unit_id": unit.id,
                    "fields": sorted([*updates.keys(), *(["parent_id"] if reparent else [])]),
                    "old_path": old_path,
                    "path": unit.path,
                },
                session=session,
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("org unit update conflict") from exc
            session.refresh(unit)
            return unit

    def get_unit_path(self, unit_id: str) -> list[OrganizationUnit]:
        with self._session() as session:
            unit = self._get_active(session, unit_id)
            chain = session.exec(
                select(OrganizationUnit).where(col(OrganizationUnit.path).in_(ancestor_paths(unit.path)))
            ).all()
            return sorted(chain, key=lambda item: path_depth(item.path))

    def get_subtree(self, root_id: str | None = None, max_depth: int | None = None) -> list[OrgTreeNode]:
        with self._session() as session:
            statement = select(OrganizationUnit).where(col(OrganizationUnit.is_active).is_(True))
            base_depth = 0
            if root_id is not None:
                root = self._get_active(session, root_id)
                statement = statement.where(subtree_clause(root.path))
                base_depth = path_depth(root.path)
            units = session.exec(statement.order_by(col(OrganizationUnit.path))).all()
            if max_depth is not None:
                units = [unit for unit in units if path_depth(unit.path) - base_depth <= max_depth]
            counts = self._employee_counts(session, [unit.id for unit in units])

        arena: dict[str, OrgTreeNode] = {}
        roots: list[OrgTreeNode] = []
        for unit in units:
            node = OrgTreeNode(
                id=unit.id,
                name=unit.name,
                unit_type=unit.unit_type,
                hierarchy_level=unit.hierarchy_level,
                parent_id=unit.parent_id,
                path=unit.path,
                order_index=unit.order_index,
                depth=path_depth(unit.path) - base_depth,
                employee_count=counts.get(unit.id, 0),
            )
            arena[unit.id] = node
            parent = arena.get(unit.parent_id) if unit.parent_id is not None else None
            if parent is None or unit.id == root_id:
                roots.append(node)
            else:
                parent.children.append(node)

        for node in arena.values():
            node.children.sort(key=lambda child: (child.order_index, child.name))
        roots.sort(key=lambda node: (node.order_index, node.name))
        return roots

    def _employee_counts(self, session: Session, unit_ids: list[str]) -> dict[str, int]:
        if not unit_ids:
            return {}
        rows = session.exec(
            select(Appointment.organization_unit_id, func.count())
            .where(col(Appointment.is_current).is_(True))
            .where(col(Appointment.organization_unit_id).in_(unit_ids))
            .group_by(col(Appointment.organization_unit_id))
        ).all()
        return {unit_id: int(count) for unit_id, count in rows}

    def delete_unit(self, unit_id: str, force: bool = False) -> list[str]:
        with self._session() as session:
            unit = self._get_active(session, unit_id, lock=True)
            descendants = session.exec(
                select(OrganizationUnit)
                .where(subtree_clause(unit.path))
                .where(OrganizationUnit.id != unit.id)
                .where(col(OrganizationUnit.is_active).is_(True))
            ).all()
            if descendants and not force:
                raise ConflictError("org unit has active children")

            deleted: list[str] = []
            ts = now_utc()
            for item in sorted(descendants, key=lambda value: path_depth(value.path), reverse=True):
                item.is_active = False
                item.updated_at = ts
                session.add(item)
                deleted.append(item.id)
            unit.is_active = False
            unit.updated_at = ts
            session.add(unit)
            deleted.append(unit.id)
            event_bus.publish_dict(
                events.UNIT_DELETED,
                {"unit_id": unit.id, "path": unit.path, "deleted_ids": deleted, "force": force},
                session=session,
            )
            session.commit()
            logger.info("org unit %s deactivated with %s descendants", unit.id, len(deleted) - 1)
            return deleted
