from __future__ import annotations

from sqlalchemy import func
from sqlmodel import Session, col, select

from app.domain.models import OrganizationUnit, Position, PositionCreate, PositionUpdate, now_utc
from app.infra.db import get_engine
from app.services.errors import ConflictError, NotFoundError


class PositionService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_active_unit(self, session: Session, unit_id: str) -> OrganizationUnit:
        unit = session.get(OrganizationUnit, unit_id)
        if unit is None or not unit.is_active:
            raise NotFoundError("org unit not found")
        return unit

    def _ensure_code_free(self, session: Session, code: str | None, position_id: str | None = None) -> None:
        if code is None:
            return
        existing = session.exec(select(Position).where(Position.code == code)).first()
        if existing is not None and existing.id != position_id:
            raise ConflictError("position code already exists")

    def _creates_cycle(self, session: Session, position_id: str, reports_to_id: str) -> bool:
        """Walk the reports-to chain upward from ``reports_to_id``."""
        links = dict(session.exec(select(Position.id, Position.reports_to_position_id)).all())
        visited: set[str] = set()
        current: str | None = reports_to_id
        while current is not None and current not in visited:
            if current == position_id:
                return True
            visited.add(current)
            current = links.get(current)
        return False

    def create_position(self, payload: PositionCreate) -> Position:
        with self._session() as session:
            self._get_active_unit(session, payload.organization_unit_id)
            if payload.reports_to_position_id is not None:
                if session.get(Position, payload.reports_to_position_id) is None:
                    raise NotFoundError("reports-to position not found")
            self._ensure_code_free(session, payload.code)
            position = Position(**payload.model_dump())
            session.add(position)
            session.commit()
            session.refresh(position)
            return position

    def get_position(self, position_id: str) -> Position:
        with self._session() as session:
            position = session.get(Position, position_id)
            if position is None:
                raise NotFoundError("position not found")
            return position

    def list_positions(
        self,
        *,
        organization_unit_id: str | None = None,
        is_managerial: bool | None = None,
        include_inactive: bool = False,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[Position], int]:
        with self._session() as session:
            statement = select(Position)
            if organization_unit_id is not None:
                statement = statement.where(Position.organization_unit_id == organization_unit_id)
            if is_managerial is not None:
                statement = statement.where(Position.is_managerial == is_managerial)
            if not include_inactive:
                statement = statement.where(col(Position.is_active).is_(True))
            total = session.exec(select(func.count()).select_from(statement.subquery())).one()
            items = session.exec(
                statement.order_by(col(Position.title), col(Position.id)).offset((page - 1) * limit).limit(limit)
            ).all()
            return list(items), int(total)

    def update_position(self, position_id: str, payload: PositionUpdate) -> Position:
        updates = payload.model_dump(exclude_unset=True)
        with self._session() as session:
            position = session.get(Position, position_id)
            if position is None:
                raise NotFoundError("position not found")
            reports_to_id = updates.get("reports_to_position_id")
            if reports_to_id is not None:
                if session.get(Position, reports_to_id) is None:
                    raise NotFoundError("reports-to position not found")
                if self._creates_cycle(session, position.id, reports_to_id):
                    raise ConflictError("reporting link would create a cycle")
            if "code" in updates:
                self._ensure_code_free(session, updates["code"], position.id)
            for key, value in updates.items():
                if value is None and key not in {"code", "reports_to_position_id"}:
                    continue
                setattr(position, key, value)
            position.updated_at = now_utc()
            session.add(position)
            session.commit()
            session.refresh(position)
            return position
