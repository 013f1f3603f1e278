from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine

from app.domain.models import (
    AppointmentCreate,
    OrgUnitCreate,
    OrgUnitType,
    Position,
    PositionCreate,
    PositionUpdate,
    User,
)
from app.domain.roles import SystemRole
from app.infra import db
from app.services.appointment_service import AppointmentService
from app.services.errors import ConflictError, NotFoundError
from app.services.hierarchy_query_service import HierarchyQueryService
from app.services.org_tree_service import OrgTreeService
from app.services.position_service import PositionService


@pytest.fixture()
def staffed_tree(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[dict[str, Any], None, None]:
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'hierarchy_queries_test.db'}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)

    tree = OrgTreeService()
    positions = PositionService()
    appointments = AppointmentService()
    ministry = tree.create_unit(OrgUnitCreate(name="Финансов", unit_type=OrgUnitType.MINISTRY, hierarchy_level=1))
    department = tree.create_unit(
        OrgUnitCreate(name="Бюджетный", unit_type=OrgUnitType.DEPARTMENT, hierarchy_level=2, parent_id=ministry.id)
    )
    minister = positions.create_position(
        PositionCreate(
            organization_unit_id=ministry.id,
            title="Министр финансов",
            is_managerial=True,
            can_manage_subordinates=True,
        )
    )
    deputy = positions.create_position(
        PositionCreate(
            organization_unit_id=ministry.id,
            title="Заместитель министра финансов",
            is_managerial=True,
            reports_to_position_id=minister.id,
        )
    )
    director = positions.create_position(
        PositionCreate(
            organization_unit_id=department.id,
            title="Директор департамента",
            is_managerial=True,
            can_manage_subordinates=True,
            can_assign_tasks=True,
            reports_to_position_id=deputy.id,
        )
    )
    specialist = positions.create_position(
        PositionCreate(
            organization_unit_id=department.id,
            title="Специалист",
            reports_to_position_id=director.id,
        )
    )

    people: dict[str, User] = {}
    with Session(test_engine, expire_on_commit=False) as session:
        for username, full_name in (
            ("minister", "Алексеев Алексей"),
            ("deputy", "Борисов Борис"),
            ("director", "Васильев Василий"),
            ("specialist", "Григорьев Григорий"),
            ("newcomer", "Дмитриев Дмитрий"),
        ):
            people[username] = User(username=username, full_name=full_name)
            session.add(people[username])
        session.commit()

    for username, unit, position in (
        ("minister", ministry, minister),
        ("deputy", ministry, deputy),
        ("director", department, director),
        ("specialist", department, specialist),
    ):
        appointments.assign_appointment(
            AppointmentCreate(user_id=people[username].id, organization_unit_id=unit.id, position_id=position.id)
        )

    yield {
        "ministry": ministry,
        "department": department,
        "positions": {"minister": minister, "deputy": deputy, "director": director, "specialist": specialist},
        "people": people,
    }
    test_engine.dispose()


def test_direct_supervisor_follows_reporting_link(staffed_tree: dict[str, Any]) -> None:
    service = HierarchyQueryService()
    people = staffed_tree["people"]

    supervisor = service.get_direct_supervisor(people["deputy"].id)
    assert supervisor is not None
    assert supervisor.user_id == people["minister"].id
    assert service.get_direct_supervisor(people["minister"].id) is None
    assert service.get_direct_supervisor(people["newcomer"].id) is None
    with pytest.raises(NotFoundError):
        service.get_direct_supervisor("missing-user")


def test_subordinates_direct_and_transitive(staffed_tree: dict[str, Any]) -> None:
    service = HierarchyQueryService()
    people = staffed_tree["people"]

    direct = service.get_subordinates(people["minister"].id, direct_only=True)
    assert [item.user_id for item in direct] == [people["deputy"].id]

    everyone = service.get_subordinates(people["minister"].id)
    assert {item.user_id for item in everyone} == {
        people["deputy"].id,
        people["director"].id,
        people["specialist"].id,
    }
    assert service.get_subordinates(people["newcomer"].id) == []


def test_reporting_cycle_is_rejected_on_update(staffed_tree: dict[str, Any]) -> None:
    positions = staffed_tree["positions"]
    with pytest.raises(ConflictError):
        PositionService().update_position(
            positions["minister"].id,
            PositionUpdate(reports_to_position_id=positions["specialist"].id),
        )


def test_transitive_walk_terminates_on_stored_cycle(staffed_tree: dict[str, Any]) -> None:
    positions = staffed_tree["positions"]
    people = staffed_tree["people"]
    with Session(db.get_engine()) as session:
        minister = session.get(Position, positions["minister"].id)
        assert minister is not None
        minister.reports_to_position_id = positions["specialist"].id
        session.add(minister)
        session.commit()

    everyone = HierarchyQueryService().get_subordinates(people["minister"].id)
    assert len(everyone) == 3


def test_subtree_employees_with_pagination(staffed_tree: dict[str, Any]) -> None:
    service = HierarchyQueryService()
    ministry = staffed_tree["ministry"]

    items, total = service.get_subtree_employees(ministry.id)
    assert total == 4
    assert [item.full_name for item in items] == sorted(item.full_name for item in items)

    own, own_total = service.get_subtree_employees(ministry.id, include_descendants=False)
    assert own_total == 2
    assert {item.organization_unit_id for item in own} == {ministry.id}

    page_two, paged_total = service.get_subtree_employees(ministry.id, page=2, limit=3)
    assert paged_total == 4
    assert len(page_two) == 1

    with pytest.raises(NotFoundError):
        service.get_subtree_employees("missing-unit")


def test_user_hierarchy_info(staffed_tree: dict[str, Any]) -> None:
    people = staffed_tree["people"]
    info = HierarchyQueryService().get_user_hierarchy_info(people["director"].id)

    assert info.role == SystemRole.DEPARTMENT_HEAD
    assert info.role_permissions.organization_scope == (staffed_tree["department"].id,)
    assert info.current_unit is not None
    assert info.current_unit.id == staffed_tree["department"].id
    assert [item.id for item in info.organization_path] == [
        staffed_tree["ministry"].id,
        staffed_tree["department"].id,
    ]
    assert info.direct_supervisor is not None
    assert info.direct_supervisor.user_id == people["deputy"].id
    assert [item.user_id for item in info.direct_subordinates] == [people["specialist"].id]
    assert info.permissions is not None
    assert info.permissions.can_assign_tasks is True
    assert info.permissions.can_create_channels is True


def test_user_without_appointment_gets_empty_info(staffed_tree: dict[str, Any]) -> None:
    info = HierarchyQueryService().get_user_hierarchy_info(staffed_tree["people"]["newcomer"].id)

    assert info.role == SystemRole.GUEST
    assert info.current_appointment is None
    assert info.organization_path == []
    assert info.direct_subordinates == []
