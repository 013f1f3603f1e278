from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from app.domain.models import EventRecord, OrganizationUnit, OrgUnitCreate, OrgUnitType, OrgUnitUpdate
from app.domain.state_machine import ChannelStatus
from app.infra import db
from app.infra.channel_store import ChannelStore
from app.services.errors import ConflictError, NotFoundError, ValidationError
from app.services.org_tree_service import OrgTreeService


@pytest.fixture()
def tree_service(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[OrgTreeService, None, None]:
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'org_tree_test.db'}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield OrgTreeService()
    test_engine.dispose()


def _unit(
    service: OrgTreeService,
    name: str,
    unit_type: OrgUnitType,
    level: int,
    parent_id: str | None = None,
) -> OrganizationUnit:
    return service.create_unit(
        OrgUnitCreate(name=name, unit_type=unit_type, hierarchy_level=level, parent_id=parent_id)
    )


def test_paths_extend_parent_and_siblings_get_distinct_ordinals(tree_service: OrgTreeService) -> None:
    finance = _unit(tree_service, "Финансов", OrgUnitType.MINISTRY, 1)
    economy = _unit(tree_service, "Экономики", OrgUnitType.MINISTRY, 1)
    budget = _unit(tree_service, "Бюджетный", OrgUnitType.DEPARTMENT, 2, finance.id)
    taxes = _unit(tree_service, "Налоговый", OrgUnitType.DEPARTMENT, 2, finance.id)
    planning = _unit(tree_service, "Планирования", OrgUnitType.DIVISION, 3, budget.id)

    assert finance.path == "1"
    assert economy.path == "2"
    assert budget.path == "1.1"
    assert taxes.path == "1.2"
    assert planning.path == "1.1.1"
    assert planning.path.startswith(f"{budget.path}.")


def test_deleted_sibling_ordinal_is_not_reused(tree_service: OrgTreeService) -> None:
    ministry = _unit(tree_service, "Финансов", OrgUnitType.MINISTRY, 1)
    _unit(tree_service, "Первый", OrgUnitType.DEPARTMENT, 2, ministry.id)
    second = _unit(tree_service, "Второй", OrgUnitType.DEPARTMENT, 2, ministry.id)
    tree_service.delete_unit(second.id)

    third = _unit(tree_service, "Третий", OrgUnitType.DEPARTMENT, 2, ministry.id)
    assert third.path == "1.3"


def test_create_unit_validates_parent_and_levels(tree_service: OrgTreeService) -> None:
    ministry = _unit(tree_service, "Финансов", OrgUnitType.MINISTRY, 1)

    with pytest.raises(NotFoundError):
        _unit(tree_service, "Сирота", OrgUnitType.DEPARTMENT, 2, "missing-parent")
    with pytest.raises(ValidationError):
        _unit(tree_service, "Ровня", OrgUnitType.COMMITTEE, 1, ministry.id)
    with pytest.raises(ValidationError):
        _unit(tree_service, "Слишком высоко", OrgUnitType.DEPARTMENT, 1)
    with pytest.raises(ValidationError):
        _unit(tree_service, "Слишком низко", OrgUnitType.MINISTRY, 9)


def test_duplicate_code_is_conflict(tree_service: OrgTreeService) -> None:
    tree_service.create_unit(
        OrgUnitCreate(name="Финансов", unit_type=OrgUnitType.MINISTRY, hierarchy_level=1, code="MINFIN")
    )
    with pytest.raises(ConflictError):
        tree_service.create_unit(
            OrgUnitCreate(name="Другое", unit_type=OrgUnitType.MINISTRY, hierarchy_level=1, code="MINFIN")
        )


def test_subtree_of_ministry_nests_department(tree_service: OrgTreeService) -> None:
    ministry = _unit(tree_service, "Финансов", OrgUnitType.MINISTRY, 1)
    department = _unit(tree_service, "Бюджетный", OrgUnitType.DEPARTMENT, 2, ministry.id)
    division = _unit(tree_service, "Планирования", OrgUnitType.DIVISION, 3, department.id)
    _unit(tree_service, "Экономики", OrgUnitType.MINISTRY, 1)

    roots = tree_service.get_subtree(ministry.id)
    assert [node.id for node in roots] == [ministry.id]
    assert roots[0].depth == 0
    assert [child.id for child in roots[0].children] == [department.id]
    assert roots[0].children[0].depth == 1
    assert [child.id for child in roots[0].children[0].children] == [division.id]

    shallow = tree_service.get_subtree(ministry.id, max_depth=0)
    assert shallow[0].children == []

    forest = tree_service.get_subtree()
    assert len(forest) == 2


def test_unit_path_is_root_first(tree_service: OrgTreeService) -> None:
    ministry = _unit(tree_service, "Финансов", OrgUnitType.MINISTRY, 1)
    department = _unit(tree_service, "Бюджетный", OrgUnitType.DEPARTMENT, 2, ministry.id)
    division = _unit(tree_service, "Планирования", OrgUnitType.DIVISION, 3, department.id)

    chain = tree_service.get_unit_path(division.id)
    assert [item.id for item in chain] == [ministry.id, department.id, division.id]


def test_reparent_rewrites_subtree_paths(tree_service: OrgTreeService) -> None:
    finance = _unit(tree_service, "Финансов", OrgUnitType.MINISTRY, 1)
    economy = _unit(tree_service, "Экономики", OrgUnitType.MINISTRY, 1)
    department = _unit(tree_service, "Бюджетный", OrgUnitType.DEPARTMENT, 2, finance.id)
    division = _unit(tree_service, "Планирования", OrgUnitType.DIVISION, 3, department.id)

    moved = tree_service.update_unit(department.id, OrgUnitUpdate(parent_id=economy.id))
    assert moved.parent_id == economy.id
    assert moved.path == f"{economy.path}.1"
    assert tree_service.get_unit(division.id).path == f"{moved.path}.1"

    with pytest.raises(ConflictError):
        tree_service.update_unit(economy.id, OrgUnitUpdate(parent_id=division.id))
    with pytest.raises(ConflictError):
        tree_service.update_unit(department.id, OrgUnitUpdate(parent_id=department.id))


def test_update_rejects_level_above_children(tree_service: OrgTreeService) -> None:
    ministry = _unit(tree_service, "Финансов", OrgUnitType.MINISTRY, 1)
    _unit(tree_service, "Бюджетный", OrgUnitType.DEPARTMENT, 2, ministry.id)

    with pytest.raises(ValidationError):
        tree_service.update_unit(ministry.id, OrgUnitUpdate(hierarchy_level=2))
    renamed = tree_service.update_unit(ministry.id, OrgUnitUpdate(name="Минфин"))
    assert renamed.name == "Минфин"


def test_delete_requires_force_when_children_exist(tree_service: OrgTreeService) -> None:
    ministry = _unit(tree_service, "Финансов", OrgUnitType.MINISTRY, 1)
    department = _unit(tree_service, "Бюджетный", OrgUnitType.DEPARTMENT, 2, ministry.id)
    division = _unit(tree_service, "Планирования", OrgUnitType.DIVISION, 3, department.id)

    with pytest.raises(ConflictError):
        tree_service.delete_unit(ministry.id)

    deleted = tree_service.delete_unit(ministry.id, force=True)
    assert deleted == [division.id, department.id, ministry.id]
    assert tree_service.list_units() == []
    with pytest.raises(NotFoundError):
        tree_service.get_unit(department.id)

    with Session(db.get_engine()) as session:
        types = session.exec(select(EventRecord.event_type)).all()
    assert "hierarchy.unit.deleted" in types


def test_list_units_filters(tree_service: OrgTreeService) -> None:
    ministry = _unit(tree_service, "Финансов", OrgUnitType.MINISTRY, 1)
    department = _unit(tree_service, "Бюджетный", OrgUnitType.DEPARTMENT, 2, ministry.id)

    assert [item.id for item in tree_service.list_units(roots_only=True)] == [ministry.id]
    assert [item.id for item in tree_service.list_units(parent_id=ministry.id)] == [department.id]
    assert [item.id for item in tree_service.list_units(unit_type=OrgUnitType.DEPARTMENT)] == [department.id]


def test_create_unit_opens_organization_channel(tree_service: OrgTreeService) -> None:
    ministry = _unit(tree_service, "Финансов", OrgUnitType.MINISTRY, 1)

    channel = ChannelStore().find_auto_channel(ministry.id)
    assert channel is not None
    assert channel.name == "Министерство Финансов"
    assert channel.status == ChannelStatus.ACTIVE
    assert channel.is_pinned is True


class _BrokenChannels:
    def create_organization_channel(self, unit_id: str, created_by: str | None = None) -> None:
        raise RuntimeError("channel store unavailable")


def test_channel_failure_does_not_roll_back_unit(tree_service: OrgTreeService) -> None:
    service = OrgTreeService(channel_sync=_BrokenChannels())  # type: ignore[arg-type]
    unit = service.create_unit(OrgUnitCreate(name="Финансов", unit_type=OrgUnitType.MINISTRY, hierarchy_level=1))

    assert service.get_unit(unit.id).path == "1"
    assert ChannelStore().find_auto_channel(unit.id) is None
