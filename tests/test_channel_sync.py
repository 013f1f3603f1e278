from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine

from app.domain.models import (
    AppointmentCreate,
    AppointmentDismissRequest,
    ChannelCreationResult,
    ChannelRole,
    ChannelSyncReport,
    OrganizationUnit,
    OrgUnitCreate,
    OrgUnitType,
    Position,
    PositionCreate,
    User,
    UserStatus,
    UserUpdate,
)
from app.domain.state_machine import ChannelStatus
from app.infra import db
from app.infra.channel_store import ChannelStore, ChannelStoreError
from app.services.appointment_service import AppointmentService
from app.services.channel_sync_service import ChannelSyncService
from app.services.errors import ConflictError
from app.services.identity_service import IdentityService
from app.services.org_tree_service import OrgTreeService
from app.services.position_service import PositionService


@pytest.fixture()
def sync_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[dict[str, Any], None, None]:
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'channel_sync_test.db'}",
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
    finance = tree.create_unit(OrgUnitCreate(name="Финансов", unit_type=OrgUnitType.MINISTRY, hierarchy_level=1))
    budget = tree.create_unit(
        OrgUnitCreate(name="Бюджетный", unit_type=OrgUnitType.DEPARTMENT, hierarchy_level=2, parent_id=finance.id)
    )
    economy = tree.create_unit(OrgUnitCreate(name="Экономики", unit_type=OrgUnitType.MINISTRY, hierarchy_level=1))
    forecast = tree.create_unit(
        OrgUnitCreate(name="Прогнозов", unit_type=OrgUnitType.DEPARTMENT, hierarchy_level=2, parent_id=economy.id)
    )
    analyst = positions.create_position(PositionCreate(organization_unit_id=budget.id, title="Специалист"))
    director = positions.create_position(
        PositionCreate(
            organization_unit_id=forecast.id,
            title="Директор департамента",
            is_managerial=True,
            can_manage_subordinates=True,
        )
    )
    with Session(test_engine, expire_on_commit=False) as session:
        user = User(username="sidorova", full_name="Сидорова Анна")
        session.add(user)
        session.commit()

    yield {
        "finance": finance,
        "budget": budget,
        "economy": economy,
        "forecast": forecast,
        "analyst": analyst,
        "director": director,
        "user": user,
    }
    test_engine.dispose()


def _channel_id(unit: OrganizationUnit) -> str:
    channel = ChannelStore().find_auto_channel(unit.id)
    assert channel is not None
    return channel.id


def _subscribed_channels(user_id: str) -> set[str]:
    return {item.channel_id for item in ChannelStore().list_user_subscriptions(user_id)}


def _assign(service: AppointmentService, user: User, unit: OrganizationUnit, position: Position) -> Any:
    return service.assign_appointment(
        AppointmentCreate(user_id=user.id, organization_unit_id=unit.id, position_id=position.id)
    )


def test_appointment_subscribes_whole_ancestor_chain(sync_env: dict[str, Any]) -> None:
    _assign(AppointmentService(), sync_env["user"], sync_env["budget"], sync_env["analyst"])

    expected = {_channel_id(sync_env["finance"]), _channel_id(sync_env["budget"])}
    assert _subscribed_channels(sync_env["user"].id) == expected
    store = ChannelStore()
    for channel_id in expected:
        channel = store.get_channel(channel_id)
        assert channel is not None
        assert channel.subscriber_count == 1


def test_move_between_disjoint_trees_converges(sync_env: dict[str, Any]) -> None:
    service = AppointmentService()
    _assign(service, sync_env["user"], sync_env["budget"], sync_env["analyst"])
    _assign(service, sync_env["user"], sync_env["forecast"], sync_env["director"])

    expected = {_channel_id(sync_env["economy"]), _channel_id(sync_env["forecast"])}
    assert _subscribed_channels(sync_env["user"].id) == expected
    roles = {item.channel_id: item.role for item in ChannelStore().list_user_subscriptions(sync_env["user"].id)}
    assert set(roles.values()) == {ChannelRole.MODERATOR}
    old_channel = ChannelStore().get_channel(_channel_id(sync_env["finance"]))
    assert old_channel is not None
    assert old_channel.subscriber_count == 0


def test_dismiss_leaves_no_subscriptions_in_chain(sync_env: dict[str, Any]) -> None:
    service = AppointmentService()
    appointment = _assign(service, sync_env["user"], sync_env["budget"], sync_env["analyst"])
    service.dismiss(appointment.id, AppointmentDismissRequest(dismissal_reason="retired"))

    assert _subscribed_channels(sync_env["user"].id) == set()


def test_status_change_follows_channel_membership(sync_env: dict[str, Any]) -> None:
    _assign(AppointmentService(), sync_env["user"], sync_env["budget"], sync_env["analyst"])
    identity = IdentityService()
    expected = {_channel_id(sync_env["finance"]), _channel_id(sync_env["budget"])}

    blocked = identity.update_user(sync_env["user"].id, UserUpdate(status=UserStatus.BLOCKED))
    assert blocked.status == UserStatus.BLOCKED
    assert _subscribed_channels(sync_env["user"].id) == set()

    identity.update_user(sync_env["user"].id, UserUpdate(status=UserStatus.ACTIVE))
    assert _subscribed_channels(sync_env["user"].id) == expected


class _FlakyStore(ChannelStore):
    def __init__(self, failing_channel_id: str) -> None:
        super().__init__()
        self.failing_channel_id = failing_channel_id

    def set_subscription(self, channel_id: str, user_id: str, role: ChannelRole) -> Any:
        if channel_id == self.failing_channel_id:
            raise ChannelStoreError("write timeout")
        return super().set_subscription(channel_id, user_id, role)


def test_failing_channel_is_isolated_and_repaired(sync_env: dict[str, Any]) -> None:
    finance_channel = _channel_id(sync_env["finance"])
    budget_channel = _channel_id(sync_env["budget"])
    flaky = ChannelSyncService(store=_FlakyStore(finance_channel))
    service = AppointmentService(channel_sync=flaky)

    _assign(service, sync_env["user"], sync_env["budget"], sync_env["analyst"])
    assert _subscribed_channels(sync_env["user"].id) == {budget_channel}
    broken = ChannelStore().get_channel(finance_channel)
    assert broken is not None
    assert broken.last_sync_error is not None

    result = ChannelSyncService().sync_organization_channel_membership(finance_channel, sync_env["finance"].id)
    assert result.success is True
    assert result.users_added == 1
    assert result.subscriber_count == 1
    assert _subscribed_channels(sync_env["user"].id) == {finance_channel, budget_channel}
    repaired = ChannelStore().get_channel(finance_channel)
    assert repaired is not None
    assert repaired.last_sync_error is None
    assert repaired.status == ChannelStatus.ACTIVE


def test_sync_report_lists_failed_channels(sync_env: dict[str, Any]) -> None:
    finance_channel = _channel_id(sync_env["finance"])
    _assign(AppointmentService(channel_sync=_NoopSync()), sync_env["user"], sync_env["budget"], sync_env["analyst"])

    report = ChannelSyncService(store=_FlakyStore(finance_channel)).sync_on_appointment_change(
        sync_env["user"].id,
        None,
        sync_env["budget"].id,
    )
    assert report.channels_failed == [finance_channel]
    assert report.channels_added == [_channel_id(sync_env["budget"])]
    assert report.success is False


class _NoopSync:
    def sync_on_appointment_change(
        self,
        user_id: str,
        old_unit_id: str | None,
        new_unit_id: str | None,
    ) -> ChannelSyncReport:
        return ChannelSyncReport(user_id=user_id, old_unit_id=old_unit_id, new_unit_id=new_unit_id)


def test_repair_removes_stale_members_and_is_idempotent(sync_env: dict[str, Any]) -> None:
    budget_channel = _channel_id(sync_env["budget"])
    ChannelStore().set_subscription(budget_channel, sync_env["user"].id, ChannelRole.SUBSCRIBER)
    sync = ChannelSyncService()

    first = sync.sync_organization_channel_membership(budget_channel, sync_env["budget"].id)
    assert first.users_removed == 1
    assert first.subscriber_count == 0

    second = sync.sync_organization_channel_membership(budget_channel, sync_env["budget"].id)
    assert (second.users_added, second.users_updated, second.users_removed) == (0, 0, 0)


class _StateWriteFailingStore(ChannelStore):
    def record_sync_state(
        self,
        channel_id: str,
        *,
        status: ChannelStatus | None = None,
        error: str | None = None,
    ) -> None:
        raise ChannelStoreError("state write timeout")


def test_repair_reports_failed_state_write(sync_env: dict[str, Any]) -> None:
    budget_channel = _channel_id(sync_env["budget"])
    ChannelStore().set_subscription(budget_channel, sync_env["user"].id, ChannelRole.SUBSCRIBER)

    result = ChannelSyncService(store=_StateWriteFailingStore()).sync_organization_channel_membership(
        budget_channel,
        sync_env["budget"].id,
    )
    assert result.success is False
    assert result.users_removed == 1
    assert any("state write timeout" in error for error in result.errors)
    assert ChannelStore().list_subscriptions(budget_channel) == []


def test_repair_rejects_foreign_unit(sync_env: dict[str, Any]) -> None:
    with pytest.raises(ConflictError):
        ChannelSyncService().sync_organization_channel_membership(
            _channel_id(sync_env["budget"]),
            sync_env["finance"].id,
        )


def test_create_channel_is_idempotent_and_subscribes_employees(sync_env: dict[str, Any]) -> None:
    _assign(AppointmentService(), sync_env["user"], sync_env["forecast"], sync_env["director"])
    sync = ChannelSyncService()

    existing = sync.create_organization_channel(sync_env["forecast"].id)
    assert existing.created is False
    assert existing.channel_id == _channel_id(sync_env["forecast"])

    tree = OrgTreeService(channel_sync=_NoChannels())
    division = tree.create_unit(
        OrgUnitCreate(
            name="Сводного анализа",
            unit_type=OrgUnitType.DIVISION,
            hierarchy_level=4,
            parent_id=sync_env["economy"].id,
        )
    )
    created = sync.create_organization_channel(division.id, created_by=sync_env["user"].id)
    assert created.created is True
    assert created.success is True
    channel = sync.get_channel(created.channel_id or "")
    assert channel.name == "Отдел Сводного анализа"
    assert channel.owner_id == sync_env["user"].id
    assert channel.is_pinned is False
    assert "member" in channel.allowed_roles
    assert channel.tags == ["официальный", "division"]


def test_ministry_channel_attributes(sync_env: dict[str, Any]) -> None:
    channel = ChannelSyncService().get_channel(_channel_id(sync_env["finance"]))
    assert channel.is_verified is True
    assert channel.is_pinned is True
    assert channel.allowed_roles == ["admin", "moderator"]
    assert "министерский" in channel.tags
    assert channel.description is not None
    assert channel.description.startswith("Официальный канал Финансов.")


class _NoChannels:
    def create_organization_channel(self, unit_id: str, created_by: str | None = None) -> ChannelCreationResult:
        return ChannelCreationResult(success=True)
