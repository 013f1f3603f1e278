from __future__ import annotations

import logging

from sqlmodel import Session, col, select

from app.domain.models import (
    Appointment,
    Channel,
    ChannelCreationResult,
    ChannelMembershipResult,
    ChannelRole,
    ChannelSyncReport,
    OrganizationUnit,
    OrgUnitType,
    Position,
    User,
    UserStatus,
)
from app.domain.paths import ancestor_paths, subtree_clause
from app.domain.state_machine import ChannelStatus
from app.infra import events
from app.infra.channel_store import ChannelStore
from app.infra.db import get_engine
from app.infra.events import event_bus
from app.services.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

CHANNEL_TYPE_NAMES: dict[str, str] = {
    OrgUnitType.MINISTRY: "Министерство",
    OrgUnitType.COMMITTEE: "Комитет",
    OrgUnitType.DEPARTMENT: "Департамент",
    OrgUnitType.DIVISION: "Отдел",
    OrgUnitType.AGENCY: "Агентство",
    OrgUnitType.ADMINISTRATION: "Администрация",
}
DEFAULT_CHANNEL_TYPE_NAME = "Организация"
LEVEL_TAGS: dict[int, str] = {0: "президентский", 1: "министерский", 2: "комитетский"}
PINNED_MAX_LEVEL = 2
MEMBER_POSTING_MIN_LEVEL = 4


def channel_name(unit: OrganizationUnit) -> str:
    return f"{CHANNEL_TYPE_NAMES.get(unit.unit_type, DEFAULT_CHANNEL_TYPE_NAME)} {unit.name}"


def channel_description(unit: OrganizationUnit) -> str:
    return (
        f"Официальный канал {unit.name}. "
        "Здесь публикуются новости, объявления и важная информация для сотрудников."
    )


def channel_tags(unit: OrganizationUnit) -> list[str]:
    tags = ["официальный", str(unit.unit_type)]
    level_tag = LEVEL_TAGS.get(unit.hierarchy_level)
    if level_tag is not None:
        tags.append(level_tag)
    return tags


def should_pin(unit: OrganizationUnit) -> bool:
    return unit.hierarchy_level <= PINNED_MAX_LEVEL


def allowed_roles(unit: OrganizationUnit) -> list[str]:
    roles = ["admin", "moderator"]
    if unit.hierarchy_level >= MEMBER_POSTING_MIN_LEVEL:
        roles.append("member")
    return roles


def channel_role_for(position: Position) -> ChannelRole:
    if position.can_manage_subordinates:
        return ChannelRole.MODERATOR
    if position.is_managerial:
        return ChannelRole.MEMBER
    return ChannelRole.SUBSCRIBER


class ChannelSyncService:
    """Keeps auto-created organization channels in step with appointments.

    Membership writes go through the channel store one subscription at a
    time. A failure on one channel is logged and recorded on that channel
    and never aborts the remaining channels; ``sync_organization_channel_membership``
    repairs whatever was left behind.
    """

    def __init__(self, store: ChannelStore | None = None) -> None:
        self._store = store or ChannelStore()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_unit(self, session: Session, unit_id: str) -> OrganizationUnit:
        unit = session.get(OrganizationUnit, unit_id)
        if unit is None:
            raise NotFoundError("org unit not found")
        return unit

    def _subtree_members(self, session: Session, unit: OrganizationUnit) -> tuple[dict[str, ChannelRole], int]:
        rows = session.exec(
            select(Appointment.user_id, Position, User.status)
            .join(Position, col(Position.id) == col(Appointment.position_id))
            .join(User, col(User.id) == col(Appointment.user_id))
            .join(OrganizationUnit, col(OrganizationUnit.id) == col(Appointment.organization_unit_id))
            .where(col(Appointment.is_current).is_(True))
            .where(subtree_clause(unit.path))
        ).all()
        members: dict[str, ChannelRole] = {}
        skipped = 0
        for user_id, position, status in rows:
            if status != UserStatus.ACTIVE:
                skipped += 1
                continue
            members[user_id] = channel_role_for(position)
        return members, skipped

    def _chain_unit_ids(self, session: Session, unit_id: str | None) -> set[str]:
        if unit_id is None:
            return set()
        unit = session.get(OrganizationUnit, unit_id)
        if unit is None:
            return set()
        return set(
            session.exec(
                select(OrganizationUnit.id).where(col(OrganizationUnit.path).in_(ancestor_paths(unit.path)))
            ).all()
        )

    def _refresh_count(self, channel_id: str) -> int:
        count = self._store.count_subscriptions(channel_id)
        self._store.set_subscriber_count(channel_id, count)
        return count

    def _record_failure(self, channel_id: str, message: str) -> None:
        try:
            self._store.record_sync_state(channel_id, error=message)
        except Exception:
            logger.exception("could not record sync failure on channel %s", channel_id)

    def create_organization_channel(self, unit_id: str, created_by: str | None = None) -> ChannelCreationResult:
        with self._session() as session:
            unit = self._get_unit(session, unit_id)
            existing = self._store.find_auto_channel(unit_id)
            if existing is not None:
                logger.info("organization channel already exists unit=%s channel=%s", unit_id, existing.id)
                return ChannelCreationResult(channel_id=existing.id, created=False, success=True)
            members, _ = self._subtree_members(session, unit)
            attrs = {
                "name": channel_name(unit),
                "description": channel_description(unit),
                "channel_type": "public",
                "owner_id": created_by,
                "organization_unit_id": unit.id,
                "auto_created": True,
                "is_verified": True,
                "is_pinned": should_pin(unit),
                "tags": channel_tags(unit),
                "allowed_roles": allowed_roles(unit),
                "status": ChannelStatus.UNINITIALIZED,
            }

        try:
            channel_id = self._store.create_channel(attrs)
        except Exception as exc:
            logger.exception("organization channel creation failed unit=%s", unit_id)
            return ChannelCreationResult(success=False, error=str(exc))

        added = 0
        failures: list[str] = []
        for user_id, role in members.items():
            try:
                if self._store.set_subscription(channel_id, user_id, role) == "created":
                    added += 1
            except Exception as exc:
                logger.warning(
                    "subscription failed channel=%s user=%s unit=%s: %s",
                    channel_id,
                    user_id,
                    unit_id,
                    exc,
                )
                failures.append(f"{user_id}: {exc}")
        try:
            self._refresh_count(channel_id)
            self._store.record_sync_state(
                channel_id,
                status=ChannelStatus.ACTIVE,
                error="; ".join(failures) or None,
            )
        except Exception as exc:
            logger.exception("channel %s activation failed unit=%s", channel_id, unit_id)
            failures.append(str(exc))

        event_bus.publish_dict(
            events.CHANNEL_CREATED,
            {"channel_id": channel_id, "organization_unit_id": unit_id, "subscribers_added": added},
        )
        logger.info("organization channel created unit=%s channel=%s subscribers=%s", unit_id, channel_id, added)
        return ChannelCreationResult(
            channel_id=channel_id,
            subscribers_added=added,
            created=True,
            success=not failures,
            error="; ".join(failures) or None,
        )

    def sync_on_appointment_change(
        self,
        user_id: str,
        old_unit_id: str | None,
        new_unit_id: str | None,
    ) -> ChannelSyncReport:
        report = ChannelSyncReport(user_id=user_id, old_unit_id=old_unit_id, new_unit_id=new_unit_id)
        with self._session() as session:
            old_units = self._chain_unit_ids(session, old_unit_id)
            new_units = self._chain_unit_ids(session, new_unit_id)
            role = ChannelRole.SUBSCRIBER
            if new_unit_id is not None:
                current = session.exec(
                    select(Position)
                    .join(Appointment, col(Appointment.position_id) == col(Position.id))
                    .where(Appointment.user_id == user_id)
                    .where(col(Appointment.is_current).is_(True))
                ).first()
                if current is not None:
                    role = channel_role_for(current)

        to_remove = self._store.list_auto_channels_for_units(sorted(old_units - new_units))
        to_add = self._store.list_auto_channels_for_units(sorted(new_units - old_units))
        for channel in to_remove:
            self._apply(report, channel, user_id, None)
        for channel in to_add:
            self._apply(report, channel, user_id, role)

        if report.channels_failed:
            logger.warning(
                "channel sync incomplete user=%s old_unit=%s new_unit=%s failed=%s",
                user_id,
                old_unit_id,
                new_unit_id,
                report.channels_failed,
            )
        return report

    def _apply(self, report: ChannelSyncReport, channel: Channel, user_id: str, role: ChannelRole | None) -> None:
        try:
            if role is None:
                self._store.remove_subscription(channel.id, user_id)
            else:
                self._store.set_subscription(channel.id, user_id, role)
            self._refresh_count(channel.id)
        except Exception as exc:
            logger.warning(
                "channel membership write failed channel=%s user=%s unit=%s: %s",
                channel.id,
                user_id,
                channel.organization_unit_id,
                exc,
            )
            report.channels_failed.append(channel.id)
            self._record_failure(channel.id, f"user {user_id}: {exc}")
            return
        if role is None:
            report.channels_removed.append(channel.id)
        else:
            report.channels_added.append(channel.id)

    def sync_organization_channel_membership(self, channel_id: str, unit_id: str) -> ChannelMembershipResult:
        channel = self._store.get_channel(channel_id)
        if channel is None:
            raise NotFoundError("channel not found")
        if channel.organization_unit_id is not None and channel.organization_unit_id != unit_id:
            raise ConflictError("channel is bound to another org unit")
        with self._session() as session:
            unit = self._get_unit(session, unit_id)
            desired, skipped = self._subtree_members(session, unit)

        result = ChannelMembershipResult(
            channel_id=channel_id,
            organization_unit_id=unit_id,
            users_skipped=skipped,
            success=True,
        )
        current = {item.user_id: item.role for item in self._store.list_subscriptions(channel_id)}
        for user_id, role in desired.items():
            try:
                change = self._store.set_subscription(channel_id, user_id, role)
            except Exception as exc:
                logger.warning("membership repair failed channel=%s user=%s: %s", channel_id, user_id, exc)
                result.errors.append(f"{user_id}: {exc}")
                continue
            if change == "created":
                result.users_added += 1
            elif change == "updated":
                result.users_updated += 1
        if channel.auto_created:
            for user_id in set(current) - set(desired):
                try:
                    if self._store.remove_subscription(channel_id, user_id):
                        result.users_removed += 1
                except Exception as exc:
                    logger.warning("membership removal failed channel=%s user=%s: %s", channel_id, user_id, exc)
                    result.errors.append(f"{user_id}: {exc}")

        try:
            result.subscriber_count = self._refresh_count(channel_id)
            self._store.record_sync_state(
                channel_id,
                status=ChannelStatus.ACTIVE,
                error="; ".join(result.errors) or None,
            )
        except Exception as exc:
            logger.exception("channel %s sync state update failed unit=%s", channel_id, unit_id)
            result.errors.append(f"sync state: {exc}")
        result.success = not result.errors
        logger.info(
            "channel membership synced channel=%s unit=%s added=%s updated=%s removed=%s",
            channel_id,
            unit_id,
            result.users_added,
            result.users_updated,
            result.users_removed,
        )
        return result

    def get_channel(self, channel_id: str) -> Channel:
        channel = self._store.get_channel(channel_id)
        if channel is None:
            raise NotFoundError("channel not found")
        return channel
