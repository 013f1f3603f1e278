from __future__ import annotations

import os
from typing import Any, Literal

from sqlalchemy import func, text
from sqlmodel import Session, col, select

from app.domain.models import Channel, ChannelRole, ChannelSubscription, now_utc
from app.domain.state_machine import ChannelStatus, can_transition
from app.infra.db import dialect_name, get_engine

CHANNEL_STORE_TIMEOUT_MS = int(os.getenv("CHANNEL_STORE_TIMEOUT_MS", "5000"))

SubscriptionChange = Literal["created", "updated", "unchanged"]


class ChannelStoreError(Exception):
    pass


class ChannelStore:
    """Messaging-channel store.

    Every write runs in its own short transaction so that a failure on one
    channel never rolls back writes already applied to another.
    """

    def __init__(self, timeout_ms: int | None = None) -> None:
        self._timeout_ms = CHANNEL_STORE_TIMEOUT_MS if timeout_ms is None else timeout_ms

    def _session(self) -> Session:
        session = Session(get_engine(), expire_on_commit=False)
        if self._timeout_ms > 0 and dialect_name(session) == "postgresql":
            session.connection().execute(text(f"SET LOCAL statement_timeout = {int(self._timeout_ms)}"))
        return session

    def create_channel(self, attrs: dict[str, Any]) -> str:
        with self._session() as session:
            channel = Channel(**attrs)
            session.add(channel)
            session.commit()
            return channel.id

    def get_channel(self, channel_id: str) -> Channel | None:
        with self._session() as session:
            return session.get(Channel, channel_id)

    def find_auto_channel(self, organization_unit_id: str) -> Channel | None:
        with self._session() as session:
            return session.exec(
                select(Channel)
                .where(Channel.organization_unit_id == organization_unit_id)
                .where(col(Channel.auto_created).is_(True))
                .order_by(col(Channel.created_at))
            ).first()

    def list_auto_channels_for_units(self, organization_unit_ids: list[str]) -> list[Channel]:
        if not organization_unit_ids:
            return []
        with self._session() as session:
            return list(
                session.exec(
                    select(Channel)
                    .where(col(Channel.organization_unit_id).in_(organization_unit_ids))
                    .where(col(Channel.auto_created).is_(True))
                ).all()
            )

    def list_subscriptions(self, channel_id: str) -> list[ChannelSubscription]:
        with self._session() as session:
            return list(
                session.exec(select(ChannelSubscription).where(ChannelSubscription.channel_id == channel_id)).all()
            )

    def list_user_subscriptions(self, user_id: str) -> list[ChannelSubscription]:
        with self._session() as session:
            return list(session.exec(select(ChannelSubscription).where(ChannelSubscription.user_id == user_id)).all())

    def set_subscription(self, channel_id: str, user_id: str, role: ChannelRole) -> SubscriptionChange:
        with self._session() as session:
            subscription = session.get(ChannelSubscription, (channel_id, user_id))
            if subscription is None:
                session.add(ChannelSubscription(channel_id=channel_id, user_id=user_id, role=role))
                session.commit()
                return "created"
            if subscription.role == role:
                return "unchanged"
            subscription.role = role
            subscription.updated_at = now_utc()
            session.add(subscription)
            session.commit()
            return "updated"

    def remove_subscription(self, channel_id: str, user_id: str) -> bool:
        with self._session() as session:
            subscription = session.get(ChannelSubscription, (channel_id, user_id))
            if subscription is None:
                return False
            session.delete(subscription)
            session.commit()
            return True

    def count_subscriptions(self, channel_id: str) -> int:
        with self._session() as session:
            total = session.exec(
                select(func.count()).select_from(ChannelSubscription).where(ChannelSubscription.channel_id == channel_id)
            ).one()
            return int(total)

    def set_subscriber_count(self, channel_id: str, count: int) -> None:
        with self._session() as session:
            channel = session.get(Channel, channel_id)
            if channel is None:
                raise ChannelStoreError(f"channel {channel_id} not found")
            channel.subscriber_count = count
            channel.updated_at = now_utc()
            session.add(channel)
            session.commit()

    def record_sync_state(
        self,
        channel_id: str,
        *,
        status: ChannelStatus | None = None,
        error: str | None = None,
    ) -> None:
        with self._session() as session:
            channel = session.get(Channel, channel_id)
            if channel is None:
                raise ChannelStoreError(f"channel {channel_id} not found")
            if status is not None:
                if not can_transition(channel.status, status):
                    raise ChannelStoreError(f"invalid channel transition {channel.status} -> {status}")
                channel.status = status
            channel.last_sync_error = error
            channel.last_synced_at = now_utc()
            channel.updated_at = channel.last_synced_at
            session.add(channel)
            session.commit()
