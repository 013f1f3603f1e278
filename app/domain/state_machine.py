from __future__ import annotations

from enum import StrEnum


class ChannelStatus(StrEnum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"


CHANNEL_ALLOWED_TRANSITIONS: dict[ChannelStatus, set[ChannelStatus]] = {
    ChannelStatus.UNINITIALIZED: {ChannelStatus.ACTIVE},
    ChannelStatus.ACTIVE: {ChannelStatus.ACTIVE},
}


def can_transition(source: ChannelStatus, target: ChannelStatus) -> bool:
    return target in CHANNEL_ALLOWED_TRANSITIONS.get(source, set())


class AppointmentType(StrEnum):
    PERMANENT = "permanent"
    TEMPORARY = "temporary"
    ACTING = "acting"
