from __future__ import annotations

import os
import re
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

SCOPE_WILDCARD = "*"
DIVISION_HEAD_MIN_LEVEL = int(os.getenv("DIVISION_HEAD_MIN_LEVEL", "3"))


class SystemRole(StrEnum):
    SUPER_ADMIN = "super_admin"
    GOVERNMENT_HEAD = "government_head"
    PRIME_MINISTER = "prime_minister"
    DEPUTY_PRIME_MINISTER = "deputy_prime_minister"
    MINISTER = "minister"
    DEPUTY_MINISTER = "deputy_minister"
    COMMITTEE_HEAD = "committee_head"
    DEPARTMENT_HEAD = "department_head"
    DIVISION_HEAD = "division_head"
    SENIOR_SPECIALIST = "senior_specialist"
    SPECIALIST = "specialist"
    GOVERNMENT_OFFICIAL = "government_official"
    GUEST = "guest"


class RolePermissions(BaseModel):
    model_config = ConfigDict(frozen=True)

    can_manage_users: bool = False
    can_manage_system: bool = False
    can_view_all_data: bool = False
    can_manage_subordinates: bool = False
    can_assign_tasks: bool = False
    can_issue_disciplinary_actions: bool = False
    can_give_commendations: bool = False
    can_approve_documents: bool = False
    can_initiate_calls: bool = False
    can_create_channels: bool = False
    can_manage_groups: bool = False
    can_moderate_communication: bool = False
    hierarchy_level: int
    can_access_levels: tuple[int, ...] = ()
    organization_scope: tuple[str, ...] = ()

    @property
    def has_wildcard_scope(self) -> bool:
        return SCOPE_WILDCARD in self.organization_scope


class AppointmentSnapshot(BaseModel):
    """The slice of an appointment the role derivation depends on."""

    model_config = ConfigDict(frozen=True)

    position_title: str
    unit_type: str
    unit_level: int
    organization_unit_id: str | None = None


def _levels(start: int) -> tuple[int, ...]:
    return tuple(range(start, 11))


_ALL = {
    "can_manage_subordinates": True,
    "can_assign_tasks": True,
    "can_issue_disciplinary_actions": True,
    "can_give_commendations": True,
    "can_approve_documents": True,
    "can_initiate_calls": True,
    "can_create_channels": True,
    "can_manage_groups": True,
    "can_moderate_communication": True,
}

ROLE_PERMISSIONS: dict[SystemRole, RolePermissions] = {
    SystemRole.SUPER_ADMIN: RolePermissions(
        **_ALL,
        can_manage_users=True,
        can_manage_system=True,
        can_view_all_data=True,
        hierarchy_level=0,
        can_access_levels=_levels(1),
        organization_scope=(SCOPE_WILDCARD,),
    ),
    SystemRole.GOVERNMENT_HEAD: RolePermissions(
        **_ALL,
        can_view_all_data=True,
        hierarchy_level=1,
        can_access_levels=_levels(1),
        organization_scope=(SCOPE_WILDCARD,),
    ),
    SystemRole.PRIME_MINISTER: RolePermissions(
        **_ALL,
        can_view_all_data=True,
        hierarchy_level=2,
        can_access_levels=_levels(2),
        organization_scope=(SCOPE_WILDCARD,),
    ),
    SystemRole.DEPUTY_PRIME_MINISTER: RolePermissions(
        **_ALL,
        hierarchy_level=3,
        can_access_levels=_levels(3),
    ),
    SystemRole.MINISTER: RolePermissions(
        **_ALL,
        hierarchy_level=4,
        can_access_levels=_levels(4),
    ),
    SystemRole.DEPUTY_MINISTER: RolePermissions(
        can_manage_subordinates=True,
        can_assign_tasks=True,
        can_issue_disciplinary_actions=True,
        can_give_commendations=True,
        can_approve_documents=True,
        can_initiate_calls=True,
        can_manage_groups=True,
        hierarchy_level=5,
        can_access_levels=_levels(5),
    ),
    SystemRole.COMMITTEE_HEAD: RolePermissions(
        can_manage_subordinates=True,
        can_assign_tasks=True,
        can_issue_disciplinary_actions=True,
        can_give_commendations=True,
        can_approve_documents=True,
        can_initiate_calls=True,
        can_manage_groups=True,
        hierarchy_level=5,
        can_access_levels=_levels(5),
    ),
    SystemRole.DEPARTMENT_HEAD: RolePermissions(
        can_manage_subordinates=True,
        can_assign_tasks=True,
        can_issue_disciplinary_actions=True,
        can_give_commendations=True,
        can_initiate_calls=True,
        can_manage_groups=True,
        hierarchy_level=6,
        can_access_levels=_levels(6),
    ),
    SystemRole.DIVISION_HEAD: RolePermissions(
        can_manage_subordinates=True,
        can_assign_tasks=True,
        can_give_commendations=True,
        can_initiate_calls=True,
        hierarchy_level=7,
        can_access_levels=_levels(7),
    ),
    SystemRole.SENIOR_SPECIALIST: RolePermissions(
        can_manage_subordinates=True,
        can_assign_tasks=True,
        hierarchy_level=8,
        can_access_levels=_levels(8),
    ),
    SystemRole.SPECIALIST: RolePermissions(hierarchy_level=9, can_access_levels=_levels(9)),
    SystemRole.GOVERNMENT_OFFICIAL: RolePermissions(hierarchy_level=10, can_access_levels=_levels(10)),
    SystemRole.GUEST: RolePermissions(hierarchy_level=11),
}


class TitleRule:
    """Keyword rule over a lower-cased position title.

    Keywords must start at a word boundary: the character before the keyword
    is neither a letter/digit nor a hyphen, so "министр" does not match inside
    "премьер-министр" or "вице-министр". The keyword end is left open to
    accept inflected forms ("министра", "министерства").
    """

    def __init__(
        self,
        role: SystemRole,
        keywords: tuple[str, ...],
        unit_types: frozenset[str] | None = None,
        min_level: int | None = None,
    ) -> None:
        self.role = role
        self.keywords = keywords
        self.unit_types = unit_types
        self.min_level = min_level
        alternatives = "|".join(re.escape(item) for item in keywords)
        self._pattern = re.compile(rf"(?<![\w-])(?:{alternatives})")

    def matches(self, title: str, unit_type: str, unit_level: int) -> bool:
        if self._pattern.search(title) is None:
            return False
        if self.unit_types is None and self.min_level is None:
            return True
        if self.unit_types is not None and unit_type in self.unit_types:
            return True
        return self.min_level is not None and unit_level >= self.min_level


_HEAD_KEYWORDS = ("руководитель", "начальник", "head", "chief of")

# Most specific first; the first matching rule wins.
TITLE_RULES: tuple[TitleRule, ...] = (
    TitleRule(SystemRole.SUPER_ADMIN, ("системный администратор", "system admin")),
    TitleRule(SystemRole.GOVERNMENT_HEAD, ("президент", "глава государства", "president", "head of state")),
    TitleRule(
        SystemRole.DEPUTY_PRIME_MINISTER,
        ("вице-премьер", "заместитель премьер-министра", "deputy prime minister", "vice premier"),
    ),
    TitleRule(SystemRole.PRIME_MINISTER, ("премьер-министр", "prime minister")),
    TitleRule(
        SystemRole.DEPUTY_MINISTER,
        ("заместитель министра", "вице-министр", "deputy minister", "vice minister", "vice-minister"),
    ),
    TitleRule(SystemRole.MINISTER, ("министр", "minister")),
    TitleRule(
        SystemRole.COMMITTEE_HEAD,
        ("председатель", "chairman", "chairperson", "chair of"),
        unit_types=frozenset({"committee"}),
    ),
    TitleRule(
        SystemRole.DEPARTMENT_HEAD,
        (*_HEAD_KEYWORDS, "директор", "director"),
        unit_types=frozenset({"department"}),
    ),
    TitleRule(
        SystemRole.DIVISION_HEAD,
        _HEAD_KEYWORDS,
        unit_types=frozenset({"division"}),
        min_level=DIVISION_HEAD_MIN_LEVEL,
    ),
    TitleRule(
        SystemRole.SENIOR_SPECIALIST,
        (
            "главный специалист",
            "ведущий специалист",
            "старший специалист",
            "chief specialist",
            "leading specialist",
            "senior specialist",
        ),
    ),
    TitleRule(SystemRole.SPECIALIST, ("специалист", "specialist")),
)

FALLBACK_ROLE = SystemRole.GOVERNMENT_OFFICIAL


def normalize_title(title: str) -> str:
    return " ".join(title.lower().replace("ё", "е").split())


def determine_role(position_title: str, unit_type: str, unit_level: int) -> SystemRole:
    title = normalize_title(position_title)
    for rule in TITLE_RULES:
        if rule.matches(title, unit_type, unit_level):
            return rule.role
    return FALLBACK_ROLE


def get_role_permissions(role: SystemRole | str) -> RolePermissions:
    try:
        return ROLE_PERMISSIONS[SystemRole(role)]
    except ValueError:
        return ROLE_PERMISSIONS[FALLBACK_ROLE]


def resolve(snapshot: AppointmentSnapshot | None) -> tuple[SystemRole, RolePermissions]:
    if snapshot is None:
        return SystemRole.GUEST, ROLE_PERMISSIONS[SystemRole.GUEST]
    role = determine_role(snapshot.position_title, snapshot.unit_type, snapshot.unit_level)
    permissions = ROLE_PERMISSIONS[role]
    if permissions.has_wildcard_scope or snapshot.organization_unit_id is None:
        return role, permissions
    return role, permissions.model_copy(update={"organization_scope": (snapshot.organization_unit_id,)})
