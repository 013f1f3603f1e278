from __future__ import annotations

from app.domain.roles import RolePermissions, SystemRole, get_role_permissions

PERM_WILDCARD = "*"
PERM_HIERARCHY_READ = "hierarchy.read"
PERM_STRUCTURE_WRITE = "hierarchy.structure.write"
PERM_POSITION_WRITE = "hierarchy.position.write"
PERM_APPOINTMENT_WRITE = "hierarchy.appointment.write"
PERM_CHANNEL_MANAGE = "hierarchy.channel.manage"
PERM_IDENTITY_READ = "identity.read"
PERM_IDENTITY_WRITE = "identity.write"


def permission_names_for(permissions: RolePermissions) -> list[str]:
    if permissions.can_manage_system:
        return [PERM_WILDCARD]
    names: list[str] = []
    if permissions.can_access_levels:
        names.extend([PERM_HIERARCHY_READ, PERM_IDENTITY_READ])
    if permissions.can_manage_users:
        names.extend([PERM_STRUCTURE_WRITE, PERM_POSITION_WRITE, PERM_IDENTITY_WRITE])
    if permissions.can_manage_users or (permissions.can_manage_subordinates and permissions.has_wildcard_scope):
        names.append(PERM_APPOINTMENT_WRITE)
    if permissions.can_create_channels:
        names.append(PERM_CHANNEL_MANAGE)
    return names


def permission_names_for_role(role: SystemRole | str) -> list[str]:
    return permission_names_for(get_role_permissions(role))


def has_permission(granted: list[str], permission: str) -> bool:
    return permission in granted or PERM_WILDCARD in granted
