"""
Role-based permissions for CallHub rooms.

A room has exactly two roles. The admin role belongs to whichever
participant is currently bound as the room's admin; everyone else
holds the user role.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Flag, auto
from typing import TYPE_CHECKING

from .errors import Unauthorized
from .protocol import ParticipantRole

if TYPE_CHECKING:
    from .room import Room


class Permission(Flag):
    """
    Permission flags that can be combined.

    Example:
        user_perms = Permission.CHAT | Permission.SIGNAL
    """
    NONE = 0
    CHAT = auto()                  # Can send chat messages
    SIGNAL = auto()                # Can signal on user-side channels
    SIGNAL_PEER = auto()           # Can signal a chosen participant directly
    BROADCAST_MEDIA = auto()       # Can broadcast camera / screen offers
    CONTROL_MIC = auto()           # Can set own and others' mic flags
    REQUEST_SCREEN_SHARE = auto()  # Can ask users to share their screen


USER_PERMISSIONS = Permission.CHAT | Permission.SIGNAL

ADMIN_PERMISSIONS = (
    Permission.CHAT
    | Permission.SIGNAL
    | Permission.SIGNAL_PEER
    | Permission.BROADCAST_MEDIA
    | Permission.CONTROL_MIC
    | Permission.REQUEST_SCREEN_SHARE
)


@dataclass
class Role:
    """
    A named role with associated permissions.

    Example:
        admin = Role(
            name=ParticipantRole.ADMIN,
            permissions=ADMIN_PERMISSIONS,
            description="Bound admin of the room",
        )
    """
    name: ParticipantRole
    permissions: Permission
    description: str = ""

    def has_permission(self, permission: Permission) -> bool:
        """Check if this role has every flag in ``permission``."""
        return (self.permissions & permission) == permission


ROLES = {
    ParticipantRole.USER: Role(
        name=ParticipantRole.USER,
        permissions=USER_PERMISSIONS,
        description="Can chat and signal the admin",
    ),
    ParticipantRole.ADMIN: Role(
        name=ParticipantRole.ADMIN,
        permissions=ADMIN_PERMISSIONS,
        description="Controls mics, screen share and media broadcasts",
    ),
}


def effective_role(room: Room, participant_id: str) -> Role:
    """
    Resolve the role a participant currently holds in a room.

    Admin rights follow the room's admin binding, not the role string
    a client sent at join time.
    """
    if room.admin_id is not None and room.admin_id == participant_id:
        return ROLES[ParticipantRole.ADMIN]
    return ROLES[ParticipantRole.USER]


def check(room: Room, participant_id: str, permission: Permission) -> bool:
    """Check if a participant holds a permission in a room."""
    return effective_role(room, participant_id).has_permission(permission)


def require(room: Room, participant_id: str, permission: Permission) -> None:
    """
    Ensure a participant holds a permission in a room.

    Raises:
        Unauthorized: If the permission is missing.
    """
    if not check(room, participant_id, permission):
        raise Unauthorized(f"Permission denied: {permission.name.lower()}")


__all__ = [
    "Permission",
    "Role",
    "ROLES",
    "USER_PERMISSIONS",
    "ADMIN_PERMISSIONS",
    "effective_role",
    "check",
    "require",
]
