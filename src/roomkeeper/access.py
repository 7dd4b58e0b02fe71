"""Role-based access control for !commands."""

import enum
from dataclasses import dataclass, field


class Role(enum.Enum):
    """Minimum role a command requires."""
    PUBLIC = "public"
    MOD = "mod"        # moderators or admins
    ADMIN = "admin"    # admins only


@dataclass(frozen=True)
class AccessControlList:
    """Snapshot of the configured admins and moderators.

    Admins may also be listed as mods; admin membership always implies
    mod-level access.
    """
    admins: frozenset[str] = field(default_factory=frozenset)
    mods: frozenset[str] = field(default_factory=frozenset)

    def is_admin(self, user_id: str) -> bool:
        return user_id in self.admins

    def is_mod(self, user_id: str) -> bool:
        return user_id in self.admins or user_id in self.mods


def is_authorized(acl: AccessControlList, user_id: str, role: Role) -> bool:
    """Return True if user_id may run a command requiring role."""
    if role is Role.PUBLIC:
        return True
    if role is Role.MOD:
        return acl.is_mod(user_id)
    return acl.is_admin(user_id)
