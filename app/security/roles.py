from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping


class Role(str, Enum):
    """Supported roles, highest privilege first."""

    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    AGENT = "AGENT"
    USER = "USER"
    READ_ONLY = "READ_ONLY"
    CUSTOM = "CUSTOM"

    @property
    def rank(self) -> int:
        return ROLE_RANKS[self]

    def at_least(self, other: Role) -> bool:
        return self.rank >= other.rank


ROLE_RANKS: Mapping[Role, int] = {
    Role.SUPER_ADMIN: 60,
    Role.ADMIN: 50,
    Role.MANAGER: 40,
    Role.AGENT: 30,
    Role.USER: 20,
    Role.READ_ONLY: 10,
    Role.CUSTOM: 0,
}

ADMIN_ROLES = frozenset({Role.SUPER_ADMIN, Role.ADMIN})


@dataclass(frozen=True, slots=True)
class Actor:
    """Already authenticated user on whose behalf an operation runs."""

    id: str
    role: Role
    department: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def has_role(self, role: Role) -> bool:
        return self.role.at_least(role)
