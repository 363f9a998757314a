from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

logger = logging.getLogger(__name__)


class Role(IntEnum):
    """Totally ordered role levels. Compare only through ``at_least``."""

    ANONYMOUS = 0
    USER = 1
    STAFF = 2
    ADMIN = 3

    @property
    def label(self) -> str:
        return self.name.lower()


ASSIGNABLE_ROLES = ("user", "staff", "admin")
TEAM_ROLES = ("staff", "admin")

_PERSISTED_ROLES = {role.label: role for role in (Role.USER, Role.STAFF, Role.ADMIN)}


@dataclass(frozen=True)
class Principal:
    id: Optional[str]
    role: Role
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.id is None


ANONYMOUS = Principal(id=None, role=Role.ANONYMOUS)


def parse_role(value: Optional[str]) -> Role:
    """Map a persisted role string onto ``Role``; unknown values degrade to USER."""
    role = _PERSISTED_ROLES.get((value or "").strip().lower())
    if role is None:
        logger.warning("Unknown persisted role %r; treating as user", value)
        return Role.USER
    return role


def at_least(principal: Principal, minimum: Role) -> bool:
    return principal.role >= minimum


def principal_for_user(user) -> Principal:
    return Principal(id=user.id, role=parse_role(user.role), email=user.email, name=user.name)
