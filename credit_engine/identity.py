"""
Identity and privilege value.

Callers describe the acting user in many shapes (``rol_id``, ``role_id``,
``roleId``, ``rol``, ``role``, sometimes nested under ``user`` or
``usuario``). ``Actor.from_claims`` normalizes them once at the boundary and
the engines only ever see an ``Actor``.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Mapping, Optional

from .exceptions import PrivilegeError


class Role(IntEnum):
    """Privilege levels, lowest value is highest privilege"""
    SUPERADMIN = 0
    ADMIN = 1
    COLLECTOR = 2


_ROLE_KEYS = ("rol_id", "role_id", "roleId", "rolId", "rol", "role")
_USER_KEYS = ("user_id", "usuario_id", "userId", "id", "sub")
_NESTED_KEYS = ("user", "usuario")

_ROLE_NAMES = {
    "superadmin": Role.SUPERADMIN,
    "super_admin": Role.SUPERADMIN,
    "admin": Role.ADMIN,
    "administrador": Role.ADMIN,
    "collector": Role.COLLECTOR,
    "cobrador": Role.COLLECTOR,
}


def _parse_role(value: Any) -> Optional[Role]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Role):
        return value
    if isinstance(value, int):
        try:
            return Role(value)
        except ValueError:
            return None
    text = str(value).strip().lower()
    if text.isdigit():
        return _parse_role(int(text))
    return _ROLE_NAMES.get(text)


@dataclass(frozen=True)
class Actor:
    """Acting user and privilege level"""
    user_id: Optional[str] = None
    role: Optional[Role] = None

    @classmethod
    def from_claims(cls, claims: Optional[Mapping[str, Any]]) -> 'Actor':
        """Build an Actor from a claims/user mapping using the first alias present"""
        if not claims:
            return cls()

        sources = [claims]
        for key in _NESTED_KEYS:
            nested = claims.get(key)
            if isinstance(nested, Mapping):
                sources.append(nested)

        role = None
        user_id = None
        for source in sources:
            if role is None:
                for key in _ROLE_KEYS:
                    if source.get(key) is not None:
                        role = _parse_role(source[key])
                        break
            if user_id is None:
                for key in _USER_KEYS:
                    if source.get(key) is not None:
                        user_id = str(source[key])
                        break

        return cls(user_id=user_id, role=role)

    @property
    def is_superadmin(self) -> bool:
        return self.role == Role.SUPERADMIN

    @property
    def is_privileged(self) -> bool:
        return self.role in (Role.SUPERADMIN, Role.ADMIN)

    def require_superadmin(self, operation: str) -> None:
        if not self.is_superadmin:
            raise PrivilegeError(f"Only a superadmin may {operation}", user_id=self.user_id)

    def require_privileged(self, operation: str) -> None:
        if not self.is_privileged:
            raise PrivilegeError(f"Only an admin or superadmin may {operation}", user_id=self.user_id)


SYSTEM_ACTOR = Actor()
