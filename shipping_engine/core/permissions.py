"""
Role-based permissions for the shipping engine.

Permissions are a closed enum rather than free-form strings, and every role
maps to an explicit frozen set. Authentication happens upstream; the engine
only receives an Actor describing who is calling.
"""
import enum
from dataclasses import dataclass
from typing import Dict, FrozenSet

from shipping_engine.core.exceptions import PermissionDeniedError


class Permission(str, enum.Enum):
    RATES_QUOTE = "rates:quote"
    RATES_READ = "rates:read"
    SHIPMENTS_CREATE = "shipments:create"
    SHIPMENTS_CANCEL = "shipments:cancel"
    SHIPMENTS_TRACK = "shipments:track"
    CARRIERS_READ = "carriers:read"


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    SUPPORT = "support"
    ADMIN = "admin"


ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.CUSTOMER: frozenset(Permission),
    Role.SUPPORT: frozenset({
        Permission.RATES_READ,
        Permission.SHIPMENTS_TRACK,
        Permission.SHIPMENTS_CANCEL,
        Permission.CARRIERS_READ,
    }),
    Role.ADMIN: frozenset(Permission),
}

# Every role must be mapped; a new Role without an entry fails at import.
_missing = set(Role) - set(ROLE_PERMISSIONS)
if _missing:
    raise RuntimeError(f"Roles without permission mapping: {sorted(r.value for r in _missing)}")


@dataclass(frozen=True)
class Actor:
    """The authenticated caller. user_id scopes every owned record."""
    user_id: str
    role: Role = Role.CUSTOMER

    @property
    def is_staff(self) -> bool:
        """Support and admin act on any owner's records."""
        return self.role in (Role.SUPPORT, Role.ADMIN)

    def has(self, permission: Permission) -> bool:
        return permission in ROLE_PERMISSIONS[self.role]

    def require(self, permission: Permission) -> None:
        if not self.has(permission):
            raise PermissionDeniedError(
                message=f"Role '{self.role.value}' lacks permission '{permission.value}'",
                details={"user_id": self.user_id, "permission": permission.value},
            )
