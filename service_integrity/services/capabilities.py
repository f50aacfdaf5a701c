"""
Roles, capabilities and the single role -> capability matrix.

Every authorization decision in the package goes through `role_allows` or
`PermissionRegistry.allows`; call sites never compare role strings.
"""
import enum
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional


class Role(str, enum.Enum):
    ADMIN = "admin"
    TECHNICIAN = "technician"
    BUSINESS_PARTNER = "business_partner"
    CUSTOMER = "customer"


class Capability(str, enum.Enum):
    # Overridable per user (see UserPermission flags)
    DELETE_SERVICES = "delete_services"
    DELETE_CLIENTS = "delete_clients"
    DELETE_APPLIANCES = "delete_appliances"
    VIEW_ALL_SERVICES = "view_all_services"
    MANAGE_USERS = "manage_users"
    # Role-only
    CREATE_SERVICE = "create_service"
    EDIT_SERVICE = "edit_service"
    CHANGE_STATUS = "change_status"
    ASSIGN_TECHNICIAN = "assign_technician"
    RESTORE_SERVICES = "restore_services"
    HARD_DELETE_SERVICES = "hard_delete_services"
    VIEW_AUDIT_LOG = "view_audit_log"
    VIEW_SECURITY_REPORT = "view_security_report"


# UserPermission column -> capability it overrides
PERMISSION_FLAGS: Dict[str, Capability] = {
    "can_delete_services": Capability.DELETE_SERVICES,
    "can_delete_clients": Capability.DELETE_CLIENTS,
    "can_delete_appliances": Capability.DELETE_APPLIANCES,
    "can_view_all_services": Capability.VIEW_ALL_SERVICES,
    "can_manage_users": Capability.MANAGE_USERS,
}


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.ADMIN: frozenset(Capability),
    Role.TECHNICIAN: frozenset({
        Capability.EDIT_SERVICE,
        Capability.CHANGE_STATUS,
    }),
    Role.BUSINESS_PARTNER: frozenset({
        Capability.CREATE_SERVICE,
        Capability.EDIT_SERVICE,
    }),
    Role.CUSTOMER: frozenset(),
}


def parse_role(value) -> Role:
    """Unknown role strings collapse to the least privileged role."""
    try:
        return Role(value)
    except ValueError:
        return Role.CUSTOMER


def role_allows(role: Role, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


def default_permission_flags(role: Role) -> Dict[str, bool]:
    return {flag: role_allows(role, cap) for flag, cap in PERMISSION_FLAGS.items()}


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, resolved once at the HTTP boundary."""
    user_id: int
    username: str
    role: Role
    technician_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
