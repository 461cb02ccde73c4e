"""
Role definitions — which bundles of permissions make up each role.

    USER      acts on their own approvals and signing requests
    OPERATOR  read-only across all users (support, incident review)
    SYSTEM    internal services (planner, worker) acting on behalf of users
"""

from enum import Enum
from spendgate.auth.permissions import Permission


class Role(str, Enum):
    USER = "user"
    OPERATOR = "operator"
    SYSTEM = "system"


# ── User: everything on their own resources ──
_USER_PERMS: set[Permission] = {
    Permission.APPROVALS_READ,
    Permission.APPROVALS_ACT,
    Permission.SIGNING_READ,
    Permission.SIGNING_ACT,
    Permission.AUDIT_READ,
}

# ── Operator: read across users, no actions ──
_OPERATOR_PERMS: set[Permission] = {
    Permission.APPROVALS_READ,
    Permission.SIGNING_READ,
    Permission.AUDIT_READ,
    Permission.ADMIN_SYSTEM,
}

# ── System: everything ──
_SYSTEM_PERMS: set[Permission] = {p for p in Permission}


ROLE_PERMISSIONS: dict[Role, set[Permission]] = {
    Role.USER: _USER_PERMS,
    Role.OPERATOR: _OPERATOR_PERMS,
    Role.SYSTEM: _SYSTEM_PERMS,
}
