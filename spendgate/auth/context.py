"""
RequestContext — who is asking and what they can do.

Every authenticated API request gets a RequestContext built from the JWT in
deps.py. Routes scope reads to `ctx.user_id`; callers holding
admin:system may name another user explicitly via `subject_user`.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from fastapi import HTTPException

from spendgate.auth.permissions import Permission
from spendgate.auth.roles import Role


@dataclass
class RequestContext:
    user_id: str = "anonymous"
    role: Role = Role.USER
    permissions: set[Permission] = field(default_factory=set)

    def has_permission(self, perm: Permission) -> bool:
        return perm in self.permissions

    def require_permission(self, perm: Permission) -> None:
        """Raise 403 if the caller lacks the given permission."""
        if not self.has_permission(perm):
            raise HTTPException(
                status_code=403,
                detail=f"Insufficient permissions: requires {perm.value}",
            )

    def require_any(self, *perms: Permission) -> None:
        """Raise 403 if the caller lacks ALL of the given permissions."""
        if not any(self.has_permission(p) for p in perms):
            needed = ", ".join(p.value for p in perms)
            raise HTTPException(
                status_code=403,
                detail=f"Insufficient permissions: requires one of [{needed}]",
            )

    def subject_user(self, requested: str | None) -> str:
        """The user a request acts on: self, or `requested` for cross-user callers."""
        if not requested or requested == self.user_id:
            return self.user_id
        self.require_permission(Permission.ADMIN_SYSTEM)
        return requested

    @property
    def is_cross_user(self) -> bool:
        return self.has_permission(Permission.ADMIN_SYSTEM)

    @property
    def actor(self) -> str:
        """Identity string for logging."""
        return f"{self.role.value}:{self.user_id}"
