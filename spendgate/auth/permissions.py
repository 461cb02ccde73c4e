"""
Permission constants — the exhaustive list of actions in the system.

Each permission follows the pattern `resource:action`. JWTs carry a role
claim, which maps to a set of these permissions via ROLE_PERMISSIONS.
"""

from enum import Enum


class Permission(str, Enum):
    # ── Approvals ──
    APPROVALS_READ = "approvals:read"
    APPROVALS_ACT = "approvals:act"              # create, approve, reject, cancel countdown

    # ── Signing ──
    SIGNING_READ = "signing:read"
    SIGNING_ACT = "signing:act"                  # record signer activity, policy checks

    # ── Audit ──
    AUDIT_READ = "audit:read"

    # ── Admin ──
    ADMIN_SYSTEM = "admin:system"                # act across users (operators, internal services)
