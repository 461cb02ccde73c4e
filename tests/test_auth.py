"""Tests for JWT handling, role permissions and RequestContext scoping."""

import pytest
from fastapi import HTTPException
from jose import JWTError, jwt

from spendgate.auth import Permission, RequestContext, Role, ROLE_PERMISSIONS
from spendgate.auth.jwt import ALGORITHM, create_access_token, decode_access_token
from spendgate.config import settings


class TestJWT:
    def test_round_trip_claims(self):
        claims = decode_access_token(create_access_token("user-9", "operator"))
        assert claims["sub"] == "user-9"
        assert claims["role"] == "operator"
        assert claims["type"] == "access"

    def test_wrong_token_type_rejected(self):
        token = jwt.encode({"sub": "user-9", "type": "refresh"}, settings.secret_key, algorithm=ALGORITHM)
        with pytest.raises(JWTError):
            decode_access_token(token)

    def test_foreign_signature_rejected(self):
        token = jwt.encode({"sub": "user-9", "type": "access"}, "another-key", algorithm=ALGORITHM)
        with pytest.raises(JWTError):
            decode_access_token(token)


class TestRoles:
    def test_user_cannot_cross_users(self):
        assert Permission.ADMIN_SYSTEM not in ROLE_PERMISSIONS[Role.USER]

    def test_operator_is_read_only(self):
        perms = ROLE_PERMISSIONS[Role.OPERATOR]
        assert Permission.APPROVALS_ACT not in perms
        assert Permission.SIGNING_ACT not in perms
        assert Permission.AUDIT_READ in perms

    def test_system_has_everything(self):
        assert ROLE_PERMISSIONS[Role.SYSTEM] == set(Permission)


class TestRequestContext:
    def _ctx(self, role: Role) -> RequestContext:
        return RequestContext(user_id="user-1", role=role, permissions=ROLE_PERMISSIONS[role])

    def test_subject_defaults_to_caller(self):
        ctx = self._ctx(Role.USER)
        assert ctx.subject_user(None) == "user-1"
        assert ctx.subject_user("user-1") == "user-1"

    def test_plain_user_cannot_name_another(self):
        with pytest.raises(HTTPException) as exc:
            self._ctx(Role.USER).subject_user("user-2")
        assert exc.value.status_code == 403

    def test_operator_may_name_another(self):
        assert self._ctx(Role.OPERATOR).subject_user("user-2") == "user-2"

    def test_require_any(self):
        ctx = self._ctx(Role.OPERATOR)
        ctx.require_any(Permission.APPROVALS_ACT, Permission.APPROVALS_READ)
        with pytest.raises(HTTPException):
            ctx.require_any(Permission.APPROVALS_ACT, Permission.SIGNING_ACT)

    def test_actor_string(self):
        assert self._ctx(Role.SYSTEM).actor == "system:user-1"
