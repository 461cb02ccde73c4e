from spendgate.auth.permissions import Permission
from spendgate.auth.roles import Role, ROLE_PERMISSIONS
from spendgate.auth.context import RequestContext

__all__ = ["Permission", "Role", "ROLE_PERMISSIONS", "RequestContext"]
