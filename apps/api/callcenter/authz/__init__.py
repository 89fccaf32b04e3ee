from callcenter.authz.models import Role, RolePermission, User

__all__ = [
    "Role",
    "RolePermission",
    "User",
]
