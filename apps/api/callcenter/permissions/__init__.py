from callcenter.permissions.registry import PermissionRegistry, permission_registry

__all__ = ["PermissionRegistry", "permission_registry"]
