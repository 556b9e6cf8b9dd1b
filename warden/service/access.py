from __future__ import annotations

import re
from typing import FrozenSet, List, Optional, Protocol, Set

from warden.logging import get_logger
from warden.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Permission, Role

logger = get_logger(__name__)

PERMISSION_NAME_RE = re.compile(r"^[a-z0-9_-]+:[a-z0-9_-]+$")
ROLE_NAME_RE = re.compile(r"^[a-z0-9_-]{1,64}$")

# Permissions that gate the management endpoints
MANAGEMENT_PERMISSIONS = (
    "roles:view",
    "roles:create",
    "roles:edit",
    "roles:delete",
    "permissions:view",
    "permissions:create",
    "permissions:edit",
    "permissions:delete",
    "users:view",
    "users:edit",
    "users:delete",
)


def _check_role_name(name: str) -> None:
    if not ROLE_NAME_RE.match(name):
        raise ValidationError("invalid role name", detail={"field": "name"})


def _check_permission_name(name: str) -> None:
    if not PERMISSION_NAME_RE.match(name):
        raise ValidationError(
            "permission names take the form resource:action", detail={"field": "name"}
        )


class AccessStore(Protocol):
    def create_role(self, name: str, description: Optional[str] = None) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def update_role(
        self, role_id: str, *, name: Optional[str] = None, description: Optional[str] = None
    ) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    def delete_roles(self, role_ids: List[str]) -> int: ...

    def sync_role_permissions(self, role_id: str, permission_ids: List[str]) -> None: ...

    def create_permission(self, name: str, description: Optional[str] = None) -> Permission: ...

    def get_permission(self, permission_id: str) -> Optional[Permission]: ...

    def get_permission_by_name(self, name: str) -> Optional[Permission]: ...

    def update_permission(
        self, permission_id: str, *, name: Optional[str] = None, description: Optional[str] = None
    ) -> Optional[Permission]: ...

    def delete_permission(self, permission_id: str) -> bool: ...

    def list_permissions(self) -> List[Permission]: ...

    def list_role_permissions(self, role_id: str) -> List[Permission]: ...

    def grant_permission(self, role_id: str, permission_id: str) -> None: ...

    def assign_role(self, user_id: str, role_id: str) -> None: ...

    def sync_user_roles(self, user_id: str, role_ids: List[str]) -> None: ...

    def revoke_role(self, user_id: str, role_id: str) -> bool: ...

    def list_user_roles(self, user_id: str) -> List[Role]: ...

    def list_user_permissions(self, user_id: str) -> Set[str]: ...


class AccessService:
    """Role-based permission aggregation and role/permission management."""

    def __init__(self, store: AccessStore) -> None:
        self.store = store

    async def get_effective_permissions(self, user_id: str) -> FrozenSet[str]:
        """Union of the permissions granted by every role the principal holds."""
        return frozenset(self.store.list_user_permissions(user_id))

    async def has_permission(self, user_id: str, permission: str) -> bool:
        return permission in await self.get_effective_permissions(user_id)

    async def require_permission(self, user_id: str, permission: str) -> None:
        if not await self.has_permission(user_id, permission):
            logger.info("permission_denied", user_id=user_id, permission=permission)
            raise ForbiddenError("insufficient permissions", detail={"required": permission})

    async def create_role(self, name: str, description: Optional[str] = None) -> Role:
        _check_role_name(name)
        try:
            role = self.store.create_role(name, description)
        except ConstraintViolation as exc:
            raise ConflictError("role already exists", detail=exc.detail)
        logger.info("role_created", role_id=role.id, role_name=name)
        return role

    async def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    async def get_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if role is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    async def update_role(
        self, role_id: str, *, name: Optional[str] = None, description: Optional[str] = None
    ) -> Role:
        if name is not None:
            _check_role_name(name)
        try:
            role = self.store.update_role(role_id, name=name, description=description)
        except ConstraintViolation as exc:
            raise ConflictError("role already exists", detail=exc.detail)
        if role is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        logger.info("role_updated", role_id=role_id)
        return role

    async def delete_role(self, role_id: str) -> None:
        """Delete a role; every principal holding it loses its permissions."""
        if not self.store.delete_role(role_id):
            raise NotFoundError("role not found", detail={"role_id": role_id})
        logger.info("role_deleted", role_id=role_id)

    async def delete_roles(self, role_ids: List[str]) -> int:
        deleted = self.store.delete_roles(role_ids)
        logger.info("roles_deleted", requested=len(role_ids), deleted=deleted)
        return deleted

    async def list_role_permissions(self, role_id: str) -> List[Permission]:
        await self.get_role(role_id)
        return self.store.list_role_permissions(role_id)

    async def sync_role_permissions(self, role_id: str, permission_ids: List[str]) -> List[Permission]:
        """Make ``permission_ids`` the role's complete grant set."""
        await self.get_role(role_id)
        try:
            self.store.sync_role_permissions(role_id, permission_ids)
        except ConstraintViolation as exc:
            raise NotFoundError("role or permission not found", detail=exc.detail)
        logger.info("role_permissions_synced", role_id=role_id, count=len(set(permission_ids)))
        return self.store.list_role_permissions(role_id)

    async def create_permission(self, name: str, description: Optional[str] = None) -> Permission:
        _check_permission_name(name)
        try:
            permission = self.store.create_permission(name, description)
        except ConstraintViolation as exc:
            raise ConflictError("permission already exists", detail=exc.detail)
        logger.info("permission_created", permission_id=permission.id, permission_name=name)
        return permission

    async def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    async def get_permission(self, permission_id: str) -> Permission:
        permission = self.store.get_permission(permission_id)
        if permission is None:
            raise NotFoundError("permission not found", detail={"permission_id": permission_id})
        return permission

    async def update_permission(
        self, permission_id: str, *, name: Optional[str] = None, description: Optional[str] = None
    ) -> Permission:
        if name is not None:
            _check_permission_name(name)
        try:
            permission = self.store.update_permission(
                permission_id, name=name, description=description
            )
        except ConstraintViolation as exc:
            raise ConflictError("permission already exists", detail=exc.detail)
        if permission is None:
            raise NotFoundError("permission not found", detail={"permission_id": permission_id})
        logger.info("permission_updated", permission_id=permission_id)
        return permission

    async def delete_permission(self, permission_id: str) -> None:
        if not self.store.delete_permission(permission_id):
            raise NotFoundError("permission not found", detail={"permission_id": permission_id})
        logger.info("permission_deleted", permission_id=permission_id)

    async def grant_permission(self, role_id: str, permission_id: str) -> None:
        try:
            self.store.grant_permission(role_id, permission_id)
        except ConstraintViolation as exc:
            raise NotFoundError("role or permission not found", detail=exc.detail)
        logger.info("permission_granted", role_id=role_id, permission_id=permission_id)

    async def assign_role(self, user_id: str, role_id: str) -> None:
        try:
            self.store.assign_role(user_id, role_id)
        except ConstraintViolation as exc:
            raise NotFoundError("user or role not found", detail=exc.detail)
        logger.info("role_assigned", user_id=user_id, role_id=role_id)

    async def sync_user_roles(self, user_id: str, role_ids: List[str]) -> List[Role]:
        """Make ``role_ids`` the principal's complete set of roles."""
        try:
            self.store.sync_user_roles(user_id, role_ids)
        except ConstraintViolation as exc:
            raise NotFoundError("user or role not found", detail=exc.detail)
        logger.info("user_roles_synced", user_id=user_id, count=len(set(role_ids)))
        return self.store.list_user_roles(user_id)

    async def revoke_role(self, user_id: str, role_id: str) -> None:
        if not self.store.revoke_role(user_id, role_id):
            raise NotFoundError(
                "role assignment not found", detail={"user_id": user_id, "role_id": role_id}
            )
        logger.info("role_revoked", user_id=user_id, role_id=role_id)

    async def list_user_roles(self, user_id: str) -> List[Role]:
        return self.store.list_user_roles(user_id)

    async def ensure_role_with_permissions(
        self, role_name: str, permission_names: tuple[str, ...] | list[str]
    ) -> Role:
        """Create ``role_name`` and its permissions if missing, then grant them all."""
        role = self.store.get_role_by_name(role_name)
        if role is None:
            role = await self.create_role(role_name)
        for name in permission_names:
            permission = self.store.get_permission_by_name(name)
            if permission is None:
                permission = await self.create_permission(name)
            self.store.grant_permission(role.id, permission.id)
        return role
