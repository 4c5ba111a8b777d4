from __future__ import annotations

from typing import Any, Callable, Iterable, List, Optional, Set, TypeVar

from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.service.concurrency import run_blocking
from sessionward.service.errors import (
    AccessDeniedError,
    RoleNameInUseError,
    RoleNotFoundError,
    UserNotFoundError,
)
from sessionward.service.rbac import ROLE_ADMIN, effective_permissions, has_role
from sessionward.storage.base import SessionStore
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import Principal, Role

logger = get_logger(__name__)

T = TypeVar("T")


async def load_admin(store: SessionStore, caller_id: str, *, timeout: float) -> Principal:
    """Re-read the caller from storage and require an active admin."""

    caller = await run_blocking(
        store.get_principal_by_id, caller_id, timeout=timeout, operation="get_principal"
    )
    if caller is None or not caller.is_active or not has_role(caller, ROLE_ADMIN):
        logger.warning("admin_required", caller_id=caller_id)
        raise AccessDeniedError()
    return caller


class RoleAdminService:
    """Admin-only role management and role assignment."""

    def __init__(self, store: SessionStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    async def _store(self, func: Callable[..., T], *args: Any, operation: str, **kwargs: Any) -> T:
        return await run_blocking(
            func, *args, timeout=self.settings.storage_timeout_seconds, operation=operation, **kwargs
        )

    async def _require_admin(self, caller_id: str) -> Principal:
        return await load_admin(
            self.store, caller_id, timeout=self.settings.storage_timeout_seconds
        )

    async def create_role(
        self, caller_id: str, name: str, permissions: Iterable[str] = ()
    ) -> Role:
        await self._require_admin(caller_id)
        try:
            role = await self._store(
                self.store.create_role, name, list(permissions), operation="create_role"
            )
        except ConstraintViolation as exc:
            raise RoleNameInUseError() from exc
        self.logger.info("role_created", caller_id=caller_id, role_id=role.id, role_name=name)
        return role

    async def update_role(
        self,
        caller_id: str,
        role_id: str,
        *,
        name: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
    ) -> Role:
        await self._require_admin(caller_id)
        try:
            role = await self._store(
                self.store.update_role,
                role_id,
                name=name,
                permissions=list(permissions) if permissions is not None else None,
                operation="update_role",
            )
        except ConstraintViolation as exc:
            raise RoleNameInUseError() from exc
        if role is None:
            raise RoleNotFoundError()
        self.logger.info("role_updated", caller_id=caller_id, role_id=role_id)
        return role

    async def delete_role(self, caller_id: str, role_id: str) -> None:
        await self._require_admin(caller_id)
        deleted = await self._store(self.store.delete_role, role_id, operation="delete_role")
        if not deleted:
            raise RoleNotFoundError()
        # Principals keep the name; it simply stops matching a live role
        self.logger.info("role_deleted", caller_id=caller_id, role_id=role_id)

    async def get_role(self, caller_id: str, role_id: str) -> Role:
        await self._require_admin(caller_id)
        role = await self._store(self.store.get_role, role_id, operation="get_role")
        if role is None:
            raise RoleNotFoundError()
        return role

    async def list_roles(self, caller_id: str) -> List[Role]:
        await self._require_admin(caller_id)
        return await self._store(self.store.list_roles, operation="list_roles")

    async def _load_target(self, caller: Principal, principal_id: str) -> Principal:
        if caller.id == principal_id:
            self.logger.warning("role_self_modification_denied", caller_id=caller.id)
            raise AccessDeniedError("Cannot change your own roles")
        target = await self._store(
            self.store.get_principal_by_id, principal_id, operation="get_principal"
        )
        if target is None:
            raise UserNotFoundError()
        return target

    async def assign_role(self, caller_id: str, principal_id: str, role_name: str) -> Principal:
        caller = await self._require_admin(caller_id)
        target = await self._load_target(caller, principal_id)
        role = await self._store(self.store.get_role_by_name, role_name, operation="get_role")
        if role is None:
            raise RoleNotFoundError()
        if role_name in target.roles:
            return target
        updated = await self._store(
            self.store.update_principal,
            principal_id,
            roles=[*target.roles, role_name],
            operation="update_principal",
        )
        if updated is None:
            raise UserNotFoundError()
        self.logger.info(
            "role_assigned", caller_id=caller_id, principal_id=principal_id, role_name=role_name
        )
        return updated

    async def remove_role(self, caller_id: str, principal_id: str, role_name: str) -> Principal:
        caller = await self._require_admin(caller_id)
        target = await self._load_target(caller, principal_id)
        if role_name not in target.roles:
            return target
        updated = await self._store(
            self.store.update_principal,
            principal_id,
            roles=[r for r in target.roles if r != role_name],
            operation="update_principal",
        )
        if updated is None:
            raise UserNotFoundError()
        self.logger.info(
            "role_removed", caller_id=caller_id, principal_id=principal_id, role_name=role_name
        )
        return updated

    async def get_principal_roles(self, caller_id: str, principal_id: str) -> List[Role]:
        """Live roles held by ``principal_id``; dangling names are skipped."""
        await self._require_admin(caller_id)
        target = await self._store(
            self.store.get_principal_by_id, principal_id, operation="get_principal"
        )
        if target is None:
            raise UserNotFoundError()
        roles = await self._store(self.store.list_roles, operation="list_roles")
        return [role for role in roles if role.name in target.roles]

    async def effective_permissions(self, caller_id: str, principal_id: str) -> Set[str]:
        if caller_id != principal_id:
            await self._require_admin(caller_id)
        target = await self._store(
            self.store.get_principal_by_id, principal_id, operation="get_principal"
        )
        if target is None:
            raise UserNotFoundError()
        roles = await self._store(self.store.list_roles, operation="list_roles")
        return effective_permissions(target, roles)
