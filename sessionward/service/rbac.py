from __future__ import annotations

from typing import Iterable, Optional, Set

from sessionward.storage.models import Principal, Role

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLE_MODERATOR = "moderator"
ROLE_GUEST = "guest"


def _role_set(principal: Optional[Principal]) -> Set[str]:
    if principal is None:
        return set()
    return set(principal.roles or ())


def has_role(principal: Optional[Principal], role: str) -> bool:
    return role in _role_set(principal)


def has_any_role(principal: Optional[Principal], roles: Iterable[str]) -> bool:
    return bool(_role_set(principal) & set(roles))


def has_all_roles(principal: Optional[Principal], roles: Iterable[str]) -> bool:
    if principal is None:
        return False
    return set(roles) <= _role_set(principal)


def effective_permissions(principal: Optional[Principal], roles: Iterable[Role]) -> Set[str]:
    """Union of permissions granted by the principal's roles.

    Names on the principal that match no live role are ignored.
    """
    names = _role_set(principal)
    permissions: Set[str] = set()
    for role in roles:
        if role.name in names:
            permissions.update(role.permissions)
    return permissions
