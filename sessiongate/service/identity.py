from __future__ import annotations

from typing import Dict, Optional, Protocol

from sessiongate.storage.models import Identity, Role


class IdentityStore(Protocol):
    """System-of-record lookup for every identity variant."""

    def get_identity(self, role: Role, identity_id: str) -> Optional[Identity]: ...

    def authenticate(self, username: str, password: str) -> Optional[Identity]: ...


# Higher rank includes every capability of the lower ranks
ROLE_RANK: Dict[Role, int] = {
    Role.SUPER_ADMIN: 3,
    Role.ADMIN: 2,
    Role.STAFF: 1,
    Role.USER: 0,
}

# Roles that hold every capability without an explicit grant
_UNRESTRICTED_ROLES = frozenset({Role.SUPER_ADMIN, Role.ADMIN})


def role_allows(role: Role, required: Role) -> bool:
    return ROLE_RANK[Role(role)] >= ROLE_RANK[Role(required)]


def has_permission(identity: Identity, capability: str) -> bool:
    if identity.role in _UNRESTRICTED_ROLES:
        return True
    return capability in identity.permissions


def identity_claims(identity: Identity) -> dict:
    """Claim base shared by the access and refresh tokens of one session."""
    return {
        "sub": identity.id,
        "name": identity.name,
        "username": identity.username,
        "email": identity.email,
        "role": identity.role.value,
        "permissions": sorted(identity.permissions),
    }
