"""
Role registry: the closed set of roles, their ranks and permission tokens.
"""
import inspect
from functools import wraps
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Tuple

from ..errors import InvalidRole

OWNER = "owner"
ADMIN = "admin"
MEMBER = "member"
VIEWER = "viewer"

_VIEWER_PERMISSIONS = frozenset({"content.read"})
_MEMBER_PERMISSIONS = _VIEWER_PERMISSIONS | {"content.write"}
_ADMIN_PERMISSIONS = _MEMBER_PERMISSIONS | {
    "member.invite", "member.remove", "member.update_role", "team.create", "activity.read",
}
_OWNER_PERMISSIONS = _ADMIN_PERMISSIONS | {
    "team.delete", "organization.update", "organization.delete", "billing.manage",
}

# governed by the role in the organization's default team, whatever team is named
ORGANIZATION_ACTIONS = frozenset({"organization.update", "organization.delete", "billing.manage"})

# role -> (rank, permissions); higher rank outranks lower
BUILTIN_ROLES = {
    OWNER: (40, _OWNER_PERMISSIONS),
    ADMIN: (30, _ADMIN_PERMISSIONS),
    MEMBER: (20, _MEMBER_PERMISSIONS),
    VIEWER: (10, _VIEWER_PERMISSIONS),
}


class RoleRegistry:
    """Immutable after construction. Build once per process from settings."""

    def __init__(self, roles: Mapping[str, Tuple[int, Iterable[str]]] = None):
        roles = dict(BUILTIN_ROLES if roles is None else roles)
        if OWNER not in roles:
            raise InvalidRole("Role table must define the owner role", role=OWNER)
        ranks: Dict[int, str] = {}
        table = {}
        for name, (rank, permissions) in roles.items():
            if rank in ranks:
                raise InvalidRole(
                    f"Roles {ranks[rank]!r} and {name!r} share rank {rank}", role=name
                )
            ranks[rank] = name
            table[name] = (int(rank), frozenset(permissions))
        if max(ranks) != table[OWNER][0]:
            raise InvalidRole("The owner role must hold the highest rank", role=OWNER)
        self._table = MappingProxyType(table)
        self._ordered = tuple(sorted(table, key=lambda r: table[r][0], reverse=True))

    @classmethod
    def from_settings(cls, settings) -> "RoleRegistry":
        roles = dict(BUILTIN_ROLES)
        for name, extra in settings.extra_roles.items():
            roles[name] = (extra.rank, extra.permissions)
        return cls(roles)

    @property
    def roles(self) -> Tuple[str, ...]:
        """Role names, highest rank first."""
        return self._ordered

    def validate(self, role: str) -> str:
        if role not in self._table:
            raise InvalidRole(f"Unknown role {role!r}", role=role)
        return role

    def permissions_for(self, role: str) -> FrozenSet[str]:
        return self._table[self.validate(role)][1]

    def rank(self, role: str) -> int:
        return self._table[self.validate(role)][0]

    def outranks(self, role: str, other: str) -> bool:
        return self.rank(role) > self.rank(other)

    def highest(self, roles: Iterable[str]) -> str:
        roles = list(roles)
        if not roles:
            raise InvalidRole("No roles given")
        return max(roles, key=self.rank)

    def is_owner(self, role: str) -> bool:
        return role == OWNER


def require_permission(action: str):
    """
    Guard a service method with the authorization gate.

    The method's owner must expose ``self.gate``; calls with
    ``acting_user_id=None`` are internal and are not checked.
    """
    def decorator(func):
        signature = inspect.signature(func)

        @wraps(func)
        def wrapper(self, *args, **kwargs):
            bound = signature.bind(self, *args, **kwargs)
            bound.apply_defaults()
            acting_user_id = bound.arguments.get("acting_user_id")
            if acting_user_id is not None:
                self.gate.authorize(
                    acting_user_id,
                    bound.arguments["organization_id"],
                    action,
                    team_id=bound.arguments.get("team_id"),
                )
            return func(self, *args, **kwargs)
        return wrapper
    return decorator
