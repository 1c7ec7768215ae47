import pytest

from tenantcore.config import ExtraRole, Settings
from tenantcore.errors import InvalidRole
from tenantcore.security.rbac import ADMIN, MEMBER, OWNER, VIEWER, RoleRegistry


@pytest.fixture
def registry():
    return RoleRegistry()


def test_builtin_roles_ordered_highest_first(registry):
    assert registry.roles == (OWNER, ADMIN, MEMBER, VIEWER)


def test_permissions_are_cumulative_up_the_hierarchy(registry):
    viewer = registry.permissions_for(VIEWER)
    member = registry.permissions_for(MEMBER)
    admin = registry.permissions_for(ADMIN)
    owner = registry.permissions_for(OWNER)
    assert viewer == {"content.read"}
    assert viewer < member < admin < owner
    assert "billing.manage" in owner and "billing.manage" not in admin
    assert "member.invite" in admin and "member.invite" not in member


def test_unknown_role_raises_invalid_role(registry):
    with pytest.raises(InvalidRole):
        registry.permissions_for("superuser")
    with pytest.raises(InvalidRole):
        registry.rank("superuser")


def test_outranks_is_strict(registry):
    assert registry.outranks(OWNER, ADMIN)
    assert registry.outranks(MEMBER, VIEWER)
    assert not registry.outranks(ADMIN, ADMIN)
    assert not registry.outranks(VIEWER, OWNER)
    assert registry.highest([VIEWER, ADMIN, MEMBER]) == ADMIN


def test_permission_sets_cannot_be_mutated(registry):
    with pytest.raises(AttributeError):
        registry.permissions_for(OWNER).add("anything")
    with pytest.raises(TypeError):
        registry._table["hacker"] = (99, frozenset())


def test_extra_roles_from_settings():
    settings = Settings(extra_roles={"billing_admin": ExtraRole(rank=25, permissions=["billing.manage"])})
    registry = RoleRegistry.from_settings(settings)
    assert registry.permissions_for("billing_admin") == {"billing.manage"}
    assert registry.outranks("billing_admin", MEMBER)
    assert registry.outranks(ADMIN, "billing_admin")


def test_extra_role_sharing_a_rank_is_rejected():
    settings = Settings(extra_roles={"auditor": ExtraRole(rank=20, permissions=["content.read"])})
    with pytest.raises(InvalidRole):
        RoleRegistry.from_settings(settings)


def test_extra_role_above_owner_is_rejected():
    settings = Settings(extra_roles={"root": ExtraRole(rank=99, permissions=[])})
    with pytest.raises(InvalidRole):
        RoleRegistry.from_settings(settings)
