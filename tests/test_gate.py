from unittest.mock import patch

import pytest

from tenantcore.errors import PermissionDenied

ALL_ACTIONS = [
    "content.read", "content.write", "member.invite", "member.remove", "member.update_role",
    "team.create", "team.delete", "activity.read", "organization.update", "organization.delete",
    "billing.manage",
]


def test_non_member_is_denied_everything(services, acme):
    org, team = acme
    for action in ALL_ACTIONS:
        assert not services.gate.can("stranger", org.id, action)
        assert not services.gate.can("stranger", org.id, action, team_id=team.id)


def test_owner_is_allowed_everything(services, acme):
    org, _ = acme
    assert all(services.gate.can("u1", org.id, action) for action in ALL_ACTIONS)


def test_role_permissions(services, acme):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "v", "viewer")
    services.memberships.add_member(org.id, team.id, "m", "member")
    services.memberships.add_member(org.id, team.id, "a", "admin")

    assert services.gate.can("v", org.id, "content.read")
    assert not services.gate.can("v", org.id, "content.write")
    assert services.gate.can("m", org.id, "content.write")
    assert not services.gate.can("m", org.id, "member.invite")
    assert services.gate.can("a", org.id, "member.invite")
    assert not services.gate.can("a", org.id, "billing.manage")
    assert not services.gate.can("a", org.id, "organization.delete")


def test_unknown_action_is_denied(services, acme):
    org, _ = acme
    assert not services.gate.can("u1", org.id, "rockets.launch")


def test_membership_in_one_organization_grants_nothing_in_another(services, acme):
    org, _ = acme
    other = services.organizations.create_organization("x1", "Other Co")
    assert not services.gate.can("u1", other.id, "content.read")
    assert not services.gate.can("x1", org.id, "content.read")


def test_team_scoped_checks(services, acme):
    org, team = acme
    second = services.organizations.create_team(org.id, "Design", acting_user_id="u1")
    services.memberships.add_member(org.id, team.id, "u2", "viewer")
    services.memberships.add_member(org.id, second.id, "u2", "admin")

    assert services.gate.role_in("u2", org.id) == "admin"
    assert services.gate.role_in("u2", org.id, team.id) == "viewer"
    assert services.gate.can("u2", org.id, "content.write", team_id=second.id)
    assert not services.gate.can("u2", org.id, "content.write", team_id=team.id)
    assert services.gate.role_in("nobody", org.id) is None


def test_authorize_raises(services, acme):
    org, _ = acme
    services.gate.authorize("u1", org.id, "team.create")
    with pytest.raises(PermissionDenied) as excinfo:
        services.gate.authorize("stranger", org.id, "content.read")
    assert excinfo.value.to_dict()["error"] == "permission_denied"
    assert excinfo.value.context["action"] == "content.read"


def test_billing_gated_actions_follow_subscription(services, acme, clock):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "u2", "member")
    assert services.gate.can("u2", org.id, "content.write")

    # trial has lapsed but nothing has swept it yet
    clock.advance(days=14)
    assert not services.gate.can("u2", org.id, "content.write")
    assert not services.gate.can("u1", org.id, "member.invite")
    assert services.gate.can("u2", org.id, "content.read")
    assert services.gate.can("u1", org.id, "billing.manage")


def test_failure_to_resolve_denies(services, acme):
    org, _ = acme
    with patch.object(services.gate, "_resolve_role", side_effect=RuntimeError("db down")):
        assert not services.gate.can("u1", org.id, "content.read")
    with patch.object(services.gate, "_subscription_status", side_effect=RuntimeError("db down")):
        assert not services.gate.can("u1", org.id, "content.write")
        # actions that are not billing gated never look at the subscription
        assert services.gate.can("u1", org.id, "content.read")


def test_missing_arguments_deny(services, acme):
    org, _ = acme
    assert not services.gate.can(None, org.id, "content.read")
    assert not services.gate.can("u1", "", "content.read")
    assert not services.gate.can("u1", "no-such-org", "content.read")


def test_organization_actions_follow_the_default_team(services, acme):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "a1", "admin")
    side = services.organizations.create_team(org.id, "Side", acting_user_id="a1")
    assert services.memberships.role_of(org.id, side.id, "a1") == "owner"

    for action in ("organization.update", "organization.delete", "billing.manage"):
        assert not services.gate.can("a1", org.id, action)
        # naming the team they own does not help
        assert not services.gate.can("a1", org.id, action, team_id=side.id)
        assert services.gate.can("u1", org.id, action, team_id=side.id)
    # team-scoped ownership still counts for the team itself
    assert services.gate.can("a1", org.id, "team.delete", team_id=side.id)
