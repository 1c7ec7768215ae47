from unittest.mock import patch

import pytest

from tenantcore.errors import (
    ConcurrentModification, DuplicateMembership, InvalidRole, LastOwnerViolation, NotAMember,
    PermissionDenied, TeamNotFound,
)
from tenantcore.multi_tenant.membership import MembershipStore, StaleTeam


def _roles(services, org, team):
    return [(m.user_id, m.role) for m in services.memberships.members_of(org.id, team.id)]


def test_members_listed_in_insertion_order(services, acme):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "u3", "viewer")
    services.memberships.add_member(org.id, team.id, "u2", "member")
    assert _roles(services, org, team) == [("u1", "owner"), ("u3", "viewer"), ("u2", "member")]


def test_add_member_rejects_duplicates_and_unknown_roles(services, acme):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "u2", "member")
    with pytest.raises(DuplicateMembership):
        services.memberships.add_member(org.id, team.id, "u2", "admin")
    with pytest.raises(InvalidRole):
        services.memberships.add_member(org.id, team.id, "u3", "superuser")
    assert services.memberships.role_of(org.id, team.id, "u2") == "member"


def test_role_of_non_member(services, acme):
    org, team = acme
    with pytest.raises(NotAMember):
        services.memberships.role_of(org.id, team.id, "nobody")


def test_sole_owner_cannot_be_removed_or_demoted(services, acme):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "u2", "admin")
    with pytest.raises(LastOwnerViolation):
        services.memberships.remove_member(org.id, team.id, "u1")
    with pytest.raises(LastOwnerViolation):
        services.memberships.change_role(org.id, team.id, "u1", "admin")
    assert services.memberships.owners_of(org.id, team.id) == ["u1"]


def test_owner_can_step_down_once_another_owner_exists(services, acme, notifier):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "u2", "member")
    services.memberships.change_role(org.id, team.id, "u2", "owner")
    services.memberships.change_role(org.id, team.id, "u1", "admin")
    assert services.memberships.owners_of(org.id, team.id) == ["u2"]
    assert notifier.role_changes == [("u2", team.id, "owner"), ("u1", team.id, "admin")]
    with pytest.raises(LastOwnerViolation):
        services.memberships.remove_member(org.id, team.id, "u2")


def test_unchanged_role_sends_no_notification(services, acme, notifier):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "u2", "member")
    services.memberships.change_role(org.id, team.id, "u2", "member")
    assert notifier.role_changes == []


def test_remove_member(services, acme):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "u2", "member")
    services.memberships.remove_member(org.id, team.id, "u2")
    assert _roles(services, org, team) == [("u1", "owner")]
    with pytest.raises(NotAMember):
        services.memberships.remove_member(org.id, team.id, "u2")


def test_team_of_another_organization_is_invisible(services, acme):
    org, team = acme
    other = services.organizations.create_organization("x1", "Other Co")
    other_team = services.organizations.teams_of(other.id)[0]
    with pytest.raises(TeamNotFound):
        services.memberships.members_of(org.id, other_team.id)
    with pytest.raises(TeamNotFound):
        services.memberships.add_member(org.id, other_team.id, "u2", "member")
    assert services.memberships.teams_for_user(org.id, "x1") == {}
    assert services.memberships.teams_for_user(other.id, "x1") == {other_team.id: "owner"}


def test_actor_needs_permission(services, acme):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "u2", "member")
    with pytest.raises(PermissionDenied):
        services.memberships.add_member(org.id, team.id, "u3", "viewer", acting_user_id="u2")
    with pytest.raises(PermissionDenied):
        services.memberships.add_member(org.id, team.id, "u3", "viewer", acting_user_id="stranger")


def test_actor_cannot_act_above_own_rank(services, acme):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "admin1", "admin")
    with pytest.raises(PermissionDenied):
        services.memberships.add_member(org.id, team.id, "u3", "owner", acting_user_id="admin1")
    with pytest.raises(PermissionDenied):
        services.memberships.remove_member(org.id, team.id, "u1", acting_user_id="admin1")
    with pytest.raises(PermissionDenied):
        services.memberships.change_role(org.id, team.id, "u1", "viewer", acting_user_id="admin1")

    services.memberships.add_member(org.id, team.id, "u3", "admin", acting_user_id="admin1")
    services.memberships.change_role(org.id, team.id, "u3", "member", acting_user_id="admin1")
    services.memberships.remove_member(org.id, team.id, "u3", acting_user_id="admin1")
    assert services.memberships.teams_for_user(org.id, "u3") == {}


def test_member_can_leave_without_remove_permission(services, acme):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "u2", "viewer")
    services.memberships.remove_member(org.id, team.id, "u2", acting_user_id="u2")
    with pytest.raises(LastOwnerViolation):
        services.memberships.remove_member(org.id, team.id, "u1", acting_user_id="u1")


def test_writes_bump_membership_version(services, acme, session_factory):
    from tenantcore.db import models

    org, team = acme
    db = session_factory()
    before = db.get(models.Team, team.id).membership_version
    db.close()
    services.memberships.add_member(org.id, team.id, "u2", "member")
    services.memberships.change_role(org.id, team.id, "u2", "admin")
    db = session_factory()
    assert db.get(models.Team, team.id).membership_version == before + 2
    db.close()


def test_lost_race_is_retried(services, acme):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "u2", "owner")
    original = MembershipStore._bump_version
    calls = []

    def flaky(db, team_row):
        calls.append(team_row.id)
        if len(calls) == 1:
            raise StaleTeam(team_row.id)
        return original(db, team_row)

    with patch.object(MembershipStore, "_bump_version", staticmethod(flaky)):
        services.memberships.change_role(org.id, team.id, "u1", "member")
    assert len(calls) == 2
    assert services.memberships.owners_of(org.id, team.id) == ["u2"]


def test_persistent_race_gives_up(services, acme):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "u2", "owner")

    def always_stale(db, team_row):
        raise StaleTeam(team_row.id)

    with patch.object(MembershipStore, "_bump_version", staticmethod(always_stale)):
        with pytest.raises(ConcurrentModification):
            services.memberships.remove_member(org.id, team.id, "u1")
    assert sorted(services.memberships.owners_of(org.id, team.id)) == ["u1", "u2"]


def test_owner_count_never_reaches_zero(services, acme):
    org, team = acme
    services.memberships.add_member(org.id, team.id, "u2", "owner")
    services.memberships.add_member(org.id, team.id, "u3", "member")
    attempts = [
        ("remove", "u1"), ("demote", "u2"), ("remove", "u2"), ("demote", "u1"), ("remove", "u3"),
    ]
    for kind, user in attempts:
        try:
            if kind == "remove":
                services.memberships.remove_member(org.id, team.id, user)
            else:
                services.memberships.change_role(org.id, team.id, user, "viewer")
        except (LastOwnerViolation, NotAMember):
            pass
        assert services.memberships.owners_of(org.id, team.id)


def test_actor_whose_membership_vanished_is_denied(services, acme):
    org, team = acme
    with patch.object(services.gate, "role_in", return_value=None):
        with pytest.raises(PermissionDenied):
            services.memberships.add_member(org.id, team.id, "u2", "member", acting_user_id="u1")
        with pytest.raises(PermissionDenied):
            services.memberships.change_role(org.id, team.id, "u1", "admin", acting_user_id="u1")
    assert _roles(services, org, team) == [("u1", "owner")]
