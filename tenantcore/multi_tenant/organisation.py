"""
Organization and team lifecycle.

Creating an organization creates its default team, the owner membership
and a trialing subscription in one transaction.
"""
import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import func, select

from ..billing.state_machine import SubscriptionStatus
from ..db import models
from ..db.base import new_id, utcnow
from ..errors import DefaultTeamViolation, LastTeamViolation, OrganizationNotFound
from ..security.rbac import OWNER, require_permission
from .membership import MembershipStore

logger = logging.getLogger(__name__)


class OrganizationService:
    def __init__(self, db_session_factory, memberships: MembershipStore, activity_log, gate=None,
                 trial_period: timedelta = timedelta(days=14), default_team_name: str = "General",
                 clock=utcnow):
        self.db_session_factory = db_session_factory
        self.memberships = memberships
        self.activity_log = activity_log
        self.gate = gate
        self.trial_period = trial_period
        self.default_team_name = default_team_name
        self.clock = clock

    def create_organization(self, owner_user_id: str, name: str, settings: dict = None,
                            billing_ref: str = None) -> models.Organization:
        now = self.clock()
        trial_ends_at = now + self.trial_period
        organization_id = new_id()
        team_id = new_id()
        db = self.db_session_factory()
        try:
            organization = models.Organization(
                id=organization_id,
                name=name,
                owner_user_id=owner_user_id,
                subscription_status=SubscriptionStatus.TRIALING.value,
                trial_ends_at=trial_ends_at,
                settings=dict(settings or {}),
                billing_ref=billing_ref or organization_id,
                default_team_id=team_id,
                created_at=now,
            )
            db.add(organization)
            team = models.Team(id=team_id, organization_id=organization_id,
                               name=self.default_team_name,
                               settings={}, membership_version=0, created_at=now)
            db.add(team)
            db.add(models.Subscription(
                organization_id=organization_id,
                status=SubscriptionStatus.TRIALING.value,
                failed_retries=0,
                trial_ends_at=trial_ends_at,
                created_at=now,
                updated_at=now,
            ))
            db.flush()
            self.memberships.insert_membership(db, team, owner_user_id, OWNER, owner_user_id)
            self.activity_log.record(db, organization_id, owner_user_id, "organization.created",
                                     {"name": name, "team_id": team.id})
            db.commit()
        finally:
            db.close()
        logger.info(f"Organization {organization_id} created by {owner_user_id}")
        return organization

    def get_organization(self, organization_id: str) -> models.Organization:
        db = self.db_session_factory()
        try:
            return self._get(db, organization_id)
        finally:
            db.close()

    @require_permission("organization.update")
    def update_settings(self, organization_id: str, settings: dict,
                        acting_user_id: Optional[str] = None) -> models.Organization:
        db = self.db_session_factory()
        try:
            organization = self._get(db, organization_id)
            organization.settings = {**(organization.settings or {}), **settings}
            self.activity_log.record(db, organization_id, acting_user_id,
                                     "organization.settings_updated",
                                     {"keys": sorted(settings)})
            db.commit()
            return organization
        finally:
            db.close()

    @require_permission("organization.delete")
    def delete_organization(self, organization_id: str, acting_user_id: Optional[str] = None):
        """Cascades to teams, memberships, invitations and subscriptions; activity stays."""
        db = self.db_session_factory()
        try:
            organization = self._get(db, organization_id)
            self.activity_log.record(db, organization_id, acting_user_id, "organization.deleted",
                                     {"name": organization.name})
            db.delete(organization)
            db.commit()
        finally:
            db.close()
        logger.info(f"Organization {organization_id} deleted by {acting_user_id}")

    # -------------------- teams --------------------
    def teams_of(self, organization_id: str) -> List[models.Team]:
        db = self.db_session_factory()
        try:
            self._get(db, organization_id)
            return list(db.scalars(
                select(models.Team)
                .where(models.Team.organization_id == organization_id)
                .order_by(models.Team.created_at, models.Team.name)
            ))
        finally:
            db.close()

    @require_permission("team.create")
    def create_team(self, organization_id: str, name: str, settings: dict = None,
                    acting_user_id: Optional[str] = None, owner_user_id: Optional[str] = None
                    ) -> models.Team:
        """The acting user (or ``owner_user_id`` for internal calls) becomes the team owner."""
        owner = acting_user_id or owner_user_id
        if owner is None:
            raise ValueError("A new team needs an owner")
        db = self.db_session_factory()
        try:
            self._get(db, organization_id)
            team = models.Team(organization_id=organization_id, name=name,
                               settings=dict(settings or {}), membership_version=0,
                               created_at=self.clock())
            db.add(team)
            db.flush()
            self.memberships.insert_membership(db, team, owner, OWNER, owner)
            self.activity_log.record(db, organization_id, owner, "team.created",
                                     {"team_id": team.id, "name": name})
            db.commit()
        finally:
            db.close()
        logger.info(f"Team {team.id} created in {organization_id}")
        return team

    @require_permission("team.delete")
    def delete_team(self, organization_id: str, team_id: str,
                    acting_user_id: Optional[str] = None):
        db = self.db_session_factory()
        try:
            team = self.memberships.get_team(db, organization_id, team_id, lock=True)
            remaining = db.scalar(
                select(func.count()).select_from(models.Team)
                .where(models.Team.organization_id == organization_id)
            )
            if remaining <= 1:
                raise LastTeamViolation("An organization must keep at least one team",
                                        team_id=team_id)
            if team_id == self._get(db, organization_id).default_team_id:
                raise DefaultTeamViolation("The default team cannot be deleted", team_id=team_id)
            self.activity_log.record(db, organization_id, acting_user_id, "team.deleted",
                                     {"team_id": team_id, "name": team.name})
            db.delete(team)
            db.commit()
        finally:
            db.close()

    @staticmethod
    def _get(db, organization_id) -> models.Organization:
        organization = db.get(models.Organization, organization_id)
        if organization is None:
            raise OrganizationNotFound(f"Organization {organization_id} not found",
                                       organization_id=organization_id)
        return organization
