"""
Team membership store.

Every read and write is filtered by organization id; a team id from another
organization resolves as TeamNotFound. Writes bump ``Team.membership_version``
with a compare-and-swap so two concurrent owner demotions cannot both commit.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from ..db import models
from ..errors import (
    ConcurrentModification, DuplicateMembership, LastOwnerViolation, NotAMember,
    PermissionDenied, TeamNotFound,
)
from ..security.rbac import OWNER, RoleRegistry

logger = logging.getLogger(__name__)


class StaleTeam(Exception):
    """Team membership_version moved under us."""


class MembershipStore:
    def __init__(self, db_session_factory, registry: RoleRegistry, activity_log,
                 notifier=None, gate=None, max_attempts: int = 3):
        self.db_session_factory = db_session_factory
        self.registry = registry
        self.activity_log = activity_log
        self.notifier = notifier
        self.gate = gate
        self.max_attempts = max_attempts

    # -------------------- reads --------------------
    def members_of(self, organization_id: str, team_id: str) -> List[models.Membership]:
        db = self.db_session_factory()
        try:
            self.get_team(db, organization_id, team_id)
            stmt = (
                select(models.Membership)
                .where(models.Membership.organization_id == organization_id,
                       models.Membership.team_id == team_id)
                .order_by(models.Membership.id)
            )
            return list(db.scalars(stmt))
        finally:
            db.close()

    def role_of(self, organization_id: str, team_id: str, user_id: str) -> str:
        db = self.db_session_factory()
        try:
            self.get_team(db, organization_id, team_id)
            membership = self._membership(db, organization_id, team_id, user_id)
            if membership is None:
                raise NotAMember(f"User {user_id} is not a member of team {team_id}",
                                 team_id=team_id, user_id=user_id)
            return membership.role
        finally:
            db.close()

    def owners_of(self, organization_id: str, team_id: str) -> List[str]:
        return [m.user_id for m in self.members_of(organization_id, team_id) if m.role == OWNER]

    def teams_for_user(self, organization_id: str, user_id: str) -> Dict[str, str]:
        db = self.db_session_factory()
        try:
            rows = db.execute(
                select(models.Membership.team_id, models.Membership.role)
                .where(models.Membership.organization_id == organization_id,
                       models.Membership.user_id == user_id)
                .order_by(models.Membership.id)
            )
            return {team_id: role for team_id, role in rows}
        finally:
            db.close()

    # -------------------- writes --------------------
    def add_member(self, organization_id: str, team_id: str, user_id: str, role: str,
                   acting_user_id: Optional[str] = None) -> models.Membership:
        self.registry.validate(role)
        actor_role = self._actor_role(acting_user_id, organization_id, team_id, "member.invite")
        if actor_role is not None and self.registry.outranks(role, actor_role):
            raise PermissionDenied(f"A {actor_role} cannot grant the {role} role",
                                   action="member.invite")

        def op(db):
            team = self.get_team(db, organization_id, team_id, lock=True)
            membership = self.insert_membership(db, team, user_id, role, acting_user_id)
            self._commit(db, team_id, user_id)
            return membership

        membership = self._with_retries(op)
        logger.info(f"Added {user_id} to team {team_id} as {role}")
        return membership

    def remove_member(self, organization_id: str, team_id: str, user_id: str,
                      acting_user_id: Optional[str] = None):
        leaving = acting_user_id is not None and acting_user_id == user_id
        actor_role = None
        if not leaving:
            actor_role = self._actor_role(acting_user_id, organization_id, team_id, "member.remove")

        def op(db):
            team = self.get_team(db, organization_id, team_id, lock=True)
            membership = self._require_membership(db, organization_id, team_id, user_id)
            if actor_role is not None and self.registry.outranks(membership.role, actor_role):
                raise PermissionDenied(f"A {actor_role} cannot remove a {membership.role}",
                                       action="member.remove")
            if membership.role == OWNER:
                self._guard_last_owner(db, team)
                self._hand_over_ownership(db, team, user_id)
            self._bump_version(db, team)
            db.delete(membership)
            self.activity_log.record(db, organization_id, acting_user_id, "member.removed",
                                     {"team_id": team_id, "user_id": user_id,
                                      "role": membership.role})
            db.commit()

        self._with_retries(op)
        logger.info(f"Removed {user_id} from team {team_id}")

    def change_role(self, organization_id: str, team_id: str, user_id: str, new_role: str,
                    acting_user_id: Optional[str] = None) -> models.Membership:
        self.registry.validate(new_role)
        actor_role = self._actor_role(acting_user_id, organization_id, team_id,
                                      "member.update_role")
        if actor_role is not None and self.registry.outranks(new_role, actor_role):
            raise PermissionDenied(f"A {actor_role} cannot grant the {new_role} role",
                                   action="member.update_role")

        def op(db):
            team = self.get_team(db, organization_id, team_id, lock=True)
            membership = self._require_membership(db, organization_id, team_id, user_id)
            old_role = membership.role
            if actor_role is not None and self.registry.outranks(old_role, actor_role):
                raise PermissionDenied(f"A {actor_role} cannot change the role of a {old_role}",
                                       action="member.update_role")
            if old_role == new_role:
                return membership, False
            if old_role == OWNER:
                self._guard_last_owner(db, team)
                self._hand_over_ownership(db, team, user_id)
            self._bump_version(db, team)
            membership.role = new_role
            self.activity_log.record(db, organization_id, acting_user_id, "member.role_changed",
                                     {"team_id": team_id, "user_id": user_id,
                                      "from": old_role, "to": new_role})
            db.commit()
            return membership, True

        membership, changed = self._with_retries(op)
        if changed:
            logger.info(f"Changed role of {user_id} in team {team_id} to {new_role}")
            if self.notifier is not None:
                self.notifier.send_role_changed(user_id, team_id, new_role)
        return membership

    # -------------------- building blocks shared with other services --------------------
    @staticmethod
    def get_team(db: Session, organization_id: str, team_id: str, lock: bool = False) -> models.Team:
        stmt = select(models.Team).where(
            models.Team.id == team_id, models.Team.organization_id == organization_id
        )
        if lock:
            stmt = stmt.with_for_update()
        team = db.scalars(stmt).first()
        if team is None:
            raise TeamNotFound(f"Team {team_id} not found", team_id=team_id)
        return team

    def insert_membership(self, db: Session, team: models.Team, user_id: str, role: str,
                          acting_user_id: Optional[str] = None) -> models.Membership:
        """Add a membership inside the caller's transaction."""
        self.registry.validate(role)
        if self._membership(db, team.organization_id, team.id, user_id) is not None:
            raise DuplicateMembership(f"User {user_id} is already a member of team {team.id}",
                                      team_id=team.id, user_id=user_id)
        self._bump_version(db, team)
        membership = models.Membership(
            team_id=team.id, organization_id=team.organization_id, user_id=user_id, role=role
        )
        db.add(membership)
        self.activity_log.record(db, team.organization_id, acting_user_id or user_id,
                                 "member.added",
                                 {"team_id": team.id, "user_id": user_id, "role": role})
        return membership

    # -------------------- internals --------------------
    def _actor_role(self, acting_user_id, organization_id, team_id, action) -> Optional[str]:
        # runs before the write session opens
        if acting_user_id is None:
            return None
        if self.gate is None:
            raise PermissionDenied("No authorization gate configured", action=action)
        self.gate.authorize(acting_user_id, organization_id, action, team_id=team_id)
        role = self.gate.role_in(acting_user_id, organization_id, team_id)
        if role is None:
            # membership vanished between the two reads
            raise PermissionDenied(f"User {acting_user_id} may not perform {action}", action=action)
        return role

    @staticmethod
    def _membership(db, organization_id, team_id, user_id) -> Optional[models.Membership]:
        return db.scalars(
            select(models.Membership).where(
                models.Membership.organization_id == organization_id,
                models.Membership.team_id == team_id,
                models.Membership.user_id == user_id,
            )
        ).first()

    def _require_membership(self, db, organization_id, team_id, user_id) -> models.Membership:
        membership = self._membership(db, organization_id, team_id, user_id)
        if membership is None:
            raise NotAMember(f"User {user_id} is not a member of team {team_id}",
                             team_id=team_id, user_id=user_id)
        return membership

    @staticmethod
    def _guard_last_owner(db, team: models.Team):
        owners = db.scalar(
            select(func.count()).select_from(models.Membership).where(
                models.Membership.organization_id == team.organization_id,
                models.Membership.team_id == team.id,
                models.Membership.role == OWNER,
            )
        )
        if owners <= 1:
            raise LastOwnerViolation(f"Team {team.id} must keep at least one owner",
                                     team_id=team.id)

    @staticmethod
    def _hand_over_ownership(db, team: models.Team, user_id: str):
        """Move Organization.owner_user_id off a default-team owner who is leaving the role."""
        organization = db.get(models.Organization, team.organization_id)
        if organization.default_team_id != team.id or organization.owner_user_id != user_id:
            return
        successor = db.scalars(
            select(models.Membership.user_id).where(
                models.Membership.team_id == team.id,
                models.Membership.role == OWNER,
                models.Membership.user_id != user_id,
            ).order_by(models.Membership.id)
        ).first()
        organization.owner_user_id = successor

    @staticmethod
    def _bump_version(db, team: models.Team):
        seen = team.membership_version
        result = db.execute(
            update(models.Team)
            .where(models.Team.id == team.id, models.Team.membership_version == seen)
            .values(membership_version=seen + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleTeam(team.id)
        set_committed_value(team, "membership_version", seen + 1)

    @staticmethod
    def _commit(db, team_id, user_id):
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise DuplicateMembership(f"User {user_id} is already a member of team {team_id}",
                                      team_id=team_id, user_id=user_id)

    def _with_retries(self, op):
        for attempt in range(1, self.max_attempts + 1):
            db = self.db_session_factory()
            try:
                return op(db)
            except StaleTeam:
                db.rollback()
                logger.warning(f"Concurrent membership change, retrying (attempt {attempt})")
            finally:
                db.close()
        raise ConcurrentModification("Team membership kept changing; giving up")
