"""
Time-boxed, single-use team invitations.
"""
import hashlib
import logging
import secrets
from datetime import timedelta
from typing import List, NamedTuple, Optional

from sqlalchemy import select, update

from ..db import models
from ..db.base import utcnow
from ..errors import (
    AlreadyRedeemed, DuplicateInvitation, InvitationExpired, InvitationNotFound, PermissionDenied,
)
from ..observability.metrics import invitations_counter
from ..security.rbac import require_permission
from .membership import MembershipStore

logger = logging.getLogger(__name__)


class IssuedInvitation(NamedTuple):
    invitation: models.Invitation
    token: str  # only ever returned here; the database keeps a hash


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class InvitationManager:
    def __init__(self, db_session_factory, memberships: MembershipStore, activity_log,
                 notifier=None, gate=None, default_ttl: timedelta = timedelta(days=7),
                 clock=utcnow):
        self.db_session_factory = db_session_factory
        self.memberships = memberships
        self.registry = memberships.registry
        self.activity_log = activity_log
        self.notifier = notifier
        self.gate = gate
        self.default_ttl = default_ttl
        self.clock = clock

    @require_permission("member.invite")
    def issue(self, organization_id: str, team_id: str, email: str, role: str,
              ttl: Optional[timedelta] = None, acting_user_id: Optional[str] = None) -> IssuedInvitation:
        self.registry.validate(role)
        if acting_user_id is not None:
            actor_role = self.gate.role_in(acting_user_id, organization_id, team_id)
            if actor_role is None:
                raise PermissionDenied(f"User {acting_user_id} is not a member of team {team_id}",
                                       action="member.invite")
            if self.registry.outranks(role, actor_role):
                raise PermissionDenied(f"A {actor_role} cannot invite a {role}",
                                       action="member.invite")
        email = email.strip().lower()
        ttl = ttl if ttl is not None else self.default_ttl
        now = self.clock()
        token = secrets.token_urlsafe(32)

        db = self.db_session_factory()
        try:
            team = self.memberships.get_team(db, organization_id, team_id, lock=True)
            existing = db.scalars(
                select(models.Invitation).where(
                    models.Invitation.organization_id == organization_id,
                    models.Invitation.team_id == team.id,
                    models.Invitation.email == email,
                    models.Invitation.consumed_at.is_(None),
                    models.Invitation.revoked_at.is_(None),
                    models.Invitation.expires_at > now,
                )
            ).first()
            if existing is not None:
                raise DuplicateInvitation(f"{email} already has a pending invitation",
                                          email=email, team_id=team_id)
            invitation = models.Invitation(
                organization_id=organization_id,
                team_id=team.id,
                email=email,
                role=role,
                token_hash=hash_token(token),
                invited_by=acting_user_id,
                expires_at=now + ttl,
                created_at=now,
            )
            db.add(invitation)
            self.activity_log.record(db, organization_id, acting_user_id, "invitation.issued",
                                     {"team_id": team_id, "email": email, "role": role})
            db.commit()
        finally:
            db.close()

        invitations_counter.labels(outcome="issued").inc()
        logger.info(f"Issued invitation {invitation.id} for team {team_id}")
        if self.notifier is not None:
            self.notifier.send_invitation(email, token, invitation.expires_at)
        return IssuedInvitation(invitation, token)

    def redeem(self, token: str, user_id: str) -> models.Membership:
        """
        Exchange a token for a membership, exactly once.

        The consume step is a conditional UPDATE on ``consumed_at IS NULL``;
        only the caller whose update hits the row goes on to create the
        membership, in the same transaction.
        """
        now = self.clock()
        db = self.db_session_factory()
        try:
            invitation = db.scalars(
                select(models.Invitation).where(models.Invitation.token_hash == hash_token(token))
            ).first()
            if invitation is None or invitation.revoked_at is not None:
                invitations_counter.labels(outcome="not_found").inc()
                raise InvitationNotFound("Invitation not found")
            if invitation.consumed_at is not None:
                invitations_counter.labels(outcome="already_redeemed").inc()
                raise AlreadyRedeemed("Invitation has already been redeemed",
                                      invitation_id=invitation.id)
            if now > invitation.expires_at:
                invitations_counter.labels(outcome="expired").inc()
                raise InvitationExpired("Invitation has expired", invitation_id=invitation.id)

            if not self._consume(db, invitation, user_id, now):
                db.rollback()
                invitations_counter.labels(outcome="already_redeemed").inc()
                raise AlreadyRedeemed("Invitation has already been redeemed",
                                      invitation_id=invitation.id)

            team = self.memberships.get_team(db, invitation.organization_id, invitation.team_id,
                                             lock=True)
            membership = self.memberships.insert_membership(db, team, user_id, invitation.role,
                                                            acting_user_id=user_id)
            self.activity_log.record(db, invitation.organization_id, user_id,
                                     "invitation.redeemed",
                                     {"invitation_id": invitation.id, "team_id": team.id})
            db.commit()
        finally:
            db.close()

        invitations_counter.labels(outcome="redeemed").inc()
        logger.info(f"Invitation {invitation.id} redeemed by {user_id}")
        return membership

    def _consume(self, db, invitation: models.Invitation, user_id: str, now) -> bool:
        """Mark the invitation consumed; False when another redemption got there first."""
        result = db.execute(
            update(models.Invitation)
            .where(models.Invitation.id == invitation.id,
                   models.Invitation.consumed_at.is_(None),
                   models.Invitation.revoked_at.is_(None))
            .values(consumed_at=now, consumed_by=user_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @require_permission("member.invite")
    def revoke(self, organization_id: str, invitation_id: str,
               acting_user_id: Optional[str] = None) -> models.Invitation:
        now = self.clock()
        db = self.db_session_factory()
        try:
            invitation = db.scalars(
                select(models.Invitation).where(
                    models.Invitation.organization_id == organization_id,
                    models.Invitation.id == invitation_id,
                )
            ).first()
            if invitation is None or invitation.revoked_at is not None:
                raise InvitationNotFound("Invitation not found", invitation_id=invitation_id)
            if invitation.consumed_at is not None:
                raise AlreadyRedeemed("Invitation has already been redeemed",
                                      invitation_id=invitation_id)
            invitation.revoked_at = now
            self.activity_log.record(db, organization_id, acting_user_id, "invitation.revoked",
                                     {"invitation_id": invitation_id})
            db.commit()
            invitations_counter.labels(outcome="revoked").inc()
            return invitation
        finally:
            db.close()

    def pending_for(self, organization_id: str, team_id: str) -> List[models.Invitation]:
        now = self.clock()
        db = self.db_session_factory()
        try:
            return list(db.scalars(
                select(models.Invitation)
                .where(
                    models.Invitation.organization_id == organization_id,
                    models.Invitation.team_id == team_id,
                    models.Invitation.consumed_at.is_(None),
                    models.Invitation.revoked_at.is_(None),
                    models.Invitation.expires_at > now,
                )
                .order_by(models.Invitation.created_at)
            ))
        finally:
            db.close()
