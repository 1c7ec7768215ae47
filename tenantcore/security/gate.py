"""
Authorization gate: the single place where access is granted.

Answers "can user U perform action A in organization O". Any failure to
resolve the membership, role or subscription is a deny. Organization-wide
actions are decided by the role in the default team, so owning a team one
created grants nothing beyond that team.
"""
import logging
from typing import Optional

from sqlalchemy import select

from ..billing.state_machine import SubscriptionStateMachine, SubscriptionStatus, snapshot_of
from ..db import models
from ..db.base import utcnow
from ..errors import PermissionDenied
from ..observability.metrics import authz_decisions_counter
from .rbac import ORGANIZATION_ACTIONS, RoleRegistry

logger = logging.getLogger(__name__)


class AuthorizationGate:
    def __init__(self, db_session_factory, registry: RoleRegistry,
                 state_machine: SubscriptionStateMachine, billing_gated_actions=(),
                 clock=utcnow):
        self.db_session_factory = db_session_factory
        self.registry = registry
        self.state_machine = state_machine
        self.billing_gated_actions = frozenset(billing_gated_actions)
        self.clock = clock

    def can(self, user_id: str, organization_id: str, action: str,
            team_id: Optional[str] = None) -> bool:
        try:
            allowed = self._evaluate(user_id, organization_id, action, team_id)
        except Exception:
            logger.exception(
                f"Authorization check failed for user {user_id} in {organization_id}; denying"
            )
            allowed = False
        authz_decisions_counter.labels(action=action, result="allow" if allowed else "deny").inc()
        return allowed

    def authorize(self, user_id: str, organization_id: str, action: str,
                  team_id: Optional[str] = None):
        """Like :meth:`can`, but raises ``PermissionDenied`` on deny."""
        if not self.can(user_id, organization_id, action, team_id=team_id):
            raise PermissionDenied(
                f"User {user_id} may not perform {action}",
                user_id=user_id, organization_id=organization_id, action=action,
            )

    def role_in(self, user_id: str, organization_id: str, team_id: Optional[str] = None):
        """The role that decides the user's access, or None for non-members."""
        db = self.db_session_factory()
        try:
            return self._resolve_role(db, user_id, organization_id, team_id)
        finally:
            db.close()

    def _evaluate(self, user_id, organization_id, action, team_id) -> bool:
        if not user_id or not organization_id or not action:
            return False
        db = self.db_session_factory()
        try:
            if action in ORGANIZATION_ACTIONS:
                team_id = self._default_team(db, organization_id)
                if team_id is None:
                    return False
            role = self._resolve_role(db, user_id, organization_id, team_id)
            if role is None:
                return False
            if action not in self.registry.permissions_for(role):
                return False
            if action in self.billing_gated_actions:
                status = self._subscription_status(db, organization_id)
                if status is None or status is SubscriptionStatus.CANCELLED:
                    logger.info(f"Billing-gated {action} denied for {organization_id}: {status}")
                    return False
            return True
        finally:
            db.close()

    def _resolve_role(self, db, user_id, organization_id, team_id):
        stmt = select(models.Membership.role).where(
            models.Membership.organization_id == organization_id,
            models.Membership.user_id == user_id,
        )
        if team_id is not None:
            stmt = stmt.where(models.Membership.team_id == team_id)
        roles = list(db.scalars(stmt))
        if not roles:
            return None
        return self.registry.highest(roles)

    @staticmethod
    def _default_team(db, organization_id) -> Optional[str]:
        return db.scalar(
            select(models.Organization.default_team_id)
            .where(models.Organization.id == organization_id)
        )

    def _subscription_status(self, db, organization_id) -> Optional[SubscriptionStatus]:
        subscription = db.scalars(
            select(models.Subscription)
            .where(models.Subscription.organization_id == organization_id)
            .order_by(models.Subscription.id.desc())
            .limit(1)
        ).first()
        if subscription is None:
            return None
        return self.state_machine.effective_status(snapshot_of(subscription), self.clock())
