"""
Subscription service: persists state-machine transitions.

Billing events are applied at most once per event id. The id is inserted
into ``processed_billing_events`` in the same transaction as the
transition, so a concurrent redelivery loses on the primary key.

Subscription rows are versioned (``version_id_col``). Two different events
racing on the same subscription cannot both commit from the same snapshot;
the loser gets ``StaleDataError`` and is re-applied on fresh state.
"""
from typing import List, Mapping, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from ..db import models
from ..db.base import utcnow
from ..errors import (
    ConcurrentModification, OrganizationNotFound, SubscriptionNotTerminal, SubscriptionTerminal,
)
from ..observability.logging import StructuredLogger
from ..observability.metrics import billing_events_counter, subscription_transitions_counter
from ..security.rbac import require_permission
from .events import (
    APPLIED, DUPLICATE, IGNORED, MANUAL_REVIEW, REJECTED, BillingEvent, BillingEventResult,
)
from .state_machine import (
    BillingEventType, InvalidTransition, SubscriptionStateMachine, SubscriptionStatus,
    Transition, snapshot_of,
)

logger = StructuredLogger(__name__)


class SubscriptionService:
    def __init__(self, db_session_factory, state_machine: SubscriptionStateMachine, activity_log,
                 gate=None, clock=utcnow, max_attempts: int = 3):
        self.db_session_factory = db_session_factory
        self.state_machine = state_machine
        self.activity_log = activity_log
        self.gate = gate
        self.clock = clock
        self.max_attempts = max_attempts

    # -------------------- reads --------------------
    def current(self, organization_id: str) -> models.Subscription:
        db = self.db_session_factory()
        try:
            subscription = self._current(db, organization_id)
            if subscription is None:
                raise OrganizationNotFound(f"No subscription for organization {organization_id}",
                                           organization_id=organization_id)
            return subscription
        finally:
            db.close()

    def effective_status(self, organization_id: str) -> SubscriptionStatus:
        subscription = self.current(organization_id)
        return self.state_machine.effective_status(snapshot_of(subscription), self.clock())

    def pending_reviews(self) -> List[models.BillingEventReview]:
        db = self.db_session_factory()
        try:
            return list(db.scalars(
                select(models.BillingEventReview)
                .where(models.BillingEventReview.status == "pending")
                .order_by(models.BillingEventReview.id)
            ))
        finally:
            db.close()

    def resolve_review(self, review_id: int) -> models.BillingEventReview:
        db = self.db_session_factory()
        try:
            review = db.get(models.BillingEventReview, review_id)
            if review is None:
                raise KeyError(review_id)
            review.status = "resolved"
            review.resolved_at = self.clock()
            db.commit()
            return review
        finally:
            db.close()

    # -------------------- billing events --------------------
    def apply_billing_event(self, event: Union[BillingEvent, Mapping]) -> BillingEventResult:
        """
        Apply one provider event. Returns a result for every outcome; raises
        only ``ConcurrentModification`` when the subscription kept changing
        under us, in which case nothing was recorded and redelivery is safe.
        """
        if isinstance(event, BillingEvent):
            raw = event.model_dump(mode="json")
        else:
            raw = dict(event) if isinstance(event, Mapping) else {"value": repr(event)}
            try:
                event = BillingEvent.model_validate(raw)
            except ValidationError as e:
                return self._to_review(raw, f"Malformed billing event: {e}")
        return self._with_retries(self._apply_event, event, raw)

    def _apply_event(self, event: BillingEvent, raw: dict) -> BillingEventResult:
        now = self.clock()
        db = self.db_session_factory()
        try:
            if db.get(models.ProcessedBillingEvent, event.event_id) is not None:
                return self._duplicate(db, event)

            organization = db.scalars(
                select(models.Organization)
                .where(models.Organization.billing_ref == event.organization_ref)
            ).first()
            if organization is None:
                db.close()
                return self._to_review(raw, f"Unknown organization {event.organization_ref}")
            subscription = self._current(db, organization.id, lock=True)
            if subscription is None:
                db.close()
                return self._to_review(raw, f"Organization {organization.id} has no subscription")

            error = None
            try:
                self._apply_lapse(db, organization, subscription, event.event_id, now)
                transition = self.state_machine.apply(snapshot_of(subscription), event.type, now)
                self._persist(db, organization, subscription, transition, event.event_id, now,
                              actor_user_id=None, source="billing_provider")
                outcome = APPLIED
            except InvalidTransition as e:
                outcome = IGNORED
                logger.warning("Billing event ignored", event_id=event.event_id,
                               event_type=event.type.value, reason=str(e))
            except SubscriptionTerminal as e:
                outcome = REJECTED
                error = e
                logger.warning("Billing event for cancelled subscription", event_id=event.event_id,
                               event_type=event.type.value, organization_id=organization.id)

            db.add(models.ProcessedBillingEvent(
                event_id=event.event_id,
                organization_id=organization.id,
                event_type=event.type.value,
                outcome=outcome,
                processed_at=now,
            ))
            status = subscription.status
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return self._duplicate(db, event)
        finally:
            db.close()

        billing_events_counter.labels(type=event.type.value, outcome=outcome).inc()
        logger.info("Billing event processed", event_id=event.event_id,
                    event_type=event.type.value, outcome=outcome, status=status)
        return BillingEventResult(event.event_id, outcome, status, error)

    # -------------------- explicit admin actions --------------------
    @require_permission("billing.manage")
    def cancel(self, organization_id: str, acting_user_id: Optional[str] = None,
               reason: Optional[str] = None) -> models.Subscription:
        """Cancel the current subscription; raises SubscriptionTerminal if already cancelled."""
        return self._with_retries(self._cancel, organization_id, acting_user_id, reason)

    def _cancel(self, organization_id, acting_user_id, reason) -> models.Subscription:
        now = self.clock()
        db = self.db_session_factory()
        try:
            organization, subscription = self._load(db, organization_id)
            event_id = f"admin-cancel-{subscription.id}"
            transition = self.state_machine.apply(
                snapshot_of(subscription), BillingEventType.SUBSCRIPTION_CANCELLED, now
            )
            self._persist(db, organization, subscription, transition, event_id, now,
                          actor_user_id=acting_user_id, source="admin", reason=reason)
            db.add(models.ProcessedBillingEvent(
                event_id=event_id,
                organization_id=organization_id,
                event_type=BillingEventType.SUBSCRIPTION_CANCELLED.value,
                outcome=APPLIED,
                processed_at=now,
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise SubscriptionTerminal(f"Subscription {subscription.id} is already cancelled",
                                           organization_id=organization_id)
            return subscription
        finally:
            db.close()

    @require_permission("billing.manage")
    def start_new_subscription(self, organization_id: str,
                               acting_user_id: Optional[str] = None) -> models.Subscription:
        """Reactivate a cancelled organization with a fresh, active subscription."""
        return self._with_retries(self._start_new, organization_id, acting_user_id)

    def _start_new(self, organization_id, acting_user_id) -> models.Subscription:
        now = self.clock()
        db = self.db_session_factory()
        try:
            organization, subscription = self._load(db, organization_id)
            self._apply_lapse(db, organization, subscription, None, now)
            if subscription.status != SubscriptionStatus.CANCELLED.value:
                raise SubscriptionNotTerminal(
                    f"Subscription {subscription.id} is still {subscription.status}",
                    organization_id=organization_id,
                )
            # touching the old row bumps its version, so a concurrent reactivation loses
            subscription.updated_at = now
            flag_modified(subscription, "updated_at")
            fresh = models.Subscription(
                organization_id=organization_id,
                status=SubscriptionStatus.ACTIVE.value,
                failed_retries=0,
                created_at=now,
                updated_at=now,
            )
            db.add(fresh)
            organization.subscription_status = fresh.status
            organization.trial_ends_at = None
            self.activity_log.record(db, organization_id, acting_user_id, "subscription.started",
                                     {"previous_subscription_id": subscription.id})
            db.commit()
            return fresh
        finally:
            db.close()

    def expire_lapsed(self, now=None) -> List[str]:
        """Cancel trials and grace periods whose window has elapsed. Returns organization ids."""
        now = now or self.clock()
        db = self.db_session_factory()
        try:
            candidates = list(db.scalars(
                select(models.Subscription.organization_id).where(
                    models.Subscription.status.in_([SubscriptionStatus.TRIALING.value,
                                                    SubscriptionStatus.GRACE.value])
                )
            ))
        finally:
            db.close()

        expired = []
        for organization_id in candidates:
            try:
                if self._with_retries(self._expire_one, organization_id, now):
                    expired.append(organization_id)
            except OrganizationNotFound:
                logger.debug("Organization vanished during sweep", organization_id=organization_id)
        if expired:
            logger.info("Lapsed subscriptions cancelled", count=len(expired))
        return expired

    def _expire_one(self, organization_id, now) -> bool:
        db = self.db_session_factory()
        try:
            organization, subscription = self._load(db, organization_id)
            if not self._apply_lapse(db, organization, subscription, None, now):
                return False
            db.commit()
            return True
        finally:
            db.close()

    # -------------------- internals --------------------
    def _with_retries(self, op, *args):
        for attempt in range(1, self.max_attempts + 1):
            try:
                return op(*args)
            except StaleDataError:
                logger.warning("Concurrent subscription change, retrying", attempt=attempt)
        raise ConcurrentModification("Subscription kept changing; giving up")

    @staticmethod
    def _current(db, organization_id, lock=False) -> Optional[models.Subscription]:
        stmt = (
            select(models.Subscription)
            .where(models.Subscription.organization_id == organization_id)
            .order_by(models.Subscription.id.desc())
            .limit(1)
        )
        if lock:
            stmt = stmt.with_for_update()
        return db.scalars(stmt).first()

    def _load(self, db, organization_id):
        organization = db.get(models.Organization, organization_id)
        subscription = self._current(db, organization_id, lock=True) if organization else None
        if subscription is None:
            raise OrganizationNotFound(f"Organization {organization_id} not found",
                                       organization_id=organization_id)
        return organization, subscription

    def _apply_lapse(self, db, organization, subscription, event_id, now) -> bool:
        due = self.state_machine.lapse(snapshot_of(subscription), now)
        if due is None:
            return False
        transition = self.state_machine.apply(snapshot_of(subscription), due, now)
        self._persist(db, organization, subscription, transition,
                      event_id or subscription.last_event_id, now,
                      actor_user_id=None, source="expiry")
        return True

    def _persist(self, db, organization, subscription, transition: Transition, event_id, now,
                 actor_user_id=None, source=None, reason=None):
        before, after = transition.before, transition.after
        if transition.changed:
            subscription.status = after.status.value
            subscription.failed_retries = after.failed_retries
            subscription.trial_ends_at = after.trial_ends_at
            subscription.grace_ends_at = after.grace_ends_at
            subscription.cancelled_at = after.cancelled_at
            subscription.updated_at = now
        subscription.last_event_id = event_id
        organization.subscription_status = after.status.value
        organization.trial_ends_at = after.trial_ends_at
        if before.status is not after.status:
            subscription_transitions_counter.labels(
                from_status=before.status.value, to_status=after.status.value
            ).inc()
            details = {"subscription_id": subscription.id, "from": before.status.value,
                       "to": after.status.value, "event_id": event_id, "source": source}
            if reason:
                details["reason"] = reason
            self.activity_log.record(db, organization.id, actor_user_id,
                                     f"subscription.{after.status.value}", details)
            logger.info("Subscription transition", organization_id=organization.id,
                        from_status=before.status.value, to_status=after.status.value)

    def _duplicate(self, db, event: BillingEvent) -> BillingEventResult:
        processed = db.get(models.ProcessedBillingEvent, event.event_id)
        status = None
        if processed is not None and processed.organization_id:
            current = self._current(db, processed.organization_id)
            status = current.status if current is not None else None
        billing_events_counter.labels(type=event.type.value, outcome=DUPLICATE).inc()
        logger.info("Duplicate billing event skipped", event_id=event.event_id)
        return BillingEventResult(event.event_id, DUPLICATE, status)

    def _to_review(self, raw: dict, error: str) -> BillingEventResult:
        event_id = raw.get("event_id") if isinstance(raw.get("event_id"), str) else None
        db = self.db_session_factory()
        try:
            existing = None
            if event_id:
                existing = db.scalars(
                    select(models.BillingEventReview).where(
                        models.BillingEventReview.event_id == event_id,
                        models.BillingEventReview.status == "pending",
                    )
                ).first()
            if existing is None:
                db.add(models.BillingEventReview(
                    event_id=event_id, payload=raw, error=error, status="pending",
                    created_at=self.clock(),
                ))
                db.commit()
        finally:
            db.close()
        billing_events_counter.labels(type=str(raw.get("type", "unknown")), outcome=MANUAL_REVIEW).inc()
        logger.error("Billing event sent to manual review", event_id=event_id, reason=error)
        return BillingEventResult(event_id, MANUAL_REVIEW, None, None)
