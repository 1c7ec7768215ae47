"""
Subscription lifecycle transitions.

Pure functions over a snapshot of the subscription; the service layer
persists the result. ``cancelled`` is terminal.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import NamedTuple, Optional

from ..errors import SubscriptionTerminal


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    GRACE = "grace"
    CANCELLED = "cancelled"


class BillingEventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    TRIAL_EXPIRED = "trial.expired"
    GRACE_EXPIRED = "grace.expired"


class SubscriptionSnapshot(NamedTuple):
    status: SubscriptionStatus
    failed_retries: int = 0
    trial_ends_at: Optional[datetime] = None
    grace_ends_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class Transition(NamedTuple):
    before: SubscriptionSnapshot
    after: SubscriptionSnapshot
    changed: bool


class InvalidTransition(Exception):
    """Event does not apply to the subscription in its current state."""


class SubscriptionStateMachine:
    def __init__(self, max_failed_retries: int = 3, grace_period: timedelta = timedelta(days=7)):
        self.max_failed_retries = max_failed_retries
        self.grace_period = grace_period

    @classmethod
    def from_settings(cls, settings) -> "SubscriptionStateMachine":
        return cls(settings.max_failed_retries, settings.grace_period)

    def apply(self, snapshot: SubscriptionSnapshot, event_type: BillingEventType,
              now: datetime) -> Transition:
        status = SubscriptionStatus(snapshot.status)
        event_type = BillingEventType(event_type)
        if status is SubscriptionStatus.CANCELLED:
            raise SubscriptionTerminal(
                f"Subscription is cancelled; {event_type.value} cannot be applied",
                event_type=event_type.value,
            )

        if event_type is BillingEventType.SUBSCRIPTION_CANCELLED:
            return self._to(snapshot, status=SubscriptionStatus.CANCELLED,
                            grace_ends_at=None, cancelled_at=now)

        if event_type is BillingEventType.PAYMENT_SUCCEEDED:
            if status is SubscriptionStatus.ACTIVE:
                return Transition(snapshot, snapshot, False)
            return self._to(snapshot, status=SubscriptionStatus.ACTIVE,
                            failed_retries=0, grace_ends_at=None)

        if event_type is BillingEventType.PAYMENT_FAILED:
            if status is SubscriptionStatus.ACTIVE:
                return self._to(snapshot, status=SubscriptionStatus.PAST_DUE, failed_retries=0)
            if status is SubscriptionStatus.PAST_DUE:
                retries = snapshot.failed_retries + 1
                if retries >= self.max_failed_retries:
                    return self._to(snapshot, status=SubscriptionStatus.GRACE,
                                    failed_retries=retries,
                                    grace_ends_at=now + self.grace_period)
                return self._to(snapshot, failed_retries=retries)
            if status is SubscriptionStatus.GRACE:
                return Transition(snapshot, snapshot, False)

        if event_type is BillingEventType.TRIAL_EXPIRED and status is SubscriptionStatus.TRIALING:
            return self._to(snapshot, status=SubscriptionStatus.CANCELLED, cancelled_at=now)

        if event_type is BillingEventType.GRACE_EXPIRED and status is SubscriptionStatus.GRACE:
            if snapshot.grace_ends_at is not None and now < snapshot.grace_ends_at:
                raise InvalidTransition(
                    f"Grace period runs until {snapshot.grace_ends_at.isoformat()}"
                )
            return self._to(snapshot, status=SubscriptionStatus.CANCELLED,
                            grace_ends_at=None, cancelled_at=now)

        raise InvalidTransition(f"{event_type.value} does not apply to a {status.value} subscription")

    def lapse(self, snapshot: SubscriptionSnapshot, now: datetime) -> Optional[BillingEventType]:
        """The expiry event due for this snapshot at ``now``, if any."""
        status = SubscriptionStatus(snapshot.status)
        if (status is SubscriptionStatus.TRIALING and snapshot.trial_ends_at is not None
                and now >= snapshot.trial_ends_at):
            return BillingEventType.TRIAL_EXPIRED
        if (status is SubscriptionStatus.GRACE and snapshot.grace_ends_at is not None
                and now >= snapshot.grace_ends_at):
            return BillingEventType.GRACE_EXPIRED
        return None

    def effective_status(self, snapshot: SubscriptionSnapshot, now: datetime) -> SubscriptionStatus:
        """Status with elapsed trial and grace windows applied, without persisting."""
        if self.lapse(snapshot, now) is not None:
            return SubscriptionStatus.CANCELLED
        return SubscriptionStatus(snapshot.status)

    @staticmethod
    def _to(snapshot: SubscriptionSnapshot, **changes) -> Transition:
        if "status" in changes:
            changes["status"] = SubscriptionStatus(changes["status"])
        after = snapshot._replace(**changes)
        return Transition(snapshot, after, after != snapshot)


def snapshot_of(subscription) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        status=SubscriptionStatus(subscription.status),
        failed_retries=subscription.failed_retries or 0,
        trial_ends_at=subscription.trial_ends_at,
        grace_ends_at=subscription.grace_ends_at,
        cancelled_at=subscription.cancelled_at,
    )
