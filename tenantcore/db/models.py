from sqlalchemy import (
    JSON, BigInteger, Column, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import Base, new_id, utcnow


class Organization(Base):
    __tablename__ = "organizations"
    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    # longest-standing owner of the default team; kept in sync by MembershipStore
    owner_user_id = Column(String(64), nullable=False, index=True)
    # organization-wide roles are read from this team
    default_team_id = Column(String(32), nullable=True)
    subscription_status = Column(String(20), nullable=False, default="trialing")
    trial_ends_at = Column(DateTime, nullable=True)
    settings = Column(JSON, nullable=False, default=dict)
    billing_ref = Column(String(64), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)

    teams = relationship("Team", back_populates="organization",
                         cascade="all, delete-orphan", passive_deletes=True)
    subscriptions = relationship("Subscription", back_populates="organization",
                                 cascade="all, delete-orphan", passive_deletes=True,
                                 order_by="Subscription.id")


class Team(Base):
    __tablename__ = "teams"
    id = Column(String(32), primary_key=True, default=new_id)
    organization_id = Column(String(32), ForeignKey("organizations.id", ondelete="CASCADE"),
                             nullable=False, index=True)
    name = Column(String(255), nullable=False)
    settings = Column(JSON, nullable=False, default=dict)
    membership_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)

    organization = relationship("Organization", back_populates="teams")
    memberships = relationship("Membership", back_populates="team",
                               cascade="all, delete-orphan", passive_deletes=True,
                               order_by="Membership.id")
    invitations = relationship("Invitation", back_populates="team",
                               cascade="all, delete-orphan", passive_deletes=True)


class Membership(Base):
    __tablename__ = "memberships"
    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_membership_team_user"),
        Index("ix_memberships_org_user", "organization_id", "user_id"),
    )
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    team_id = Column(String(32), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    organization_id = Column(String(32), ForeignKey("organizations.id", ondelete="CASCADE"),
                             nullable=False)
    user_id = Column(String(64), nullable=False)
    role = Column(String(32), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    team = relationship("Team", back_populates="memberships")

    def __repr__(self):
        return f"<Membership team={self.team_id} user={self.user_id} role={self.role}>"


class Invitation(Base):
    __tablename__ = "invitations"
    id = Column(String(32), primary_key=True, default=new_id)
    organization_id = Column(String(32), ForeignKey("organizations.id", ondelete="CASCADE"),
                             nullable=False, index=True)
    team_id = Column(String(32), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    email = Column(String(255), nullable=False)
    role = Column(String(32), nullable=False)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    invited_by = Column(String(64), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    consumed_by = Column(String(64), nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    team = relationship("Team", back_populates="invitations")


class Subscription(Base):
    __tablename__ = "subscriptions"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    organization_id = Column(String(32), ForeignKey("organizations.id", ondelete="CASCADE"),
                             nullable=False, index=True)
    status = Column(String(20), nullable=False, default="trialing")
    failed_retries = Column(Integer, nullable=False, default=0)
    trial_ends_at = Column(DateTime, nullable=True)
    grace_ends_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    last_event_id = Column(String(255), nullable=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    organization = relationship("Organization", back_populates="subscriptions")

    # UPDATEs carry "WHERE version = :seen"; a lost race raises StaleDataError
    __mapper_args__ = {"version_id_col": version}


class ProcessedBillingEvent(Base):
    """Event ids already applied; the primary key is the idempotency key."""
    __tablename__ = "processed_billing_events"
    event_id = Column(String(255), primary_key=True)
    organization_id = Column(String(32), nullable=True, index=True)
    event_type = Column(String(64), nullable=False)
    outcome = Column(String(20), nullable=False)
    processed_at = Column(DateTime, default=utcnow)


class BillingEventReview(Base):
    __tablename__ = "billing_event_reviews"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    event_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    error = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)


class ActivityRecord(Base):
    """Append-only audit trail; no foreign key so records outlive the organization."""
    __tablename__ = "activity_records"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    organization_id = Column(String(32), nullable=False, index=True)
    actor_user_id = Column(String(64), nullable=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow, index=True)
    signature = Column(String(128), nullable=False)
