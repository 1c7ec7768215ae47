"""
Typed errors raised by the tenancy and billing stores.
Each carries a stable machine-readable code for API responses.
"""


class TenantCoreError(Exception):
    """Base class for all tenantcore errors."""
    code = "tenantcore_error"

    def __init__(self, message: str = None, **context):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.context}


class InvalidRole(TenantCoreError):
    """Role is not defined in the role registry."""
    code = "invalid_role"


class DuplicateMembership(TenantCoreError):
    """User is already a member of this team."""
    code = "duplicate_membership"


class NotAMember(TenantCoreError):
    """User is not a member of this team."""
    code = "not_a_member"


class LastOwnerViolation(TenantCoreError):
    """Operation would leave the team without an owner."""
    code = "last_owner_violation"


class OrganizationNotFound(TenantCoreError):
    """Organization does not exist."""
    code = "organization_not_found"


class TeamNotFound(TenantCoreError):
    """Team does not exist in this organization."""
    code = "team_not_found"


class PermissionDenied(TenantCoreError):
    """Actor is not allowed to perform this action."""
    code = "permission_denied"


class ConcurrentModification(TenantCoreError):
    """Team membership changed concurrently; retry the operation."""
    code = "concurrent_modification"


class DuplicateInvitation(TenantCoreError):
    """A live invitation already exists for this email and team."""
    code = "duplicate_invitation"


class InvitationNotFound(TenantCoreError):
    """Invitation token is unknown or was revoked."""
    code = "invitation_not_found"


class InvitationExpired(TenantCoreError):
    """Invitation has expired."""
    code = "invitation_expired"


class AlreadyRedeemed(TenantCoreError):
    """Invitation has already been redeemed."""
    code = "already_redeemed"


class SubscriptionTerminal(TenantCoreError):
    """Subscription is cancelled; create a new subscription instead."""
    code = "subscription_terminal"


class SubscriptionNotTerminal(TenantCoreError):
    """Current subscription is still live."""
    code = "subscription_not_terminal"


class LastTeamViolation(TenantCoreError):
    """An organization must keep at least one team."""
    code = "last_team_violation"


class DefaultTeamViolation(TenantCoreError):
    """The default team holds organization-wide roles and cannot be deleted."""
    code = "default_team_violation"
