"""
Inbound billing events as delivered by the billing provider's webhooks.
"""
from typing import Any, Dict, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field

from .state_machine import BillingEventType


class BillingEvent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    event_id: str = Field(..., min_length=1, max_length=255)
    type: BillingEventType
    organization_ref: str = Field(..., min_length=1, max_length=64)
    payload: Dict[str, Any] = Field(default_factory=dict)


class BillingEventResult(NamedTuple):
    event_id: Optional[str]
    outcome: str  # applied | duplicate | ignored | rejected | manual_review
    status: Optional[str] = None
    error: Optional[Exception] = None

    def to_dict(self) -> dict:
        data = {"event_id": self.event_id, "outcome": self.outcome, "status": self.status}
        if self.error is not None:
            data["error"] = getattr(self.error, "code", type(self.error).__name__)
        return data


APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
REJECTED = "rejected"
MANUAL_REVIEW = "manual_review"
