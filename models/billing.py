from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, HttpUrl, field_validator


class BillingPlan(str, Enum):
    FREE = "FREE"
    MONTH = "MONTH"
    SIX_MONTHS = "SIX_MONTHS"
    YEAR = "YEAR"


class BillingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"


class BillingPlanCatalog(BaseModel):
    plan: BillingPlan
    amount_cents: int = Field(ge=0)
    currency: str = "USD"
    interval_months: int = Field(ge=0)
    display_name: str
    features: List[str]


class BillingSubscriptionRecord(BaseModel):
    """One subscription record per user id."""

    user_id: str
    plan: BillingPlan = BillingPlan.FREE
    status: BillingStatus = BillingStatus.ACTIVE
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    past_due_marked_at: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None
    updated_at: datetime


class SubscriptionView(BaseModel):
    plan: BillingPlan
    status: BillingStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    canceled_at: Optional[datetime] = None
    past_due_marked_at: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None
    updated_at: datetime


class SubscriptionResponse(BaseModel):
    provider: str
    subscription: SubscriptionView


class PlansResponse(BaseModel):
    provider: str
    plans: List[BillingPlanCatalog]


# Request models
class SubscribeRequest(BaseModel):
    plan: BillingPlan


class ChangePlanRequest(BaseModel):
    plan: BillingPlan
    status: Optional[BillingStatus] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, min_length=1, max_length=500)

    @field_validator("reason", mode="before")
    @classmethod
    def strip_reason(cls, value):
        if isinstance(value, str):
            return value.strip()
        return value


class ReactivateRequest(BaseModel):
    plan: Optional[BillingPlan] = None


class CheckoutSessionRequest(BaseModel):
    plan: BillingPlan
    success_url: Optional[HttpUrl] = None
    cancel_url: Optional[HttpUrl] = None


class PortalSessionRequest(BaseModel):
    return_url: Optional[HttpUrl] = None


# Provider results
class CheckoutSessionResult(BaseModel):
    provider: str
    checkout_url: str
    session_id: str


class PortalSessionResult(BaseModel):
    provider: str
    portal_url: str
    session_id: str


class WebhookEventResult(BaseModel):
    provider: str
    received: bool
    event_type: str
    applied: bool = False


class SyncSubscriptionResult(BaseModel):
    provider: str
    synced: bool
