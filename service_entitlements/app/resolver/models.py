"""
Entitlement data models for Entitlements Service.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SubscriptionStatus(str, Enum):
    """Subscription record states."""
    TRIALING = "trialing"
    ACTIVE = "active"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    PAUSED = "paused"
    INACTIVE = "inactive"


GRANTING_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})
TERMINAL_STATUSES = frozenset({SubscriptionStatus.INACTIVE, SubscriptionStatus.CANCELED})


class DecisionSource(str, Enum):
    """Which branch of resolution produced a decision."""
    OVERRIDE = "override"
    CACHE = "cache"
    ORACLE = "oracle"
    TRIAL_FALLBACK = "trial_fallback"
    IDENTITY_MISSING = "identity_missing"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Account:
    """Authenticated account as supplied by the identity provider."""
    account_id: str
    email: str
    created_at: datetime


@dataclass
class SubscriptionRecord:
    """Locally cached subscription state, one per account."""
    account_id: str
    status: SubscriptionStatus
    billing_subscription_id: Optional[str] = None
    billing_customer_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    admin_override: bool = False
    override_notes: Optional[str] = None
    override_by: Optional[str] = None
    override_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Bookkeeping columns that never make two records different states
    _AUDIT_FIELDS = ("created_at", "updated_at")

    def same_state(self, other: Optional["SubscriptionRecord"]) -> bool:
        """Compare everything except the audit timestamps."""
        if other is None:
            return False
        return all(
            getattr(self, f.name) == getattr(other, f.name)
            for f in fields(self)
            if f.name not in self._AUDIT_FIELDS
        )


@dataclass(frozen=True)
class BillingSubscription:
    """Provider-side subscription, already mapped from the raw payload."""
    id: str
    status: str
    current_period_end: Optional[datetime]
    customer_id: Optional[str] = None
    created: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    account_id: Optional[str] = None


@dataclass(frozen=True)
class CheckoutSession:
    """Provider checkout session."""
    id: str
    url: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    client_reference_id: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionSummary:
    """Subscription block exposed with a decision."""
    id: Optional[str]
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None


@dataclass(frozen=True)
class EntitlementDecision:
    """Result of a resolution."""
    has_access: bool
    status: Optional[SubscriptionStatus] = None
    current_period_end: Optional[datetime] = None
    trial_days_left: int = 0
    trial_end_date: Optional[datetime] = None
    is_in_trial_period: bool = False
    subscription: Optional[SubscriptionSummary] = None
    # Provenance only; two decisions that grant the same thing are equal
    source: DecisionSource = field(default=DecisionSource.CACHE, compare=False)

    @classmethod
    def no_access(cls, source: DecisionSource,
                  status: Optional[SubscriptionStatus] = None,
                  subscription: Optional[SubscriptionSummary] = None) -> "EntitlementDecision":
        return cls(has_access=False, status=status, subscription=subscription, source=source)


@dataclass(frozen=True)
class CheckoutResult:
    """Outcome of create-subscription."""
    url: Optional[str]
    already_subscribed: bool = False


@dataclass
class EntitlementView:
    """Decision plus the human-facing fields the UI renders."""
    decision: EntitlementDecision
    trial_end_date_display: Optional[str] = None
    days_until_period_end: Optional[int] = None
    access_ends_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    origin: str = "resolver"


class ApiModel(BaseModel):
    """Base for HTTP payloads; camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscriptionSummaryResponse(ApiModel):
    id: Optional[str] = None
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None


class EntitlementDecisionResponse(ApiModel):
    """Decision surface exposed upward."""
    has_access: bool = Field(..., description="Whether the account has paid-tier access")
    status: Optional[SubscriptionStatus] = None
    current_period_end: Optional[datetime] = None
    trial_days_left: int = 0
    trial_end_date: Optional[datetime] = None
    is_in_trial_period: bool = False
    subscription: Optional[SubscriptionSummaryResponse] = None
    source: DecisionSource

    @classmethod
    def from_decision(cls, decision: EntitlementDecision) -> "EntitlementDecisionResponse":
        subscription = None
        if decision.subscription is not None:
            subscription = SubscriptionSummaryResponse(
                id=decision.subscription.id,
                status=decision.subscription.status,
                current_period_end=decision.subscription.current_period_end,
                cancel_at=decision.subscription.cancel_at,
            )
        return cls(
            has_access=decision.has_access,
            status=decision.status,
            current_period_end=decision.current_period_end,
            trial_days_left=decision.trial_days_left,
            trial_end_date=decision.trial_end_date,
            is_in_trial_period=decision.is_in_trial_period,
            subscription=subscription,
            source=decision.source,
        )

    def to_decision(self) -> EntitlementDecision:
        subscription = None
        if self.subscription is not None:
            subscription = SubscriptionSummary(
                id=self.subscription.id,
                status=self.subscription.status,
                current_period_end=self.subscription.current_period_end,
                cancel_at=self.subscription.cancel_at,
            )
        return EntitlementDecision(
            has_access=self.has_access,
            status=self.status,
            current_period_end=self.current_period_end,
            trial_days_left=self.trial_days_left,
            trial_end_date=self.trial_end_date,
            is_in_trial_period=self.is_in_trial_period,
            subscription=subscription,
            source=self.source,
        )


class EntitlementViewResponse(EntitlementDecisionResponse):
    """Decision with display fields, as served by the client facade."""
    trial_end_date_display: Optional[str] = None
    days_until_period_end: Optional[int] = None
    access_ends_at: Optional[datetime] = None

    @classmethod
    def from_view(cls, view: EntitlementView) -> "EntitlementViewResponse":
        base = EntitlementDecisionResponse.from_decision(view.decision)
        return cls(
            **base.model_dump(),
            trial_end_date_display=view.trial_end_date_display,
            days_until_period_end=view.days_until_period_end,
            access_ends_at=view.access_ends_at,
        )


class CheckoutRequest(ApiModel):
    with_trial: bool = Field(True, description="Start the subscription with a trial period")


class CheckoutResponse(ApiModel):
    url: Optional[str] = None
    already_subscribed: bool = False


class CompleteCheckoutRequest(ApiModel):
    session_id: str = Field(..., min_length=1, description="Provider checkout session id")


class CancelResponse(ApiModel):
    success: bool


class TrialPolicyModel(ApiModel):
    default_trial_days: int = Field(..., ge=0, description="Trial days for new accounts, 0 disables trials")


class AdminOverrideRequest(ApiModel):
    """Request model for an administrative status override."""
    status: SubscriptionStatus
    trial_end_date: Optional[datetime] = None
    notes: Optional[str] = None
    admin_override: bool = True


class SubscriptionRecordResponse(ApiModel):
    account_id: str
    status: SubscriptionStatus
    billing_subscription_id: Optional[str] = None
    billing_customer_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    admin_override: bool = False
    override_notes: Optional[str] = None
    override_by: Optional[str] = None
    override_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: SubscriptionRecord) -> "SubscriptionRecordResponse":
        return cls(
            account_id=record.account_id,
            status=record.status,
            billing_subscription_id=record.billing_subscription_id,
            billing_customer_id=record.billing_customer_id,
            current_period_end=record.current_period_end,
            trial_end_date=record.trial_end_date,
            cancel_at=record.cancel_at,
            admin_override=record.admin_override,
            override_notes=record.override_notes,
            override_by=record.override_by,
            override_at=record.override_at,
        )


class BillingEventRequest(ApiModel):
    """Provider event envelope; only the type and the affected object are read."""
    id: Optional[str] = None
    type: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)


class BillingEventResponse(ApiModel):
    received: bool = True
    applied: bool = False
    account_id: Optional[str] = None
