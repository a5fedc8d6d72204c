from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from uuid import UUID
from typing import Any, Optional, List, Dict


class UserResponse(BaseModel):
    id: UUID
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PlanResponse(BaseModel):
    """Catalog entry; quotas use -1 for unlimited."""
    id: str
    name: str
    display_name: str
    description: Optional[str] = None
    price_monthly: float
    quotas: Dict[str, int]
    features: List[str]
    trial_days: int
    monthly_credits: int


class SubscriptionResponse(BaseModel):
    id: UUID
    user_id: UUID
    plan_id: str
    status: str
    current_period_start: datetime
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    cancelled_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TrialResponse(BaseModel):
    id: UUID
    user_id: UUID
    plan_id: str
    trial_start: datetime
    trial_end: datetime
    converted_to_paid: bool
    conversion_date: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TrialStatusResponse(BaseModel):
    plan_id: str
    active: bool
    days_remaining: int
    converted: bool
    has_trial_history: bool
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    conversion_date: Optional[datetime] = None


class LedgerEntryResponse(BaseModel):
    """Credit transaction as shown in history and admin views."""
    id: UUID
    user_id: UUID
    kind: str
    amount: Optional[int] = None
    feature: Optional[str] = None
    actor_id: Optional[UUID] = None
    refund_of_id: Optional[UUID] = None
    entry_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CreditBalanceResponse(BaseModel):
    user_id: UUID
    balance: int


class EntitlementDecisionResponse(BaseModel):
    allowed: bool
    action: str
    plan_id: str
    plan_source: str
    funded_by: Optional[str] = None
    remaining: Optional[int] = None
    credits_required: int
    credits_available: Optional[int] = None
    quota: Optional[int] = None
    used: Optional[int] = None
    denial: Optional[Dict[str, Any]] = None


class MeteredActionRequest(BaseModel):
    """Opaque generation payload (workout type, duration, equipment, ...)."""
    payload: Dict[str, Any] = Field(default_factory=dict)


class MeteredActionResponse(BaseModel):
    action: str
    content: str
    provider_used: str
    plan_id: str
    funded_by: Optional[str] = None
    remaining: Optional[int] = None
    credits_charged: int = 0
    credit_balance: Optional[int] = None
    transaction_id: Optional[str] = None
    usage: Dict[str, Any] = Field(default_factory=dict)
