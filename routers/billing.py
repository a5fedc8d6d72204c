import json
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field

from core.auth import get_current_active_user
from core.config import settings
from core.database import get_db
from core.exceptions import NotFoundError, PlanNotFoundError
from core.dependencies import (
    get_credit_engine,
    get_entitlement_resolver,
    get_plan_catalog,
    get_subscription_service,
    get_trial_manager,
    get_usage_recorder,
)
from models import User
from schemas import PlanResponse, SubscriptionResponse, TrialResponse, TrialStatusResponse
from services.billing_events import SIGNATURE_HEADER, process_billing_event, verify_signature
from services.credits import CreditEngine
from services.entitlements import EntitlementResolver
from services.plan_catalog import PlanCatalog
from services.subscriptions import SubscriptionService
from services.trials import TrialManager
from services.usage_recorder import UsageRecorder


router = APIRouter(prefix="/v1/billing", tags=["billing"])


class PlanChangeRequest(BaseModel):
    plan_id: str = Field(..., min_length=1, description="Target subscription plan id")


def _require_plan(catalog: PlanCatalog, plan_id: str) -> None:
    # A client-supplied id that is not in the catalog is a 404, not catalog corruption.
    try:
        catalog.get_plan(plan_id)
    except PlanNotFoundError:
        raise NotFoundError("Subscription plan", plan_id)


@router.get("/plans", response_model=List[PlanResponse])
def list_plans(catalog: PlanCatalog = Depends(get_plan_catalog)):
    """Active catalog, cheapest first."""
    return [p.to_dict() for p in catalog.list_plans()]


@router.get("/current")
def current_subscription(
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    credits: CreditEngine = Depends(get_credit_engine),
    recorder: UsageRecorder = Depends(get_usage_recorder),
):
    """
    Live subscription, the plan actually in effect, and this month's usage
    against its limits.
    """
    live = subscriptions.get_live(current_user.id)
    plan, source = resolver.effective_plan(current_user.id)
    active_trial = resolver.trials.get_active_trial(current_user.id)

    return {
        "subscription": SubscriptionResponse.model_validate(live).model_dump() if live else None,
        "effective_plan": plan.to_dict(),
        "plan_source": source,
        "trial": resolver.trials.get_trial_status(current_user.id, active_trial.plan_id) if active_trial else None,
        "usage": recorder.monthly_usage(db, current_user.id, plan),
        "credit_balance": credits.get_balance(current_user.id),
    }


@router.post("/upgrade")
def upgrade(
    request: PlanChangeRequest,
    current_user: User = Depends(get_current_active_user),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    """
    Move to a paid plan.

    Policy:
    - First time on a plan with a trial: starts `trialing` (no charge yet)
    - Otherwise: `active` immediately (payment is settled by the billing side)
    """
    _require_plan(catalog, request.plan_id)
    sub, trial = subscriptions.upgrade(current_user.id, request.plan_id)
    return {
        "success": True,
        "subscription": SubscriptionResponse.model_validate(sub).model_dump(),
        "trial": TrialResponse.model_validate(trial).model_dump() if trial else None,
    }


@router.post("/cancel", response_model=SubscriptionResponse)
def cancel(
    current_user: User = Depends(get_current_active_user),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    """Cancel at period end; the plan stays in effect until then."""
    return subscriptions.cancel(current_user.id)


@router.post("/reactivate", response_model=SubscriptionResponse)
def reactivate(
    current_user: User = Depends(get_current_active_user),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    return subscriptions.reactivate(current_user.id)


@router.get("/subscriptions", response_model=List[SubscriptionResponse])
def subscription_history(
    current_user: User = Depends(get_current_active_user),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    return subscriptions.history(current_user.id)


# ---------------------------------------------------------------------------
# Trials
# ---------------------------------------------------------------------------

@router.post("/trials/start", response_model=TrialResponse)
def start_trial(
    request: PlanChangeRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    trials: TrialManager = Depends(get_trial_manager),
):
    """
    Start a one-shot trial of a plan.

    Policy:
    - One trial per (user, plan), ever: a repeat returns 409
    """
    _require_plan(catalog, request.plan_id)
    trial = trials.start_trial(current_user.id, request.plan_id)
    db.commit()
    return trial


@router.get("/trials/available", response_model=List[PlanResponse])
def available_trials(
    current_user: User = Depends(get_current_active_user),
    trials: TrialManager = Depends(get_trial_manager),
):
    return [p.to_dict() for p in trials.available_trials(current_user.id)]


@router.get("/trials/{plan_id}", response_model=TrialStatusResponse)
def trial_status(
    plan_id: str,
    current_user: User = Depends(get_current_active_user),
    trials: TrialManager = Depends(get_trial_manager),
):
    return trials.get_trial_status(current_user.id, plan_id)


# ---------------------------------------------------------------------------
# Billing collaborator
# ---------------------------------------------------------------------------

@router.post("/events")
async def billing_events(
    request: Request,
    db: Session = Depends(get_db),
    credits: CreditEngine = Depends(get_credit_engine),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    """
    Signed events from the payment side (credit packs, renewals, conversions).

    Verifies signature and processes events idempotently.
    """
    if not settings.BILLING_WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="Billing events are not configured")

    sig = request.headers.get(SIGNATURE_HEADER)
    if not sig:
        raise HTTPException(status_code=400, detail=f"Missing {SIGNATURE_HEADER} header")

    payload = await request.body()
    if not verify_signature(payload, sig, settings.BILLING_WEBHOOK_SECRET):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature")

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Malformed event body")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Malformed event body")

    result = process_billing_event(db, event=event, credits=credits, subscriptions=subscriptions)
    return {"ok": True, "result": result}
