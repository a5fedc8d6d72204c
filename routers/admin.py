"""
Admin API Router

Credit grants/refunds on behalf of support, ledger reporting, trial
statistics and balance reconciliation. Owner/admin role only.

Every grant and refund carries the acting admin's id into the ledger.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field
import logging

from core.auth import require_admin
from core.database import get_db
from core.dependencies import (
    get_credit_engine,
    get_entitlement_resolver,
    get_subscription_service,
    get_trial_manager,
)
from models import CreditAccount, User
from schemas import LedgerEntryResponse, SubscriptionResponse, UserResponse
from services.credits import CreditEngine
from services.entitlements import EntitlementResolver
from services.subscriptions import SubscriptionService
from services.trials import TrialManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])


class GrantCreditsRequest(BaseModel):
    user_id: UUID
    # Strict: 2.5 or "5" is a caller error, not something to coerce.
    amount: int = Field(..., strict=True, gt=0)
    reason: str = Field(default="admin_grant", min_length=1, max_length=200)


class RefundRequest(BaseModel):
    transaction_id: UUID
    reason: Optional[str] = Field(default=None, max_length=500)


def _get_user_or_404(db: Session, user_id: UUID) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.post("/credits/grant")
def grant_credits(
    request: GrantCreditsRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    credits: CreditEngine = Depends(get_credit_engine),
):
    _get_user_or_404(db, request.user_id)
    balance = credits.grant(
        request.user_id,
        request.amount,
        reason=request.reason,
        metadata={"granted_by": str(current_user.id)},
        actor_id=current_user.id,
    )
    logger.info(f"Admin {current_user.id} granted {request.amount} credits to {request.user_id}")
    return {"success": True, "user_id": str(request.user_id), "new_balance": balance}


@router.post("/credits/refund")
def refund_credits(
    request: RefundRequest,
    current_user: User = Depends(require_admin),
    credits: CreditEngine = Depends(get_credit_engine),
):
    """Compensate a deduction. A second refund of the same transaction returns 409."""
    balance = credits.refund(request.transaction_id, actor_id=current_user.id)
    logger.info(
        f"Admin {current_user.id} refunded transaction {request.transaction_id}"
        + (f" ({request.reason})" if request.reason else "")
    )
    return {"success": True, "transaction_id": str(request.transaction_id), "new_balance": balance}


@router.get("/credits/statistics")
def credit_statistics(
    current_user: User = Depends(require_admin),
    credits: CreditEngine = Depends(get_credit_engine),
):
    """Total issued / used / refunded / outstanding across all users."""
    return credits.statistics()


@router.get("/trials/statistics")
def trial_statistics(
    current_user: User = Depends(require_admin),
    trials: TrialManager = Depends(get_trial_manager),
):
    return trials.trial_statistics()


@router.get("/users/{user_id}/credits")
def user_credit_detail(
    user_id: UUID,
    limit: int = Query(50, ge=1, le=500),
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    credits: CreditEngine = Depends(get_credit_engine),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
):
    user = _get_user_or_404(db, user_id)
    account = db.query(CreditAccount).filter(CreditAccount.user_id == user_id).first()
    plan, source = resolver.effective_plan(user_id)

    return {
        "user": UserResponse.model_validate(user).model_dump(),
        "effective_plan": plan.id,
        "plan_source": source,
        "balance": credits.get_balance(user_id),
        "cached_balance": account.balance if account else None,
        "feature_usage": credits.feature_usage(user_id),
        "history": [LedgerEntryResponse.model_validate(e).model_dump() for e in credits.history(user_id, limit=limit)],
    }


@router.post("/users/{user_id}/credits/reconcile")
def reconcile_user_credits(
    user_id: UUID,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    credits: CreditEngine = Depends(get_credit_engine),
):
    _get_user_or_404(db, user_id)
    return credits.reconcile(user_id)


@router.post("/users/{user_id}/trials/{plan_id}/convert", response_model=SubscriptionResponse)
def convert_trial(
    user_id: UUID,
    plan_id: str,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    """Manual conversion (payment settled out of band). 409 without an active trial."""
    _get_user_or_404(db, user_id)
    sub = subscriptions.activate_after_trial(user_id, plan_id)
    logger.info(f"Admin {current_user.id} converted trial {plan_id} for {user_id}")
    return sub
