"""
Credits API Router

Balance, transaction history, cost table and packages, plus a
side-effect-free entitlement preview for any metered action.
"""

from typing import List

from fastapi import APIRouter, Depends, Query

from core.auth import get_current_active_user
from core.dependencies import get_credit_engine, get_entitlement_resolver
from models import User
from schemas import CreditBalanceResponse, EntitlementDecisionResponse, LedgerEntryResponse
from services.credits import CREDIT_FEATURES, CREDIT_PACKAGES, CreditEngine
from services.entitlements import EntitlementResolver

router = APIRouter(prefix="/v1/credits", tags=["credits"])


@router.get("/balance", response_model=CreditBalanceResponse)
def get_balance(
    current_user: User = Depends(get_current_active_user),
    credits: CreditEngine = Depends(get_credit_engine),
):
    return {"user_id": current_user.id, "balance": credits.get_balance(current_user.id)}


@router.get("/history", response_model=List[LedgerEntryResponse])
def get_history(
    limit: int = Query(50, ge=1, le=500),
    current_user: User = Depends(get_current_active_user),
    credits: CreditEngine = Depends(get_credit_engine),
):
    return credits.history(current_user.id, limit=limit)


@router.get("/usage")
def get_feature_usage(
    days: int = Query(30, ge=1, le=365),
    current_user: User = Depends(get_current_active_user),
    credits: CreditEngine = Depends(get_credit_engine),
):
    """Credits spent per feature over the trailing window."""
    return credits.feature_usage(current_user.id, days=days)


@router.get("/features")
def list_features():
    return [
        {"key": f.key, "cost": f.cost, "name": f.name, "description": f.description}
        for f in CREDIT_FEATURES.values()
    ]


@router.get("/packages")
def list_packages():
    return [
        {"key": p.key, "credits": p.credits, "price": p.price, "name": p.name, "popular": p.popular}
        for p in CREDIT_PACKAGES.values()
    ]


@router.get("/features/{feature_key}/check")
def can_use_feature(
    feature_key: str,
    current_user: User = Depends(get_current_active_user),
    credits: CreditEngine = Depends(get_credit_engine),
):
    return credits.can_use_feature(current_user.id, feature_key)


@router.get("/entitlements/{action}", response_model=EntitlementDecisionResponse)
def preview_entitlement(
    action: str,
    current_user: User = Depends(get_current_active_user),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
):
    """What would happen if `action` ran now. Advisory only."""
    return resolver.check(current_user.id, action).to_dict()
