from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.auth import get_current_active_user
from core.database import get_db
from core.dependencies import get_entitlement_resolver, get_usage_recorder
from models import User
from services.entitlements import EntitlementResolver
from services.usage_recorder import UsageRecorder

router = APIRouter(prefix="/v1/usage", tags=["usage"])


@router.get("/summary")
def usage_summary(
    period: str = Query("current", pattern="^(current|last30|last90)$"),
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    recorder: UsageRecorder = Depends(get_usage_recorder),
):
    """Request analytics for the calendar month or a trailing window."""
    return recorder.summarize(db, current_user.id, period)


@router.get("/monthly")
def monthly_usage(
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    recorder: UsageRecorder = Depends(get_usage_recorder),
):
    plan, source = resolver.effective_plan(current_user.id)
    period = resolver.usage_period()
    return {
        "plan_id": plan.id,
        "plan_source": source,
        "period_start": period.start,
        "period_end": period.end,
        "usage": recorder.monthly_usage(db, current_user.id, plan),
    }
