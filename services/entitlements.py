"""
Entitlement Resolver

The decision point every metered action passes through before any
expensive work begins.

Usage:
    resolver = EntitlementResolver(db)
    decision = resolver.check(user_id, "generate_workout")
    if not decision.allowed:
        decision.raise_for_denial()

The decision is advisory: a credit-funded action is re-validated by
CreditEngine.deduct under the per-user lock.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from core.exceptions import (
    EntitlementError,
    FeatureNotIncluded,
    QuotaExceededNoCredits,
    UnknownAction,
)
from models import Subscription
from services.credits import credit_cost
from services.ledger import LedgerStore, UsagePeriod, current_usage_period, ensure_utc, utcnow
from services.plan_catalog import UNLIMITED, Plan, PlanCatalog
from services.trials import TrialManager

logger = logging.getLogger(__name__)


class FundedBy(str, Enum):
    QUOTA = "quota"
    CREDITS = "credits"
    UNLIMITED = "unlimited"


@dataclass(frozen=True)
class MeteredAction:
    """
    A billable action.

    category: quota category counted in usage records (None = no monthly allowance)
    plan_feature: feature flag gating the action (None = not plan-gated)
    credit_feature: credit cost key used once quota is exhausted
    """
    key: str
    category: Optional[str]
    plan_feature: Optional[str]
    credit_feature: str


METERED_ACTIONS: Dict[str, MeteredAction] = {
    a.key: a for a in [
        MeteredAction("generate_workout", "workouts", None, "custom_wod"),
        MeteredAction("refresh_workout", "workouts", None, "wod_refresh"),
        MeteredAction("coaching_cues", "coaching_cues", "coaching_cues", "wod_refresh"),
        MeteredAction("modifications", "modifications", "modifications", "wod_refresh"),
        MeteredAction("form_analysis", None, "form_analysis", "form_analysis"),
        MeteredAction("nutrition_plan", None, "nutrition", "nutrition_plan"),
        MeteredAction("recovery_session", None, "recovery", "recovery_session"),
        MeteredAction("progressive_program", None, "progressive_programs", "personal_training"),
        MeteredAction("competition_entry", None, None, "competition_entry"),
    ]
}


def get_metered_action(action: str) -> MeteredAction:
    metered = METERED_ACTIONS.get(action)
    if metered is None:
        raise UnknownAction(action)
    return metered


@dataclass
class EntitlementDecision:
    """Tagged allow/deny result. Callers branch on `allowed` / `denial.kind`."""
    allowed: bool
    action: str
    plan_id: str
    plan_source: str
    funded_by: Optional[FundedBy] = None
    remaining: Optional[int] = None
    credits_required: int = 0
    credits_available: Optional[int] = None
    quota: Optional[int] = None
    used: Optional[int] = None
    category: Optional[str] = None
    credit_feature: Optional[str] = None
    denial: Optional[EntitlementError] = field(default=None, repr=False)

    @property
    def denial_kind(self) -> Optional[str]:
        return self.denial.kind.value if self.denial is not None else None

    def raise_for_denial(self) -> None:
        if self.denial is not None:
            raise self.denial

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "action": self.action,
            "plan_id": self.plan_id,
            "plan_source": self.plan_source,
            "funded_by": self.funded_by.value if self.funded_by else None,
            "remaining": self.remaining,
            "credits_required": self.credits_required,
            "credits_available": self.credits_available,
            "quota": self.quota,
            "used": self.used,
            "denial": self.denial.to_dict() if self.denial is not None else None,
        }


class EntitlementResolver:
    """
    Combines Plan Catalog, Trial Manager and Ledger into a per-request decision.
    """

    def __init__(
        self,
        db: Session,
        catalog: Optional[PlanCatalog] = None,
        trials: Optional[TrialManager] = None,
        ledger: Optional[LedgerStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.catalog = catalog or PlanCatalog(db)
        self.trials = trials or TrialManager(db, self.catalog, clock=clock)
        self.ledger = ledger or LedgerStore(db)

    def effective_plan(self, user_id: UUID) -> Tuple[Plan, str]:
        """
        Paid active subscription, else any active trial, else the default plan.
        Returns (plan, source) with source in subscription|trial|default.
        """
        now = self.clock()
        sub = (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status == "active")
            .first()
        )
        if sub is not None:
            plan = self.catalog.get_plan(sub.plan_id)
            period_end = ensure_utc(sub.current_period_end)
            if plan.is_paid and (period_end is None or period_end > now):
                return plan, "subscription"

        trial = self.trials.get_active_trial(user_id)
        if trial is not None:
            return self.catalog.get_plan(trial.plan_id), "trial"

        return self.catalog.get_default_plan(), "default"

    def usage_period(self) -> UsagePeriod:
        return current_usage_period(self.clock())

    def check(self, user_id: UUID, action: str) -> EntitlementDecision:
        metered = get_metered_action(action)
        cost = credit_cost(metered.credit_feature)
        plan, source = self.effective_plan(user_id)

        decision = EntitlementDecision(
            allowed=False,
            action=action,
            plan_id=plan.id,
            plan_source=source,
            credits_required=cost,
            category=metered.category,
            credit_feature=metered.credit_feature,
        )

        quota = plan.quota_for(metered.category)
        feature_included = (
            metered.plan_feature is None or self.catalog.is_feature_included(plan, metered.plan_feature)
        )

        if quota is None:
            if not feature_included:
                decision.denial = FeatureNotIncluded(action, plan.id, metered.plan_feature)
                logger.info(f"Entitlement denied for user {user_id}: {action} not in {plan.id}")
                return decision
            if metered.plan_feature is not None:
                # Included feature without a monthly allowance.
                quota = UNLIMITED
            else:
                # Pure credit purchase.
                quota = 0

        decision.quota = quota

        if quota == UNLIMITED:
            decision.allowed = True
            decision.funded_by = FundedBy.UNLIMITED
            return decision

        used = 0
        if metered.category is not None:
            used = self.ledger.count_usage(user_id, metered.category, self.usage_period())
        decision.used = used

        if used < quota:
            decision.allowed = True
            decision.funded_by = FundedBy.QUOTA
            decision.remaining = quota - used - 1
            return decision

        balance = self.ledger.balance_of(user_id)
        decision.credits_available = balance
        decision.remaining = 0

        if balance >= cost:
            decision.allowed = True
            decision.funded_by = FundedBy.CREDITS
            return decision

        decision.denial = QuotaExceededNoCredits(
            action=action,
            plan_id=plan.id,
            quota=quota,
            used=used,
            credits_required=cost,
            credits_available=balance,
        )
        logger.info(
            f"Entitlement denied for user {user_id}: {action} quota {used}/{quota}, "
            f"credits {balance}/{cost}"
        )
        return decision
