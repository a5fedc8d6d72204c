"""
Plan Catalog

Read-mostly registry of subscription plans: a quota vector per usage
category and a feature bitset per plan.

Usage:
    catalog = PlanCatalog(db)
    plan = catalog.get_plan("athlete-2025")
    if catalog.is_feature_included(plan, "form_analysis"):
        ...

Plans are returned as frozen dataclasses; callers cannot mutate them.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import PlanNotFoundError, UnknownPlanFeature
from models import SubscriptionPlan

logger = logging.getLogger(__name__)


UNLIMITED = -1


class QuotaCategory(str, Enum):
    """Monthly-allowance categories counted against usage records."""
    WORKOUTS = "workouts"
    COACHING_CUES = "coaching_cues"
    MODIFICATIONS = "modifications"


class PlanFeature(str, Enum):
    """Feature bitset entries."""
    COACHING_CUES = "coaching_cues"
    MODIFICATIONS = "modifications"
    NUTRITION = "nutrition"
    RECOVERY = "recovery"
    FORM_ANALYSIS = "form_analysis"
    PROGRESSIVE_PROGRAMS = "progressive_programs"


PLAN_FEATURES: FrozenSet[str] = frozenset(f.value for f in PlanFeature)

# Category -> SubscriptionPlan column
_QUOTA_COLUMNS = {
    QuotaCategory.WORKOUTS.value: "workouts_per_month",
    QuotaCategory.COACHING_CUES.value: "coaching_cues_per_month",
    QuotaCategory.MODIFICATIONS.value: "modifications_per_month",
}

# Feature -> SubscriptionPlan column
_FEATURE_COLUMNS = {
    PlanFeature.COACHING_CUES.value: "has_coaching_cues",
    PlanFeature.MODIFICATIONS.value: "has_modifications",
    PlanFeature.NUTRITION.value: "has_nutrition",
    PlanFeature.RECOVERY.value: "has_recovery",
    PlanFeature.FORM_ANALYSIS.value: "has_form_analysis",
    PlanFeature.PROGRESSIVE_PROGRAMS.value: "has_progressive_programs",
}


@dataclass(frozen=True)
class Plan:
    """Immutable view of a catalog entry."""
    id: str
    name: str
    display_name: str
    price_monthly: Decimal
    quotas: Mapping[str, int]
    features: FrozenSet[str]
    trial_days: int = 0
    monthly_credits: int = 0
    description: Optional[str] = None
    sort_order: int = 0

    @property
    def is_paid(self) -> bool:
        return self.price_monthly > 0

    def quota_for(self, category: Optional[str]) -> Optional[int]:
        """Quota for a category, or None when the plan has no such quota field."""
        if category is None:
            return None
        return self.quotas.get(category)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "price_monthly": float(self.price_monthly),
            "quotas": dict(self.quotas),
            "features": sorted(self.features),
            "trial_days": self.trial_days,
            "monthly_credits": self.monthly_credits,
        }


def _plan_from_row(row: SubscriptionPlan) -> Plan:
    return Plan(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        description=row.description,
        price_monthly=Decimal(str(row.price_monthly or 0)),
        quotas=MappingProxyType({
            category: int(getattr(row, column)) for category, column in _QUOTA_COLUMNS.items()
        }),
        features=frozenset(
            feature for feature, column in _FEATURE_COLUMNS.items() if getattr(row, column)
        ),
        trial_days=int(row.trial_days or 0),
        monthly_credits=int(row.monthly_credits or 0),
        sort_order=int(row.sort_order or 0),
    )


# Seed data for the catalog. Ids carry the pricing generation.
DEFAULT_PLANS: List[Dict] = [
    {
        "id": "free-2025",
        "name": "free",
        "display_name": "Free",
        "description": "Basic workout generation to get started",
        "price_monthly": Decimal("0.00"),
        "workouts_per_month": 10,
        "coaching_cues_per_month": 0,
        "modifications_per_month": 3,
        "features": [],
        "trial_days": 0,
        "monthly_credits": 0,
        "sort_order": 0,
    },
    {
        "id": "fitness-2025",
        "name": "fitness",
        "display_name": "Fitness",
        "description": "Regular training with coaching cues and modifications",
        "price_monthly": Decimal("2.99"),
        "workouts_per_month": 30,
        "coaching_cues_per_month": 30,
        "modifications_per_month": 30,
        "features": ["coaching_cues", "modifications"],
        "trial_days": 30,
        "monthly_credits": 5,
        "sort_order": 1,
    },
    {
        "id": "athlete-2025",
        "name": "athlete",
        "display_name": "Athlete",
        "description": "Unlimited workouts with form analysis and progressive programs",
        "price_monthly": Decimal("5.99"),
        "workouts_per_month": UNLIMITED,
        "coaching_cues_per_month": UNLIMITED,
        "modifications_per_month": UNLIMITED,
        "features": ["coaching_cues", "modifications", "form_analysis", "progressive_programs"],
        "trial_days": 30,
        "monthly_credits": 15,
        "sort_order": 2,
    },
    {
        "id": "pro-2025",
        "name": "pro",
        "display_name": "Pro",
        "description": "Everything, including nutrition and recovery guidance",
        "price_monthly": Decimal("9.99"),
        "workouts_per_month": UNLIMITED,
        "coaching_cues_per_month": UNLIMITED,
        "modifications_per_month": UNLIMITED,
        "features": sorted(PLAN_FEATURES),
        "trial_days": 30,
        "monthly_credits": 30,
        "sort_order": 3,
    },
]


class PlanCatalog:
    """
    Lookup over `subscription_plans`.

    No side effects except `seed_plans`, which is administrative tooling.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_plan(self, plan_id: str) -> Plan:
        """
        Raises PlanNotFoundError when the id is unknown. That is catalog
        corruption from the caller's point of view (500-class).
        """
        row = self.db.query(SubscriptionPlan).filter(SubscriptionPlan.id == plan_id).first()
        if row is None:
            raise PlanNotFoundError(plan_id)
        return _plan_from_row(row)

    def get_default_plan(self) -> Plan:
        return self.get_plan(settings.DEFAULT_PLAN_ID)

    def list_plans(self, include_inactive: bool = False) -> List[Plan]:
        query = self.db.query(SubscriptionPlan)
        if not include_inactive:
            query = query.filter(SubscriptionPlan.is_active.is_(True))
        rows = query.order_by(SubscriptionPlan.sort_order, SubscriptionPlan.id).all()
        return [_plan_from_row(r) for r in rows]

    @staticmethod
    def is_feature_included(plan: Plan, feature: str) -> bool:
        if feature not in PLAN_FEATURES:
            raise UnknownPlanFeature(feature)
        return feature in plan.features

    def seed_plans(self, plans: Optional[List[Dict]] = None) -> int:
        """
        Upsert catalog rows. Returns the number of plans written.

        Does not commit.
        """
        written = 0
        for definition in plans or DEFAULT_PLANS:
            row = self.db.query(SubscriptionPlan).filter(SubscriptionPlan.id == definition["id"]).first()
            if row is None:
                row = SubscriptionPlan(id=definition["id"])
                self.db.add(row)

            row.name = definition["name"]
            row.display_name = definition["display_name"]
            row.description = definition.get("description")
            row.price_monthly = definition["price_monthly"]
            for category, column in _QUOTA_COLUMNS.items():
                setattr(row, column, definition[column])
            features = set(definition.get("features", []))
            unknown = features - PLAN_FEATURES
            if unknown:
                raise UnknownPlanFeature(sorted(unknown)[0])
            for feature, column in _FEATURE_COLUMNS.items():
                setattr(row, column, feature in features)
            row.trial_days = definition.get("trial_days", 0)
            row.monthly_credits = definition.get("monthly_credits", 0)
            row.sort_order = definition.get("sort_order", 0)
            row.is_active = definition.get("is_active", True)
            written += 1

        self.db.flush()
        logger.info(f"Seeded {written} subscription plans")
        return written
