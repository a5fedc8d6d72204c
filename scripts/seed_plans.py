"""
Seed the subscription plan catalog.

Upserts the default plans (free / fitness / athlete / pro). Safe to re-run:
existing rows are updated in place, subscriptions keep pointing at them.

Usage:
    python scripts/seed_plans.py
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import get_db_sync  # noqa: E402
from services.plan_catalog import DEFAULT_PLANS, PlanCatalog  # noqa: E402


def main() -> int:
    db = get_db_sync()
    try:
        written = PlanCatalog(db).seed_plans(DEFAULT_PLANS)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    for plan in DEFAULT_PLANS:
        quotas = "/".join(
            str(plan[c]) for c in ("workouts_per_month", "coaching_cues_per_month", "modifications_per_month")
        )
        print(f"  {plan['id']:<14} ${plan['price_monthly']:>5}  quotas {quotas}  credits {plan['monthly_credits']}")
    print(f"Seeded {written} plans")
    return 0


if __name__ == "__main__":
    sys.exit(main())
