"""
Trial Manager

One-shot free trials per (user, plan).

- A user may trial each plan at most once, ever (unique row per pair).
- A trial is active iff now < trial_end and it has not converted.
- Conversion is the only mutation after creation (plus reminder bookkeeping).
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import AlreadyTrialed, NoActiveTrial, SubscriptionStateError
from models import Trial
from services.ledger import ensure_utc, utcnow
from services.plan_catalog import Plan, PlanCatalog

logger = logging.getLogger(__name__)


class TrialManager:

    def __init__(
        self,
        db: Session,
        catalog: Optional[PlanCatalog] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.catalog = catalog or PlanCatalog(db)
        self.clock = clock

    def get_trial(self, user_id: UUID, plan_id: str) -> Optional[Trial]:
        return (
            self.db.query(Trial)
            .filter(Trial.user_id == user_id, Trial.plan_id == plan_id)
            .first()
        )

    def start_trial(self, user_id: UUID, plan_id: str) -> Trial:
        """
        Create the trial row for (user, plan).

        Raises AlreadyTrialed if any row exists for the pair, whatever its
        expiry or conversion state.
        """
        plan = self.catalog.get_plan(plan_id)
        if not plan.is_paid:
            raise SubscriptionStateError(
                f"Plan {plan_id} does not offer a trial", plan_id=plan_id
            )

        if self.get_trial(user_id, plan_id) is not None:
            raise AlreadyTrialed(user_id, plan_id)

        now = self.clock()
        days = plan.trial_days or settings.DEFAULT_TRIAL_DAYS
        trial = Trial(
            user_id=user_id,
            plan_id=plan_id,
            trial_start=now,
            trial_end=now + timedelta(days=days),
            converted_to_paid=False,
        )

        # A concurrent start for the same pair loses on the unique constraint.
        try:
            with self.db.begin_nested():
                self.db.add(trial)
        except IntegrityError:
            raise AlreadyTrialed(user_id, plan_id)

        logger.info(
            "Trial started",
            extra={"extra_fields": {"user_id": str(user_id), "plan_id": plan_id, "trial_days": days}},
        )
        return trial

    def get_trial_status(self, user_id: UUID, plan_id: str) -> Dict[str, Any]:
        """Pure read. A missing record yields the no-history state."""
        trial = self.get_trial(user_id, plan_id)
        if trial is None:
            return {
                "plan_id": plan_id,
                "active": False,
                "days_remaining": 0,
                "converted": False,
                "has_trial_history": False,
                "trial_start": None,
                "trial_end": None,
                "conversion_date": None,
            }

        now = self.clock()
        trial_end = ensure_utc(trial.trial_end)
        active = now < trial_end and not trial.converted_to_paid
        days_remaining = math.ceil((trial_end - now).total_seconds() / 86400) if active else 0

        return {
            "plan_id": plan_id,
            "active": active,
            "days_remaining": days_remaining,
            "converted": bool(trial.converted_to_paid),
            "has_trial_history": True,
            "trial_start": ensure_utc(trial.trial_start),
            "trial_end": trial_end,
            "conversion_date": ensure_utc(trial.conversion_date),
        }

    def get_active_trial(self, user_id: UUID) -> Optional[Trial]:
        """Most recently started unconverted, unexpired trial on any plan."""
        return (
            self.db.query(Trial)
            .filter(
                Trial.user_id == user_id,
                Trial.converted_to_paid.is_(False),
                Trial.trial_end > self.clock(),
            )
            .order_by(Trial.trial_start.desc())
            .first()
        )

    def convert_trial(self, user_id: UUID, plan_id: str) -> None:
        """
        Mark the trial converted. Guarded by a conditional update so two
        concurrent conversions cannot both succeed.
        """
        now = self.clock()
        updated = (
            self.db.query(Trial)
            .filter(
                Trial.user_id == user_id,
                Trial.plan_id == plan_id,
                Trial.converted_to_paid.is_(False),
                Trial.trial_end > now,
            )
            .update(
                {Trial.converted_to_paid: True, Trial.conversion_date: now},
                synchronize_session=False,
            )
        )
        if updated == 0:
            raise NoActiveTrial(user_id, plan_id)

        logger.info(
            "Trial converted",
            extra={"extra_fields": {"user_id": str(user_id), "plan_id": plan_id}},
        )

    def available_trials(self, user_id: UUID) -> List[Plan]:
        """Paid plans the user has never trialed."""
        trialed = {
            plan_id for (plan_id,) in self.db.query(Trial.plan_id).filter(Trial.user_id == user_id).all()
        }
        return [
            plan for plan in self.catalog.list_plans()
            if plan.is_paid and plan.trial_days > 0 and plan.id not in trialed
        ]

    def trial_statistics(self) -> Dict[str, Any]:
        now = self.clock()
        total = self.db.query(Trial).count()
        converted = self.db.query(Trial).filter(Trial.converted_to_paid.is_(True)).count()
        active = (
            self.db.query(Trial)
            .filter(Trial.converted_to_paid.is_(False), Trial.trial_end > now)
            .count()
        )
        expired = total - converted - active

        return {
            "total_trials": total,
            "converted_trials": converted,
            "active_trials": active,
            "expired_trials": expired,
            "conversion_rate": round(converted / total * 100, 2) if total else 0.0,
        }

    # =========================================================================
    # REMINDER SWEEP
    # =========================================================================

    def due_for_reminder(self, lead_days: Optional[int] = None) -> List[Trial]:
        """Active trials ending within the lead window that were not reminded yet."""
        now = self.clock()
        horizon = now + timedelta(days=lead_days or settings.TRIAL_REMINDER_LEAD_DAYS)
        return (
            self.db.query(Trial)
            .filter(
                Trial.converted_to_paid.is_(False),
                Trial.reminder_sent_at.is_(None),
                Trial.trial_end > now,
                Trial.trial_end <= horizon,
            )
            .order_by(Trial.trial_end)
            .all()
        )

    def mark_reminded(self, trial: Trial) -> None:
        trial.reminder_sent_at = self.clock()
        self.db.flush()
