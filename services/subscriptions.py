"""
Subscription lifecycle.

Keeps at most one `active`-or-`trialing` subscription per user. Every new
subscription supersedes the previous live row (-> `cancelled`) inside one
savepoint; the partial unique index catches a concurrent writer.

Rows are never deleted. Plan allowances (monthly included credits) are
granted through the CreditEngine with a per-period external reference so a
redelivered renewal never double-grants.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import SubscriptionStateError
from models import Subscription, Trial
from services.credits import CreditEngine
from services.ledger import ensure_utc, utcnow
from services.plan_catalog import Plan, PlanCatalog
from services.trials import TrialManager

logger = logging.getLogger(__name__)


ACTIVE = "active"
TRIALING = "trialing"
CANCELLED = "cancelled"
LIVE_STATUSES = (ACTIVE, TRIALING)


class SubscriptionService:

    def __init__(
        self,
        db: Session,
        catalog: Optional[PlanCatalog] = None,
        trials: Optional[TrialManager] = None,
        credits: Optional[CreditEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.catalog = catalog or PlanCatalog(db)
        self.trials = trials or TrialManager(db, self.catalog, clock=clock)
        self.credits = credits or CreditEngine(db, clock=clock)

    # =========================================================================
    # READS
    # =========================================================================

    def get_live(self, user_id: UUID, for_update: bool = False) -> Optional[Subscription]:
        query = self.db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(LIVE_STATUSES),
        )
        if for_update:
            query = query.with_for_update(of=Subscription)
        return query.first()

    def history(self, user_id: UUID):
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .all()
        )

    # =========================================================================
    # SUPERSEDE
    # =========================================================================

    def _period_end(self, plan: Plan, start: datetime) -> Optional[datetime]:
        # The zero-cost plan never lapses.
        if not plan.is_paid:
            return None
        return start + timedelta(days=settings.SUBSCRIPTION_PERIOD_DAYS)

    def _supersede(
        self,
        user_id: UUID,
        plan: Plan,
        status: str = ACTIVE,
        period_end: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """Cancel any live row and insert the replacement. Does not commit."""
        now = self.clock()
        if period_end is None:
            period_end = self._period_end(plan, now)

        for attempt in range(2):
            try:
                with self.db.begin_nested():
                    for old in (
                        self.db.query(Subscription)
                        .filter(Subscription.user_id == user_id, Subscription.status.in_(LIVE_STATUSES))
                        .with_for_update(of=Subscription)
                        .all()
                    ):
                        old.status = CANCELLED
                        old.cancelled_at = now
                        old.cancel_at_period_end = False
                    # Old rows must leave the live set before the new one enters it.
                    self.db.flush()

                    sub = Subscription(
                        user_id=user_id,
                        plan_id=plan.id,
                        status=status,
                        current_period_start=now,
                        current_period_end=period_end,
                        cancel_at_period_end=False,
                        subscription_metadata=metadata or {},
                    )
                    self.db.add(sub)
                return sub
            except IntegrityError:
                if attempt:
                    raise SubscriptionStateError(
                        "Concurrent subscription change; retry", user_id=str(user_id)
                    )
                logger.warning(f"Live subscription race for user {user_id}, retrying supersede")

    def _grant_allowance(self, sub: Subscription, period_start: datetime) -> None:
        plan = self.catalog.get_plan(sub.plan_id)
        if plan.monthly_credits <= 0:
            return
        self.credits.grant(
            sub.user_id,
            plan.monthly_credits,
            reason="plan_allowance",
            metadata={"plan_id": plan.id, "subscription_id": str(sub.id)},
            external_reference=f"allowance:{sub.id}:{ensure_utc(period_start).date().isoformat()}",
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def create(
        self,
        user_id: UUID,
        plan_id: str,
        status: str = ACTIVE,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """Start a subscription, superseding whatever was live."""
        plan = self.catalog.get_plan(plan_id)
        sub = self._supersede(user_id, plan, status=status, metadata=metadata)
        self.db.commit()
        logger.info(
            "Subscription created",
            extra={"extra_fields": {"user_id": str(user_id), "plan_id": plan_id, "status": status}},
        )
        return sub

    def ensure_default(self, user_id: UUID) -> Subscription:
        """Signup path: give the user the default plan unless something is live."""
        live = self.get_live(user_id)
        if live is not None:
            return live
        return self.create(user_id, settings.DEFAULT_PLAN_ID, metadata={"source": "signup"})

    def upgrade(self, user_id: UUID, plan_id: str) -> Tuple[Subscription, Optional[Trial]]:
        """
        Move to a paid plan. A user who never trialed the plan starts in
        `trialing`; otherwise the subscription is `active` right away and the
        first period's allowance is granted.
        """
        plan = self.catalog.get_plan(plan_id)
        if not plan.is_paid:
            raise SubscriptionStateError(
                "The free plan is reached by cancelling the paid subscription", plan_id=plan_id
            )

        live = self.get_live(user_id)
        if live is not None and live.plan_id == plan_id:
            raise SubscriptionStateError(
                f"Already subscribed to {plan_id}", plan_id=plan_id, status=live.status
            )

        trial = None
        if plan.trial_days > 0 and self.trials.get_trial(user_id, plan_id) is None:
            trial = self.trials.start_trial(user_id, plan_id)
            sub = self._supersede(
                user_id, plan, status=TRIALING,
                period_end=trial.trial_end,
                metadata={"source": "upgrade", "trial_id": str(trial.id)},
            )
        else:
            sub = self._supersede(user_id, plan, status=ACTIVE, metadata={"source": "upgrade"})
        self.db.commit()

        if sub.status == ACTIVE:
            self._grant_allowance(sub, sub.current_period_start)

        logger.info(
            "Subscription upgraded",
            extra={"extra_fields": {
                "user_id": str(user_id), "plan_id": plan_id, "status": sub.status,
                "trial": trial is not None,
            }},
        )
        return sub, trial

    def cancel(self, user_id: UUID) -> Subscription:
        """Cancel at period end. The plan stays in effect until then."""
        live = self.get_live(user_id, for_update=True)
        if live is None or not live.plan.price_monthly or live.plan.price_monthly <= 0:
            raise SubscriptionStateError("No paid subscription to cancel", user_id=str(user_id))

        if not live.cancel_at_period_end:
            live.cancel_at_period_end = True
            self.db.commit()
            logger.info(f"Subscription {live.id} for user {user_id} set to cancel at period end")
        return live

    def reactivate(self, user_id: UUID) -> Subscription:
        live = self.get_live(user_id, for_update=True)
        if live is None or not live.cancel_at_period_end:
            raise SubscriptionStateError(
                "Subscription is not scheduled for cancellation", user_id=str(user_id)
            )
        live.cancel_at_period_end = False
        self.db.commit()
        logger.info(f"Subscription {live.id} for user {user_id} reactivated")
        return live

    def renew(self, user_id: UUID) -> Subscription:
        """
        Roll an active paid subscription into its next period and grant the
        plan allowance. A subscription flagged cancel-at-period-end ends
        instead and the user drops to the default plan.
        """
        live = self.get_live(user_id, for_update=True)
        if live is None or live.status != ACTIVE or live.current_period_end is None:
            raise SubscriptionStateError("No renewable subscription", user_id=str(user_id))

        if live.cancel_at_period_end:
            default = self.catalog.get_default_plan()
            sub = self._supersede(user_id, default, metadata={"source": "period_end"})
            self.db.commit()
            logger.info(f"Subscription {live.id} ended at period end; user {user_id} moved to {default.id}")
            return sub

        start = ensure_utc(live.current_period_end)
        live.current_period_start = start
        live.current_period_end = start + timedelta(days=settings.SUBSCRIPTION_PERIOD_DAYS)
        self.db.commit()

        self._grant_allowance(live, start)
        logger.info(
            "Subscription renewed",
            extra={"extra_fields": {
                "user_id": str(user_id), "plan_id": live.plan_id,
                "period_end": live.current_period_end.isoformat(),
            }},
        )
        return live

    def activate_after_trial(self, user_id: UUID, plan_id: str) -> Subscription:
        """Trial converted to paid: the trialing row becomes active."""
        self.trials.convert_trial(user_id, plan_id)

        now = self.clock()
        live = self.get_live(user_id, for_update=True)
        if live is not None and live.status == TRIALING and live.plan_id == plan_id:
            live.status = ACTIVE
            live.current_period_start = now
            live.current_period_end = now + timedelta(days=settings.SUBSCRIPTION_PERIOD_DAYS)
            sub = live
        else:
            plan = self.catalog.get_plan(plan_id)
            sub = self._supersede(user_id, plan, status=ACTIVE, metadata={"source": "trial_conversion"})
        self.db.commit()

        self._grant_allowance(sub, sub.current_period_start)
        logger.info(f"Trial for {plan_id} converted; subscription {sub.id} active for user {user_id}")
        return sub

    def expire_lapsed(self) -> int:
        """
        Periodic sweep: trialing rows whose trial ended unconverted, and
        cancel-at-period-end rows past their period, drop to the default plan.
        """
        now = self.clock()
        lapsed = (
            self.db.query(Subscription)
            .filter(
                Subscription.current_period_end.isnot(None),
                Subscription.current_period_end <= now,
                (
                    (Subscription.status == TRIALING)
                    | ((Subscription.status == ACTIVE) & Subscription.cancel_at_period_end.is_(True))
                ),
            )
            .all()
        )
        if not lapsed:
            return 0

        default = self.catalog.get_default_plan()
        for sub in lapsed:
            self._supersede(sub.user_id, default, metadata={"source": "lapsed", "previous": str(sub.id)})
        self.db.commit()

        logger.info(f"Moved {len(lapsed)} lapsed subscriptions to {default.id}")
        return len(lapsed)
