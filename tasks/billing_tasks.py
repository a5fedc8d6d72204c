"""
Metering Background Tasks

Usage recording off the request path, plus the periodic sweeps run by
Celery Beat: trial reminders, lapsed-subscription expiry and credit
balance reconciliation.
"""

from typing import Any, Dict, Optional
from celery import Task
from sqlalchemy.orm import Session
from core.database import get_db_sync
from tasks import celery_app
from services.credits import CreditEngine
from services.subscriptions import SubscriptionService
from services.trials import TrialManager
from services.usage_recorder import UsageRecorder
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.record_usage", bind=True)
def record_usage_task(
    self: Task,
    user_id: str,
    endpoint: str,
    method: str,
    outcome: Optional[Dict[str, Any]] = None,
) -> Dict:
    """
    Append one usage_record for a completed request.

    The recorder never raises; a failed write is logged there and reported
    here without a retry (a retry could double-count quota).
    """
    recorded = UsageRecorder().record(user_id, endpoint, method, outcome)
    return {"status": "success" if recorded else "error", "user_id": user_id, "endpoint": endpoint}


@celery_app.task(name="tasks.send_trial_reminders", bind=True)
def send_trial_reminders_task(self: Task) -> Dict:
    """
    Flag trials that end within the reminder window.

    Delivery belongs to the notification side; this marks each trial once
    and logs the reminder so it can be picked up from the log stream.
    """
    db: Session = get_db_sync()

    try:
        trials = TrialManager(db)
        due = trials.due_for_reminder()

        for trial in due:
            logger.info(
                f"Trial ending soon for user {trial.user_id}",
                extra={
                    "extra_fields": {
                        "event": "trial_reminder",
                        "user_id": str(trial.user_id),
                        "plan_id": trial.plan_id,
                        "trial_end": trial.trial_end.isoformat(),
                    }
                },
            )
            trials.mark_reminded(trial)

        db.commit()
        return {"status": "success", "reminded": len(due)}

    except Exception as e:
        db.rollback()
        logger.error(f"Error in send_trial_reminders_task: {str(e)}", exc_info=True)
        raise
    finally:
        db.close()


@celery_app.task(name="tasks.expire_lapsed_subscriptions", bind=True)
def expire_lapsed_subscriptions_task(self: Task) -> Dict:
    """Move unconverted trials and ended cancellations to the default plan."""
    db: Session = get_db_sync()

    try:
        expired = SubscriptionService(db).expire_lapsed()
        return {"status": "success", "expired": expired}

    except Exception as e:
        db.rollback()
        logger.error(f"Error in expire_lapsed_subscriptions_task: {str(e)}", exc_info=True)
        raise
    finally:
        db.close()


@celery_app.task(name="tasks.reconcile_credit_balances", bind=True)
def reconcile_credit_balances_task(self: Task) -> Dict:
    """Re-derive every cached balance from the ledger; repairs are logged as warnings."""
    db: Session = get_db_sync()

    try:
        repaired = CreditEngine(db).reconcile_all()
        if repaired:
            logger.warning(f"Credit reconciliation repaired {repaired} balances")
        return {"status": "success", "repaired": repaired}

    except Exception as e:
        db.rollback()
        logger.error(f"Error in reconcile_credit_balances_task: {str(e)}", exc_info=True)
        raise
    finally:
        db.close()
