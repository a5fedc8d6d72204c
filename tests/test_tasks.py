"""
Tests for the Celery tasks, run in-process (no broker).
"""
from datetime import timedelta

from core.database import SessionLocal
from models import CreditAccount, Trial
from services.ledger import utcnow
from services.subscriptions import SubscriptionService
from services.trials import TrialManager
from tasks.billing_tasks import (
    expire_lapsed_subscriptions_task,
    reconcile_credit_balances_task,
    record_usage_task,
    send_trial_reminders_task,
)

from tests.metering_helpers import FakeClock, grant_credits, usage_rows


class TestRecordUsageTask:

    def test_records_usage(self, db_session, test_user):
        db_session.commit()
        result = record_usage_task.run(
            str(test_user.id), "/v1/wod/generate_workout", "POST",
            {"status_code": 200, "category": "workouts", "action": "generate_workout"},
        )
        assert result["status"] == "success"
        assert len(usage_rows(test_user.id)) == 1

    def test_reports_failure_without_raising(self):
        result = record_usage_task.run("not-a-uuid", "/v1/wod/generate_workout", "POST")
        assert result["status"] == "error"


class TestTrialReminderTask:

    def test_reminds_once(self, db_session, make_user):
        ending, fresh = make_user(), make_user()
        with SessionLocal() as db:
            TrialManager(db, clock=FakeClock(utcnow() - timedelta(days=28))).start_trial(ending.id, "pro-2025")
            TrialManager(db).start_trial(fresh.id, "pro-2025")
            db.commit()

        assert send_trial_reminders_task.run() == {"status": "success", "reminded": 1}
        assert send_trial_reminders_task.run() == {"status": "success", "reminded": 0}

        with SessionLocal() as db:
            trial = db.query(Trial).filter(Trial.user_id == ending.id).one()
            assert trial.reminder_sent_at is not None


class TestExpireLapsedTask:

    def test_unconverted_trial_drops_to_default(self, db_session, test_user):
        with SessionLocal() as db:
            SubscriptionService(db, clock=FakeClock(utcnow() - timedelta(days=40))).upgrade(
                test_user.id, "fitness-2025"
            )

        assert expire_lapsed_subscriptions_task.run() == {"status": "success", "expired": 1}
        with SessionLocal() as db:
            assert SubscriptionService(db).get_live(test_user.id).plan_id == "free-2025"


class TestReconcileTask:

    def test_repairs_drift(self, db_session, make_user):
        drifted, healthy = make_user(), make_user()
        grant_credits(drifted.id, 4)
        grant_credits(healthy.id, 4)
        with SessionLocal() as db:
            db.query(CreditAccount).filter(CreditAccount.user_id == drifted.id).update({"balance": 0})
            db.commit()

        assert reconcile_credit_balances_task.run() == {"status": "success", "repaired": 1}
        assert reconcile_credit_balances_task.run() == {"status": "success", "repaired": 0}
