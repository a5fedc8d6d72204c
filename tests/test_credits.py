"""
Tests for the credit accounting engine.
"""
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from core.exceptions import (
    InsufficientCredits,
    InvalidCreditAmount,
    LedgerContentionError,
    MeteringValidationError,
    NotRefundable,
    UnknownCreditFeature,
)
from models import CreditAccount, LedgerEntry
from services.credits import CREDIT_FEATURES, CreditEngine, credit_cost
from services.ledger import CREDIT_DEDUCTION, CREDIT_GRANT


class TestCostTable:

    def test_fixed_costs(self):
        assert {k: f.cost for k, f in CREDIT_FEATURES.items()} == {
            "wod_refresh": 1,
            "custom_wod": 3,
            "form_analysis": 4,
            "nutrition_plan": 5,
            "recovery_session": 2,
            "competition_entry": 5,
            "personal_training": 8,
        }

    def test_unknown_feature(self):
        with pytest.raises(UnknownCreditFeature):
            credit_cost("teleport")


class TestGrant:

    def test_grant_returns_new_balance(self, credits, test_user):
        assert credits.grant(test_user.id, 10, "admin_grant") == 10
        assert credits.grant(test_user.id, 5, "promo") == 15

    @pytest.mark.parametrize("amount", [0, -5, 2.5, "5", True, None])
    def test_grant_rejects_non_positive_or_non_integer(self, credits, test_user, amount):
        with pytest.raises(InvalidCreditAmount):
            credits.grant(test_user.id, amount, "bad")

    def test_validation_errors_are_value_errors(self, credits, test_user):
        with pytest.raises(ValueError):
            credits.grant(test_user.id, -1, "bad")

    def test_grant_records_actor_and_reason(self, credits, db_session, test_user, admin_user):
        credits.grant(test_user.id, 7, "support_goodwill", actor_id=admin_user.id)
        entry = db_session.query(LedgerEntry).filter(LedgerEntry.user_id == test_user.id).one()
        assert entry.kind == CREDIT_GRANT
        assert entry.amount == 7
        assert entry.feature == "support_goodwill"
        assert entry.actor_id == admin_user.id

    def test_external_reference_makes_grant_idempotent(self, credits, db_session, test_user):
        assert credits.grant(test_user.id, 25, "purchase", external_reference="billing:evt_1") == 25
        assert credits.grant(test_user.id, 25, "purchase", external_reference="billing:evt_1") == 25
        assert db_session.query(LedgerEntry).count() == 1

    def test_grant_package(self, credits, test_user):
        assert credits.grant_package(test_user.id, "power") == 25

    def test_unknown_package(self, credits, test_user):
        with pytest.raises(MeteringValidationError):
            credits.grant_package(test_user.id, "mega")


class TestDeduct:

    def test_purchase_then_custom_wod(self, credits, db_session, test_user):
        """grant 25 (purchase), deduct custom_wod (3) -> balance 22, two ledger rows."""
        credits.grant(test_user.id, 25, "purchase")
        receipt = credits.deduct(test_user.id, "custom_wod", {"action": "generate_workout"})

        assert receipt.new_balance == 22
        assert receipt.amount == 3
        assert credits.get_balance(test_user.id) == 22

        rows = db_session.query(LedgerEntry).filter(LedgerEntry.user_id == test_user.id).all()
        assert sorted((r.kind, r.amount) for r in rows) == [(CREDIT_DEDUCTION, -3), (CREDIT_GRANT, 25)]
        deduction = next(r for r in rows if r.kind == CREDIT_DEDUCTION)
        assert deduction.id == receipt.transaction_id

    def test_insufficient_credits_reports_required_and_available(self, credits, test_user):
        credits.grant(test_user.id, 2, "promo")
        with pytest.raises(InsufficientCredits) as exc:
            credits.deduct(test_user.id, "custom_wod")

        assert exc.value.credits_required == 3
        assert exc.value.credits_available == 2
        assert exc.value.to_dict()["error"] == "insufficient_credits"
        assert credits.get_balance(test_user.id) == 2

    def test_zero_balance(self, credits, test_user):
        with pytest.raises(InsufficientCredits) as exc:
            credits.deduct(test_user.id, "custom_wod")
        assert (exc.value.credits_required, exc.value.credits_available) == (3, 0)

    def test_exact_balance_can_be_spent(self, credits, test_user):
        credits.grant(test_user.id, 8, "promo")
        assert credits.deduct(test_user.id, "personal_training").new_balance == 0

    def test_unknown_feature_is_validation_error(self, credits, test_user):
        with pytest.raises(UnknownCreditFeature):
            credits.deduct(test_user.id, "teleport")

    def test_cached_balance_tracks_ledger(self, credits, db_session, test_user):
        credits.grant(test_user.id, 10, "promo")
        credits.deduct(test_user.id, "form_analysis")
        account = db_session.query(CreditAccount).filter(CreditAccount.user_id == test_user.id).one()
        assert account.balance == 6


class TestRefund:

    def test_refund_compensates_without_touching_original(self, credits, db_session, test_user, admin_user):
        credits.grant(test_user.id, 10, "promo")
        receipt = credits.deduct(test_user.id, "nutrition_plan")

        assert credits.refund(receipt.transaction_id, actor_id=admin_user.id) == 10

        original = db_session.get(LedgerEntry, receipt.transaction_id)
        assert original.amount == -5
        compensation = (
            db_session.query(LedgerEntry)
            .filter(LedgerEntry.refund_of_id == receipt.transaction_id)
            .one()
        )
        assert compensation.kind == CREDIT_GRANT
        assert compensation.amount == 5
        assert compensation.actor_id == admin_user.id

    def test_refund_twice_fails(self, credits, test_user):
        credits.grant(test_user.id, 10, "promo")
        receipt = credits.deduct(test_user.id, "custom_wod")

        credits.refund(receipt.transaction_id)
        with pytest.raises(NotRefundable):
            credits.refund(receipt.transaction_id)
        assert credits.get_balance(test_user.id) == 10

    def test_unique_refund_reference_backs_the_check(self, credits, test_user, monkeypatch):
        credits.grant(test_user.id, 10, "promo")
        receipt = credits.deduct(test_user.id, "custom_wod")
        credits.refund(receipt.transaction_id)

        monkeypatch.setattr(credits.ledger, "compensation_for", lambda entry_id: None)
        with pytest.raises(NotRefundable):
            credits.refund(receipt.transaction_id)
        assert credits.get_balance(test_user.id) == 10

    def test_grants_are_not_refundable(self, credits, db_session, test_user):
        credits.grant(test_user.id, 10, "promo")
        grant = db_session.query(LedgerEntry).one()
        with pytest.raises(NotRefundable):
            credits.refund(grant.id)

    def test_unknown_transaction(self, credits):
        with pytest.raises(NotRefundable):
            credits.refund(uuid4())


class TestReconcile:

    def test_reconcile_repairs_drift(self, credits, db_session, test_user):
        credits.grant(test_user.id, 10, "promo")
        account = db_session.query(CreditAccount).filter(CreditAccount.user_id == test_user.id).one()
        account.balance = 99
        db_session.commit()

        result = credits.reconcile(test_user.id)
        assert result["repaired"] is True
        assert result["cached_balance"] == 99
        assert result["ledger_balance"] == 10

    def test_reconcile_all_counts_repairs(self, credits, db_session, make_user):
        a, b = make_user(), make_user()
        credits.grant(a.id, 5, "promo")
        credits.grant(b.id, 5, "promo")
        account = db_session.query(CreditAccount).filter(CreditAccount.user_id == a.id).one()
        account.balance = 0
        db_session.commit()

        assert credits.reconcile_all() == 1
        assert credits.reconcile_all() == 0


class TestContentionRetry:

    def test_retries_then_succeeds(self, db_session, test_user, clock):
        engine = CreditEngine(db_session, clock=clock, max_attempts=3, retry_backoff_s=0)
        calls = {"n": 0}
        original = engine._lock_account

        def flaky(user_id):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            return original(user_id)

        engine._lock_account = flaky
        assert engine.grant(test_user.id, 5, "promo") == 5
        assert calls["n"] == 2

    def test_gives_up_with_contention_error(self, db_session, test_user, clock):
        engine = CreditEngine(db_session, clock=clock, max_attempts=2, retry_backoff_s=0)

        def locked(user_id):
            raise OperationalError("SELECT", {}, Exception("could not serialize access"))

        engine._lock_account = locked
        with pytest.raises(LedgerContentionError):
            engine.grant(test_user.id, 5, "promo")
        assert engine.get_balance(test_user.id) == 0


class TestReads:

    def test_can_use_feature(self, credits, test_user):
        credits.grant(test_user.id, 3, "promo")
        check = credits.can_use_feature(test_user.id, "form_analysis")
        assert check == {
            "feature_key": "form_analysis",
            "can_use": False,
            "credits_required": 4,
            "credits_available": 3,
            "credits_needed": 1,
        }

    def test_feature_usage_excludes_refunded_and_old(self, credits, test_user, clock):
        credits.grant(test_user.id, 30, "promo")
        credits.deduct(test_user.id, "custom_wod")
        clock.advance(days=40)
        credits.deduct(test_user.id, "custom_wod")
        credits.deduct(test_user.id, "wod_refresh")
        refunded = credits.deduct(test_user.id, "form_analysis")
        credits.refund(refunded.transaction_id)

        usage = credits.feature_usage(test_user.id, days=30)
        assert usage["total_credits_spent"] == 4
        assert usage["by_feature"] == {
            "custom_wod": {"count": 1, "credits": 3},
            "wod_refresh": {"count": 1, "credits": 1},
        }

    def test_history_newest_first(self, credits, test_user, clock):
        credits.grant(test_user.id, 10, "promo")
        clock.advance(minutes=1)
        credits.deduct(test_user.id, "wod_refresh")
        history = credits.history(test_user.id)
        assert [e.kind for e in history] == [CREDIT_DEDUCTION, CREDIT_GRANT]
