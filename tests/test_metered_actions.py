"""
Tests for metered action orchestration: resolve, generate, then deduct.
"""
import pytest

from core.database import SessionLocal
from core.exceptions import (
    FeatureNotIncluded,
    GenerationTimeout,
    ProviderError,
    QuotaExceededNoCredits,
)
from models import LedgerEntry
from services.ai_generation import AIGenerationService
from services.credits import CreditEngine
from services.entitlements import FundedBy
from services.ledger import CREDIT_DEDUCTION
from services.metered_actions import MeteredActionService

from tests.metering_helpers import FakeProvider, failing_provider, timing_out_provider


@pytest.fixture
def make_service(db_session, resolver, credits, clock):
    def _make(*providers):
        return MeteredActionService(
            db_session,
            AIGenerationService(providers=list(providers)),
            resolver=resolver,
            credits=credits,
            clock=clock,
        )
    return _make


def _deductions(db_session, user_id):
    return db_session.query(LedgerEntry).filter(
        LedgerEntry.user_id == user_id, LedgerEntry.kind == CREDIT_DEDUCTION
    ).count()


class TestQuotaFunded:

    def test_runs_without_charging(self, make_service, db_session, test_user):
        provider = FakeProvider()
        outcome = make_service(provider).execute(test_user.id, "generate_workout", {"duration_minutes": 30})

        assert provider.calls == 1
        assert outcome.content == '{"workout": "5 rounds"}'
        assert outcome.provider_used == "fake"
        assert outcome.decision.funded_by == FundedBy.QUOTA
        assert outcome.receipt is None
        assert outcome.to_dict()["credits_charged"] == 0
        assert outcome.tokens_or_cost_hint["input_tokens"] == 120
        assert _deductions(db_session, test_user.id) == 0

    def test_unlimited_feature(self, make_service, subscriptions, test_user):
        subscriptions.create(test_user.id, "athlete-2025")
        outcome = make_service(FakeProvider()).execute(test_user.id, "form_analysis", {})
        assert outcome.to_dict()["funded_by"] == "unlimited"


class TestCreditFunded:

    def test_deducts_after_generation(self, make_service, credits, add_usage, db_session, test_user):
        credits.grant(test_user.id, 5, "purchase")
        add_usage(test_user.id, "workouts", 10)

        outcome = make_service(FakeProvider()).execute(test_user.id, "generate_workout", {})
        body = outcome.to_dict()
        assert body["funded_by"] == "credits"
        assert body["credits_charged"] == 3
        assert body["credit_balance"] == 2
        assert credits.get_balance(test_user.id) == 2

        deduction = db_session.query(LedgerEntry).filter(LedgerEntry.kind == CREDIT_DEDUCTION).one()
        assert deduction.entry_metadata["provider"] == "fake"
        assert deduction.entry_metadata["action"] == "generate_workout"

    def test_provider_failure_charges_nothing(self, make_service, credits, add_usage, db_session, test_user):
        credits.grant(test_user.id, 5, "purchase")
        add_usage(test_user.id, "workouts", 10)

        with pytest.raises(ProviderError):
            make_service(failing_provider()).execute(test_user.id, "generate_workout", {})
        assert credits.get_balance(test_user.id) == 5
        assert _deductions(db_session, test_user.id) == 0

    def test_timeout_charges_nothing(self, make_service, credits, add_usage, db_session, test_user):
        credits.grant(test_user.id, 5, "purchase")
        add_usage(test_user.id, "workouts", 10)

        with pytest.raises(GenerationTimeout):
            make_service(timing_out_provider()).execute(test_user.id, "generate_workout", {})
        assert credits.get_balance(test_user.id) == 5

    def test_fallback_provider_is_charged_once(self, make_service, credits, add_usage, test_user):
        credits.grant(test_user.id, 5, "purchase")
        add_usage(test_user.id, "workouts", 10)

        outcome = make_service(failing_provider("primary"), FakeProvider("backup")).execute(
            test_user.id, "generate_workout", {}
        )
        assert outcome.provider_used == "backup"
        assert credits.get_balance(test_user.id) == 2


class TestDenials:

    def test_denied_before_generation(self, make_service, add_usage, test_user):
        add_usage(test_user.id, "workouts", 10)
        provider = FakeProvider()

        with pytest.raises(QuotaExceededNoCredits) as exc:
            make_service(provider).execute(test_user.id, "generate_workout", {})
        assert (exc.value.credits_required, exc.value.credits_available) == (3, 0)
        assert provider.calls == 0

    def test_feature_not_included(self, make_service, test_user):
        provider = FakeProvider()
        with pytest.raises(FeatureNotIncluded):
            make_service(provider).execute(test_user.id, "nutrition_plan", {})
        assert provider.calls == 0


class SpendingProvider(FakeProvider):
    """Provider whose call lets a concurrent request drain the balance."""

    def __init__(self, user_id, feature_key):
        super().__init__(name="racy")
        self.user_id = user_id
        self.feature_key = feature_key

    def complete(self, system, prompt):
        with SessionLocal() as other:
            CreditEngine(other).deduct(self.user_id, self.feature_key)
        return super().complete(system, prompt)


class TestLostRace:

    def test_balance_spent_during_generation(self, make_service, credits, add_usage, db_session, test_user):
        """The authoritative deduction fails; the content is discarded and nothing is double-charged."""
        credits.grant(test_user.id, 5, "purchase")
        add_usage(test_user.id, "workouts", 10)

        with pytest.raises(QuotaExceededNoCredits) as exc:
            make_service(SpendingProvider(test_user.id, "nutrition_plan")).execute(
                test_user.id, "generate_workout", {}
            )
        assert (exc.value.credits_required, exc.value.credits_available) == (3, 0)

        db_session.rollback()
        assert credits.get_balance(test_user.id) == 0
        assert _deductions(db_session, test_user.id) == 1
