"""
Service composition for request handlers.

Every component gets its collaborators explicitly; FastAPI shares one
database session per request across all of them. Tests replace any
provider through app.dependency_overrides (e.g. get_ai_generator).
"""
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from core.database import get_db
from services.ai_generation import AIGenerationService
from services.credits import CreditEngine
from services.entitlements import EntitlementResolver
from services.ledger import LedgerStore
from services.metered_actions import MeteredActionService
from services.plan_catalog import PlanCatalog
from services.subscriptions import SubscriptionService
from services.trials import TrialManager
from services.usage_recorder import UsageRecorder


def get_ledger(db: Session = Depends(get_db)) -> LedgerStore:
    return LedgerStore(db)


def get_plan_catalog(db: Session = Depends(get_db)) -> PlanCatalog:
    return PlanCatalog(db)


def get_trial_manager(
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_plan_catalog),
) -> TrialManager:
    return TrialManager(db, catalog)


def get_credit_engine(
    db: Session = Depends(get_db),
    ledger: LedgerStore = Depends(get_ledger),
) -> CreditEngine:
    return CreditEngine(db, ledger)


def get_subscription_service(
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    trials: TrialManager = Depends(get_trial_manager),
    credits: CreditEngine = Depends(get_credit_engine),
) -> SubscriptionService:
    return SubscriptionService(db, catalog=catalog, trials=trials, credits=credits)


def get_entitlement_resolver(
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    trials: TrialManager = Depends(get_trial_manager),
    ledger: LedgerStore = Depends(get_ledger),
) -> EntitlementResolver:
    return EntitlementResolver(db, catalog=catalog, trials=trials, ledger=ledger)


@lru_cache(maxsize=1)
def get_ai_generator() -> AIGenerationService:
    # Provider SDK clients are reusable across requests.
    return AIGenerationService()


@lru_cache(maxsize=1)
def get_usage_recorder() -> UsageRecorder:
    return UsageRecorder()


def get_metered_action_service(
    db: Session = Depends(get_db),
    generator: AIGenerationService = Depends(get_ai_generator),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    credits: CreditEngine = Depends(get_credit_engine),
) -> MeteredActionService:
    return MeteredActionService(db, generator, resolver=resolver, credits=credits)
