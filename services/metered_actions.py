"""
Metered action orchestration.

resolve entitlement -> generate -> deduct credits (credit-funded only)

Deduction happens strictly after a successful generation: a provider
failure or timeout leaves the balance untouched. If the authoritative
deduction then finds the balance short (a concurrent request spent it),
the generated content is discarded and the caller gets the same
QuotaExceededNoCredits the resolver would have returned.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from core.exceptions import InsufficientCredits, QuotaExceededNoCredits
from services.ai_generation import AIGenerationService, GenerationResult
from services.credits import CreditEngine, CreditReceipt
from services.entitlements import EntitlementDecision, EntitlementResolver, FundedBy
from services.ledger import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ActionOutcome:
    action: str
    content: str
    provider_used: str
    decision: EntitlementDecision
    tokens_or_cost_hint: Dict[str, Any] = field(default_factory=dict)
    receipt: Optional[CreditReceipt] = None
    latency_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "content": self.content,
            "provider_used": self.provider_used,
            "plan_id": self.decision.plan_id,
            "funded_by": self.decision.funded_by.value if self.decision.funded_by else None,
            "remaining": self.decision.remaining,
            "credits_charged": self.receipt.amount if self.receipt else 0,
            "credit_balance": self.receipt.new_balance if self.receipt else None,
            "transaction_id": str(self.receipt.transaction_id) if self.receipt else None,
            "usage": self.tokens_or_cost_hint,
        }


class MeteredActionService:

    def __init__(
        self,
        db: Session,
        generator: AIGenerationService,
        resolver: Optional[EntitlementResolver] = None,
        credits: Optional[CreditEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.generator = generator
        self.clock = clock
        self.resolver = resolver or EntitlementResolver(db, clock=clock)
        self.credits = credits or CreditEngine(db, clock=clock)

    def execute(
        self,
        user_id: UUID,
        action: str,
        payload: Dict[str, Any],
        profile: Optional[Dict[str, Any]] = None,
    ) -> ActionOutcome:
        decision = self.resolver.check(user_id, action)
        decision.raise_for_denial()

        # Release the read transaction; nothing may stay locked across the provider call.
        self.db.commit()

        started = self.clock()
        result: GenerationResult = self.generator.generate(action, payload, profile)
        latency_ms = int((self.clock() - started).total_seconds() * 1000)

        receipt = None
        if decision.funded_by == FundedBy.CREDITS:
            try:
                receipt = self.credits.deduct(
                    user_id,
                    decision.credit_feature,
                    metadata={
                        "action": action,
                        "provider": result.provider_used,
                        "model": result.model,
                        **result.tokens_or_cost_hint,
                    },
                )
            except InsufficientCredits as e:
                logger.info(f"Credit-funded {action} for user {user_id} lost the balance race; content discarded")
                raise QuotaExceededNoCredits(
                    action=action,
                    plan_id=decision.plan_id,
                    quota=decision.quota,
                    used=decision.used,
                    credits_required=e.credits_required,
                    credits_available=e.credits_available,
                ) from e

        logger.info(
            "Metered action completed",
            extra={"extra_fields": {
                "user_id": str(user_id), "action": action, "funded_by": decision.funded_by.value,
                "provider": result.provider_used, "latency_ms": latency_ms,
            }},
        )
        return ActionOutcome(
            action=action,
            content=result.content,
            provider_used=result.provider_used,
            decision=decision,
            tokens_or_cost_hint=result.tokens_or_cost_hint,
            receipt=receipt,
            latency_ms=latency_ms,
        )
