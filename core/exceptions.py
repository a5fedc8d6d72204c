"""
Custom exception classes and error handling.

Two families live here:
- APIException and friends: HTTP-facing errors raised by routers.
- The metering taxonomy: validation, entitlement, concurrency, upstream and
  catalog errors raised by services. Callers branch on the class (or on
  EntitlementError.kind), never on message text. main.py maps each class to
  an HTTP response.
"""
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


# ============================================================================
# VALIDATION-CLASS (caller error, never retried)
# ============================================================================

class MeteringValidationError(ValueError):
    """Malformed action/feature key or amount."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.field = field


class UnknownAction(MeteringValidationError):
    error_code = "UNKNOWN_ACTION"

    def __init__(self, action: str):
        super().__init__(f"Unknown metered action: {action}", field="action")
        self.action = action


class UnknownCreditFeature(MeteringValidationError):
    error_code = "UNKNOWN_CREDIT_FEATURE"

    def __init__(self, feature_key: str):
        super().__init__(f"Unknown credit feature: {feature_key}", field="feature_key")
        self.feature_key = feature_key


class UnknownPlanFeature(MeteringValidationError):
    error_code = "UNKNOWN_PLAN_FEATURE"

    def __init__(self, feature: str):
        super().__init__(f"Unknown plan feature: {feature}", field="feature")
        self.feature = feature


class InvalidCreditAmount(MeteringValidationError):
    error_code = "INVALID_CREDIT_AMOUNT"

    def __init__(self, amount: Any):
        super().__init__(f"Credit amount must be a positive integer, got {amount!r}", field="amount")
        self.amount = amount


# ============================================================================
# ENTITLEMENT-CLASS (expected business outcomes)
# ============================================================================

class EntitlementErrorKind(str, Enum):
    FEATURE_NOT_INCLUDED = "feature_not_included"
    QUOTA_EXCEEDED_NO_CREDITS = "quota_exceeded_no_credits"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    ALREADY_TRIALED = "already_trialed"
    NO_ACTIVE_TRIAL = "no_active_trial"
    NOT_REFUNDABLE = "not_refundable"
    SUBSCRIPTION_STATE = "subscription_state"


UPGRADE_URL = "/v1/billing/plans"


class EntitlementError(Exception):
    """
    Base for expected business outcomes.

    `context` carries what the caller needs to present an upgrade/purchase path.
    """

    kind: EntitlementErrorKind
    status_code: int = status.HTTP_409_CONFLICT

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind.value,
            "message": self.message,
            **self.context,
        }


class FeatureNotIncluded(EntitlementError):
    kind = EntitlementErrorKind.FEATURE_NOT_INCLUDED
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, action: str, plan_id: str, feature: Optional[str]):
        super().__init__(
            f"{action} is not included in plan {plan_id}",
            action=action,
            plan_id=plan_id,
            feature=feature,
            upgrade_required=True,
            upgrade_url=UPGRADE_URL,
        )


class QuotaExceededNoCredits(EntitlementError):
    kind = EntitlementErrorKind.QUOTA_EXCEEDED_NO_CREDITS
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(
        self,
        action: str,
        plan_id: str,
        quota: int,
        used: int,
        credits_required: int,
        credits_available: int,
    ):
        super().__init__(
            f"Monthly quota of {quota} reached for {action} and not enough credits",
            action=action,
            plan_id=plan_id,
            quota=quota,
            used=used,
            credits_required=credits_required,
            credits_available=credits_available,
            upgrade_url=UPGRADE_URL,
        )
        self.credits_required = credits_required
        self.credits_available = credits_available


class InsufficientCredits(EntitlementError):
    kind = EntitlementErrorKind.INSUFFICIENT_CREDITS
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, feature_key: str, credits_required: int, credits_available: int):
        super().__init__(
            f"Insufficient credits. Required: {credits_required}, Available: {credits_available}",
            feature_key=feature_key,
            credits_required=credits_required,
            credits_available=credits_available,
            credits_needed=credits_required - credits_available,
        )
        self.credits_required = credits_required
        self.credits_available = credits_available


class AlreadyTrialed(EntitlementError):
    kind = EntitlementErrorKind.ALREADY_TRIALED

    def __init__(self, user_id: Any, plan_id: str):
        super().__init__(
            f"Free trial for {plan_id} was already used",
            user_id=str(user_id),
            plan_id=plan_id,
        )


class NoActiveTrial(EntitlementError):
    kind = EntitlementErrorKind.NO_ACTIVE_TRIAL

    def __init__(self, user_id: Any, plan_id: str):
        super().__init__(
            f"No active trial for {plan_id}",
            user_id=str(user_id),
            plan_id=plan_id,
        )


class NotRefundable(EntitlementError):
    kind = EntitlementErrorKind.NOT_REFUNDABLE

    def __init__(self, transaction_id: Any, reason: str):
        super().__init__(
            f"Transaction {transaction_id} cannot be refunded: {reason}",
            transaction_id=str(transaction_id),
            reason=reason,
        )


class SubscriptionStateError(EntitlementError):
    kind = EntitlementErrorKind.SUBSCRIPTION_STATE


# ============================================================================
# CONCURRENCY / UPSTREAM / CATALOG
# ============================================================================

class LedgerContentionError(Exception):
    """A balance mutation kept losing races after internal retries. Safe to retry later."""

    retry_after_s = 1


class ProviderError(Exception):
    """AI generation failed on every configured provider. No credits were charged."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class GenerationTimeout(ProviderError):
    """AI generation exceeded its timeout."""


class PlanNotFoundError(LookupError):
    """A plan id referenced by a subscription/trial/config is missing from the catalog."""

    def __init__(self, plan_id: str):
        super().__init__(f"Subscription plan not found: {plan_id}")
        self.plan_id = plan_id
