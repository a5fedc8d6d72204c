"""
Credit Accounting Engine

Atomic balance mutations over the ledger.

Every mutation runs as one unit per user:
    lock credit_accounts row -> sum ledger -> compare -> append entry -> rewrite cached balance -> commit

The row lock (SELECT ... FOR UPDATE on PostgreSQL, BEGIN IMMEDIATE on SQLite)
serializes grant/deduct/refund for the same user, so two deductions can never
both observe a sufficient balance. Different users never contend.

Lock timeouts and serialization failures are retried with backoff, then
surfaced as LedgerContentionError.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import (
    InsufficientCredits,
    InvalidCreditAmount,
    LedgerContentionError,
    MeteringValidationError,
    NotRefundable,
    UnknownCreditFeature,
)
from models import CreditAccount, LedgerEntry
from services.ledger import (
    CREDIT_DEDUCTION,
    CREDIT_GRANT,
    LedgerStore,
    UsagePeriod,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditFeature:
    key: str
    cost: int
    name: str
    description: str


@dataclass(frozen=True)
class CreditPackage:
    key: str
    credits: int
    price: float
    name: str
    popular: bool = False


CREDIT_FEATURES: Dict[str, CreditFeature] = {
    f.key: f for f in [
        CreditFeature("wod_refresh", 1, "WOD Refresh", "Generate a new workout variation"),
        CreditFeature("custom_wod", 3, "Custom WOD", "Fully personalized workout generation"),
        CreditFeature("form_analysis", 4, "Form Analysis", "AI-powered exercise form review"),
        CreditFeature("nutrition_plan", 5, "Nutrition Plan", "Personalized meal planning"),
        CreditFeature("recovery_session", 2, "Recovery Session", "Guided recovery and mobility"),
        CreditFeature("competition_entry", 5, "Competition Entry", "Join premium challenges"),
        CreditFeature("personal_training", 8, "Personal Training", "Multi-week progressive program"),
    ]
}

CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    p.key: p for p in [
        CreditPackage("boost", 10, 2.99, "Boost Pack"),
        CreditPackage("power", 25, 6.99, "Power Pack", popular=True),
        CreditPackage("beast", 60, 14.99, "Beast Pack"),
    ]
}


@dataclass(frozen=True)
class CreditReceipt:
    """Outcome of a deduction."""
    transaction_id: UUID
    new_balance: int
    amount: int
    feature_key: str


def credit_cost(feature_key: str) -> int:
    feature = CREDIT_FEATURES.get(feature_key)
    if feature is None:
        raise UnknownCreditFeature(feature_key)
    return feature.cost


def _validate_amount(amount: Any) -> int:
    # bool is an int subclass; True is not a credit amount.
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidCreditAmount(amount)
    return amount


class CreditEngine:
    """
    Grant/deduct/refund with per-user serialization.

    Each public mutation owns its transaction: it commits on success and
    rolls back on failure. Callers must not leave unflushed writes on the
    session they hand in.
    """

    def __init__(
        self,
        db: Session,
        ledger: Optional[LedgerStore] = None,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: Optional[int] = None,
        retry_backoff_s: Optional[float] = None,
    ):
        self.db = db
        self.ledger = ledger or LedgerStore(db)
        self.clock = clock
        self.max_attempts = max_attempts or settings.CREDIT_MUTATION_MAX_ATTEMPTS
        self.retry_backoff_s = (
            settings.CREDIT_MUTATION_RETRY_BACKOFF_S if retry_backoff_s is None else retry_backoff_s
        )

    # =========================================================================
    # ATOMIC UNIT
    # =========================================================================

    def _run_atomic(self, operation: str, user_id: Any, fn: Callable[[], Any]) -> Any:
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = fn()
                self.db.commit()
                return result
            except OperationalError as e:
                self.db.rollback()
                if attempt == self.max_attempts:
                    logger.error(
                        f"Credit {operation} for user {user_id} failed after {attempt} attempts: {e}"
                    )
                    raise LedgerContentionError(
                        f"Credit {operation} could not be serialized; retry later"
                    ) from e
                logger.warning(
                    f"Credit {operation} for user {user_id} hit contention "
                    f"(attempt {attempt}/{self.max_attempts}), retrying"
                )
                time.sleep(self.retry_backoff_s * (2 ** (attempt - 1)))
            except Exception:
                self.db.rollback()
                raise

    def _lock_account(self, user_id: UUID) -> CreditAccount:
        """Lock (creating on first use) the user's credit_accounts row."""
        query = (
            self.db.query(CreditAccount)
            .filter(CreditAccount.user_id == user_id)
            .with_for_update()
            .populate_existing()
        )
        account = query.first()
        if account is not None:
            return account

        try:
            with self.db.begin_nested():
                account = CreditAccount(user_id=user_id, balance=0, updated_at=self.clock())
                self.db.add(account)
        except IntegrityError:
            # Another transaction created it first; wait for its lock.
            account = query.first()
        return account

    def _settle(self, account: CreditAccount) -> int:
        """Rewrite the cached counter from the ledger sum in the same transaction."""
        balance = self.ledger.balance_of(account.user_id)
        account.balance = balance
        account.updated_at = self.clock()
        self.db.flush()
        return balance

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def grant(
        self,
        user_id: UUID,
        amount: int,
        reason: str = "grant",
        metadata: Optional[Dict[str, Any]] = None,
        actor_id: Optional[UUID] = None,
        external_reference: Optional[str] = None,
    ) -> int:
        """
        Append a credit_grant and return the new balance.

        `external_reference` makes the call idempotent for collaborators that
        redeliver (payment webhooks, renewals): a repeat returns the current
        balance without writing.
        """
        amount = _validate_amount(amount)

        def _grant() -> int:
            account = self._lock_account(user_id)
            if external_reference:
                existing = self.ledger.find_by_external_reference(external_reference)
                if existing is not None:
                    logger.info(f"Grant {external_reference} already applied; skipping")
                    return self._settle(account)

            self.ledger.append_credit(
                user_id=user_id,
                kind=CREDIT_GRANT,
                amount=amount,
                feature=reason,
                actor_id=actor_id,
                external_reference=external_reference,
                metadata=metadata,
                created_at=self.clock(),
            )
            return self._settle(account)

        balance = self._run_atomic("grant", user_id, _grant)
        logger.info(
            "Credits granted",
            extra={"extra_fields": {
                "user_id": str(user_id), "amount": amount, "reason": reason, "balance": balance,
            }},
        )
        return balance

    def deduct(
        self,
        user_id: UUID,
        feature_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditReceipt:
        """
        Charge the fixed cost of `feature_key`.

        This is the authoritative balance check. Raises InsufficientCredits
        (required vs. available) when the locked balance is short.
        """
        cost = credit_cost(feature_key)

        def _deduct() -> CreditReceipt:
            account = self._lock_account(user_id)
            available = self.ledger.balance_of(user_id)
            if available < cost:
                raise InsufficientCredits(feature_key, cost, available)

            entry = self.ledger.append_credit(
                user_id=user_id,
                kind=CREDIT_DEDUCTION,
                amount=-cost,
                feature=feature_key,
                metadata=metadata,
                created_at=self.clock(),
            )
            return CreditReceipt(
                transaction_id=entry.id,
                new_balance=self._settle(account),
                amount=cost,
                feature_key=feature_key,
            )

        try:
            receipt = self._run_atomic("deduct", user_id, _deduct)
        except InsufficientCredits as e:
            logger.info(
                f"Deduction refused for user {user_id}: {feature_key} needs "
                f"{e.credits_required}, has {e.credits_available}"
            )
            raise

        logger.info(
            "Credits deducted",
            extra={"extra_fields": {
                "user_id": str(user_id), "feature": feature_key, "amount": cost,
                "balance": receipt.new_balance, "transaction_id": str(receipt.transaction_id),
            }},
        )
        return receipt

    def refund(self, transaction_id: UUID, actor_id: Optional[UUID] = None) -> int:
        """
        Compensate a deduction with a credit_grant referencing it.

        Only credit_deduction entries qualify, and each at most once.
        The original row is never touched.
        """
        original = self.ledger.get(transaction_id)
        if original is None:
            raise NotRefundable(transaction_id, "unknown transaction")
        if original.kind != CREDIT_DEDUCTION:
            raise NotRefundable(transaction_id, f"{original.kind} entries are not refundable")
        user_id = original.user_id

        def _refund() -> int:
            account = self._lock_account(user_id)
            # Checked under the account lock; the unique refund_of_id backs it up.
            if self.ledger.compensation_for(original.id) is not None:
                raise NotRefundable(transaction_id, "already refunded")
            try:
                with self.db.begin_nested():
                    self.ledger.append_credit(
                        user_id=user_id,
                        kind=CREDIT_GRANT,
                        amount=-original.amount,
                        feature=original.feature,
                        actor_id=actor_id,
                        refund_of_id=original.id,
                        metadata={"refund_of": str(original.id)},
                        created_at=self.clock(),
                    )
            except IntegrityError:
                raise NotRefundable(transaction_id, "already refunded")
            return self._settle(account)

        balance = self._run_atomic("refund", user_id, _refund)
        logger.info(
            "Credits refunded",
            extra={"extra_fields": {
                "user_id": str(user_id), "transaction_id": str(transaction_id),
                "amount": -original.amount, "actor_id": str(actor_id) if actor_id else None,
                "balance": balance,
            }},
        )
        return balance

    def grant_package(
        self,
        user_id: UUID,
        package_key: str,
        external_reference: Optional[str] = None,
        actor_id: Optional[UUID] = None,
    ) -> int:
        """Grant a purchased credit pack. The payment itself happened elsewhere."""
        package = CREDIT_PACKAGES.get(package_key)
        if package is None:
            raise MeteringValidationError(f"Unknown credit package: {package_key}", field="package")
        return self.grant(
            user_id,
            package.credits,
            reason="purchase",
            metadata={"package": package.key, "price": package.price},
            actor_id=actor_id,
            external_reference=external_reference,
        )

    def reconcile(self, user_id: UUID) -> Dict[str, Any]:
        """Re-sum the ledger and repair the cached counter if it drifted."""

        def _reconcile() -> Dict[str, Any]:
            account = self._lock_account(user_id)
            cached = account.balance
            balance = self._settle(account)
            return {"user_id": str(user_id), "cached_balance": cached, "ledger_balance": balance,
                    "repaired": cached != balance}

        result = self._run_atomic("reconcile", user_id, _reconcile)
        if result["repaired"]:
            logger.warning(
                f"Credit balance drift repaired for user {user_id}: "
                f"cached={result['cached_balance']} ledger={result['ledger_balance']}"
            )
        return result

    def reconcile_all(self) -> int:
        """Reconcile every account. Returns how many were repaired."""
        user_ids = {
            uid for (uid,) in self.db.query(LedgerEntry.user_id)
            .filter(LedgerEntry.kind.in_((CREDIT_GRANT, CREDIT_DEDUCTION)))
            .distinct()
            .all()
        }
        user_ids.update(uid for (uid,) in self.db.query(CreditAccount.user_id).all())

        repaired = 0
        for user_id in user_ids:
            if self.reconcile(user_id)["repaired"]:
                repaired += 1
        return repaired

    # =========================================================================
    # READS
    # =========================================================================

    def get_balance(self, user_id: UUID) -> int:
        """Derived balance (ledger sum). The cached counter is never read here."""
        return self.ledger.balance_of(user_id)

    def can_use_feature(self, user_id: UUID, feature_key: str) -> Dict[str, Any]:
        """Advisory only; deduct() is the authoritative check."""
        cost = credit_cost(feature_key)
        available = self.get_balance(user_id)
        return {
            "feature_key": feature_key,
            "can_use": available >= cost,
            "credits_required": cost,
            "credits_available": available,
            "credits_needed": max(0, cost - available),
        }

    def history(self, user_id: UUID, limit: int = 50) -> List[LedgerEntry]:
        return self.ledger.credit_history(user_id, limit=limit)

    def feature_usage(self, user_id: UUID, days: int = 30) -> Dict[str, Any]:
        """Credits spent per feature over the trailing window, net of refunds."""
        now = self.clock()
        period = UsagePeriod(start=now - timedelta(days=days), end=now + timedelta(seconds=1))
        deductions = self.ledger.deductions_between(user_id, period)

        by_feature: Dict[str, Dict[str, int]] = {}
        total = 0
        for entry in deductions:
            if self.ledger.compensation_for(entry.id) is not None:
                continue
            bucket = by_feature.setdefault(entry.feature, {"count": 0, "credits": 0})
            bucket["count"] += 1
            bucket["credits"] += -entry.amount
            total += -entry.amount

        return {"period_days": days, "total_credits_spent": total, "by_feature": by_feature}

    def statistics(self) -> Dict[str, Any]:
        return self.ledger.statistics()
