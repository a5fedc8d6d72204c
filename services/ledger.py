"""
Ledger Store

Durable append-only log of credit mutations and metered requests.
It is the single source of truth for:
- credit balances (signed sum of credit entries, never stored authoritatively elsewhere)
- quota consumption (usage_record rows inside a calendar-month UsagePeriod)

Usage:
    ledger = LedgerStore(db)
    period = current_usage_period()
    used = ledger.count_usage(user_id, "workouts", period)
    balance = ledger.balance_of(user_id)

Writes only ever INSERT; the ORM refuses UPDATE/DELETE on LedgerEntry.
Transaction boundaries belong to the caller.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import settings
from models import LedgerEntry


CREDIT_GRANT = "credit_grant"
CREDIT_DEDUCTION = "credit_deduction"
USAGE_RECORD = "usage_record"

CREDIT_KINDS = (CREDIT_GRANT, CREDIT_DEDUCTION)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class UsagePeriod:
    """Half-open window [start, end) in UTC."""
    start: datetime
    end: datetime

    def contains(self, ts: datetime) -> bool:
        ts = ensure_utc(ts)
        return self.start <= ts < self.end


def current_usage_period(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> UsagePeriod:
    """
    Calendar month containing `now` in the reference clock zone:
    [first-of-month 00:00, next-first-of-month 00:00).
    """
    tz = ZoneInfo(tz_name or settings.USAGE_PERIOD_TIMEZONE)
    local_now = ensure_utc(now or utcnow()).astimezone(tz)

    start_local = datetime(local_now.year, local_now.month, 1, tzinfo=tz)
    if local_now.month == 12:
        end_local = datetime(local_now.year + 1, 1, 1, tzinfo=tz)
    else:
        end_local = datetime(local_now.year, local_now.month + 1, 1, tzinfo=tz)

    return UsagePeriod(
        start=start_local.astimezone(timezone.utc),
        end=end_local.astimezone(timezone.utc),
    )


def trailing_period(days: int, now: Optional[datetime] = None) -> UsagePeriod:
    end = ensure_utc(now or utcnow())
    return UsagePeriod(start=end - timedelta(days=days), end=end + timedelta(microseconds=1))


class LedgerStore:
    """
    Append/query access to `ledger_entries`.
    """

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # WRITES (append-only)
    # =========================================================================

    def append_credit(
        self,
        *,
        user_id: UUID,
        kind: str,
        amount: int,
        feature: Optional[str],
        actor_id: Optional[UUID] = None,
        refund_of_id: Optional[UUID] = None,
        external_reference: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        if kind not in CREDIT_KINDS:
            raise ValueError(f"Not a credit entry kind: {kind}")
        entry = LedgerEntry(
            user_id=user_id,
            kind=kind,
            amount=amount,
            feature=feature,
            actor_id=actor_id,
            refund_of_id=refund_of_id,
            external_reference=external_reference,
            entry_metadata=metadata or {},
            created_at=created_at or utcnow(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def append_usage(
        self,
        *,
        user_id: UUID,
        endpoint: str,
        method: str,
        status_code: Optional[int] = None,
        latency_ms: Optional[int] = None,
        provider: Optional[str] = None,
        category: Optional[str] = None,
        action: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            user_id=user_id,
            kind=USAGE_RECORD,
            amount=None,
            feature=action,
            category=category,
            endpoint=endpoint,
            method=method,
            status_code=status_code,
            latency_ms=latency_ms,
            provider=provider,
            entry_metadata=metadata or {},
            created_at=created_at or utcnow(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    # =========================================================================
    # BALANCES
    # =========================================================================

    def balance_of(self, user_id: UUID) -> int:
        """Signed sum of every credit entry for the user."""
        total = (
            self.db.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .filter(LedgerEntry.user_id == user_id, LedgerEntry.kind.in_(CREDIT_KINDS))
            .scalar()
        )
        return int(total or 0)

    def get(self, entry_id: UUID) -> Optional[LedgerEntry]:
        return self.db.query(LedgerEntry).filter(LedgerEntry.id == entry_id).first()

    def compensation_for(self, entry_id: UUID) -> Optional[LedgerEntry]:
        return self.db.query(LedgerEntry).filter(LedgerEntry.refund_of_id == entry_id).first()

    def find_by_external_reference(self, reference: str) -> Optional[LedgerEntry]:
        return self.db.query(LedgerEntry).filter(LedgerEntry.external_reference == reference).first()

    def credit_history(self, user_id: UUID, limit: int = 50) -> List[LedgerEntry]:
        return (
            self.db.query(LedgerEntry)
            .filter(LedgerEntry.user_id == user_id, LedgerEntry.kind.in_(CREDIT_KINDS))
            .order_by(LedgerEntry.created_at.desc())
            .limit(limit)
            .all()
        )

    def deductions_between(self, user_id: UUID, period: UsagePeriod) -> List[LedgerEntry]:
        return (
            self.db.query(LedgerEntry)
            .filter(
                LedgerEntry.user_id == user_id,
                LedgerEntry.kind == CREDIT_DEDUCTION,
                LedgerEntry.created_at >= period.start,
                LedgerEntry.created_at < period.end,
            )
            .order_by(LedgerEntry.created_at.desc())
            .all()
        )

    # =========================================================================
    # USAGE
    # =========================================================================

    def _counted_usage(self, user_id: UUID, period: UsagePeriod):
        # Denied and failed requests are recorded for analytics but do not consume quota.
        return self.db.query(LedgerEntry).filter(
            LedgerEntry.user_id == user_id,
            LedgerEntry.kind == USAGE_RECORD,
            LedgerEntry.created_at >= period.start,
            LedgerEntry.created_at < period.end,
            (LedgerEntry.status_code.is_(None)) | (LedgerEntry.status_code < 400),
        )

    def count_usage(self, user_id: UUID, category: str, period: UsagePeriod) -> int:
        return self._counted_usage(user_id, period).filter(LedgerEntry.category == category).count()

    def usage_counts(self, user_id: UUID, period: UsagePeriod) -> Dict[str, int]:
        rows = (
            self._counted_usage(user_id, period)
            .filter(LedgerEntry.category.isnot(None))
            .with_entities(LedgerEntry.category, func.count(LedgerEntry.id))
            .group_by(LedgerEntry.category)
            .all()
        )
        return {category: int(count) for category, count in rows}

    def usage_records(self, user_id: UUID, period: UsagePeriod) -> List[LedgerEntry]:
        return (
            self.db.query(LedgerEntry)
            .filter(
                LedgerEntry.user_id == user_id,
                LedgerEntry.kind == USAGE_RECORD,
                LedgerEntry.created_at >= period.start,
                LedgerEntry.created_at < period.end,
            )
            .order_by(LedgerEntry.created_at.desc())
            .all()
        )

    # =========================================================================
    # REPORTING
    # =========================================================================

    def statistics(self) -> Dict[str, Any]:
        """Aggregate credit figures across all users (admin reporting)."""
        issued = (
            self.db.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .filter(LedgerEntry.kind == CREDIT_GRANT, LedgerEntry.refund_of_id.is_(None))
            .scalar()
        )
        refunded = (
            self.db.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .filter(LedgerEntry.kind == CREDIT_GRANT, LedgerEntry.refund_of_id.isnot(None))
            .scalar()
        )
        used = (
            self.db.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .filter(LedgerEntry.kind == CREDIT_DEDUCTION)
            .scalar()
        )
        users = (
            self.db.query(func.count(func.distinct(LedgerEntry.user_id)))
            .filter(LedgerEntry.kind.in_(CREDIT_KINDS))
            .scalar()
        )

        issued = int(issued or 0)
        refunded = int(refunded or 0)
        used = -int(used or 0)
        outstanding = issued + refunded - used
        users = int(users or 0)

        return {
            "total_credits_issued": issued,
            "total_credits_used": used,
            "total_credits_refunded": refunded,
            "total_credits_outstanding": outstanding,
            "users_with_credit_activity": users,
            "average_credits_per_user": round(outstanding / users, 2) if users else 0,
        }
