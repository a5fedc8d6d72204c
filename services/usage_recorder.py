"""
Usage Recorder

Appends one usage_record ledger entry per completed request (success or
error path). Runs on its own session after the response is determined.

Safety:
- record() never raises. A lost record under-counts quota; that is the
  accepted degradation, never a failed user request.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from core.database import SessionLocal
from services.ledger import (
    LedgerStore,
    UsagePeriod,
    current_usage_period,
    ensure_utc,
    trailing_period,
    utcnow,
)
from services.plan_catalog import UNLIMITED, Plan

logger = logging.getLogger(__name__)


ANALYTICS_PERIODS = ("current", "last30", "last90")


def _as_uuid(value: Any) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class UsageRecorder:

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock

    def record(
        self,
        user_id: Any,
        endpoint: str,
        method: str,
        outcome: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Write a usage_record. Returns False (after logging) when the write
        failed; never raises.

        outcome keys: status_code, latency_ms, provider, category, action, metadata
        """
        outcome = outcome or {}
        db = None
        try:
            db = self.session_factory()
            LedgerStore(db).append_usage(
                user_id=_as_uuid(user_id),
                endpoint=endpoint,
                method=method,
                status_code=outcome.get("status_code"),
                latency_ms=outcome.get("latency_ms"),
                provider=outcome.get("provider"),
                category=outcome.get("category"),
                action=outcome.get("action"),
                metadata=outcome.get("metadata"),
                created_at=self.clock(),
            )
            db.commit()
            return True
        except Exception as e:
            logger.exception(f"Usage recording failed for {method} {endpoint} (user {user_id}): {e}")
            return False
        finally:
            if db is not None:
                try:
                    db.close()
                except Exception:
                    logger.exception("Usage recorder session close failed")

    # =========================================================================
    # ANALYTICS
    # =========================================================================

    def resolve_period(self, name: str) -> UsagePeriod:
        now = self.clock()
        if name == "current":
            return current_usage_period(now)
        if name == "last30":
            return trailing_period(30, now)
        if name == "last90":
            return trailing_period(90, now)
        raise ValueError(f"Unknown usage period: {name}")

    def summarize(self, db: Session, user_id: UUID, period_name: str = "current") -> Dict[str, Any]:
        """Request analytics over a named period, read on the caller's session."""
        period = self.resolve_period(period_name)
        records = LedgerStore(db).usage_records(user_id, period)

        by_endpoint: Dict[str, int] = defaultdict(int)
        by_provider: Dict[str, int] = defaultdict(int)
        by_category: Dict[str, int] = defaultdict(int)
        daily: Dict[str, int] = defaultdict(int)
        successful = 0
        latencies = []

        for r in records:
            by_endpoint[r.endpoint or "unknown"] += 1
            if r.provider:
                by_provider[r.provider] += 1
            if r.category:
                by_category[r.category] += 1
            daily[ensure_utc(r.created_at).date().isoformat()] += 1
            if r.status_code is None or r.status_code < 400:
                successful += 1
            if r.latency_ms is not None:
                latencies.append(r.latency_ms)

        total = len(records)
        return {
            "period": period_name,
            "start": period.start,
            "end": period.end,
            "total_requests": total,
            "successful_requests": successful,
            "failed_requests": total - successful,
            "success_rate": round(successful / total * 100, 2) if total else 0.0,
            "average_latency_ms": round(sum(latencies) / len(latencies)) if latencies else None,
            "by_endpoint": dict(by_endpoint),
            "by_provider": dict(by_provider),
            "by_category": dict(by_category),
            "daily": dict(sorted(daily.items())),
        }

    def monthly_usage(self, db: Session, user_id: UUID, plan: Plan) -> Dict[str, Dict[str, Any]]:
        """Current-period consumption per quota category against the plan's limits."""
        counts = LedgerStore(db).usage_counts(user_id, current_usage_period(self.clock()))
        usage = {}
        for category, limit in plan.quotas.items():
            used = counts.get(category, 0)
            unlimited = limit == UNLIMITED
            usage[category] = {
                "used": used,
                "limit": limit,
                "unlimited": unlimited,
                "remaining": None if unlimited else max(0, limit - used),
            }
        return usage
