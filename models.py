from sqlalchemy import Column, Integer, Boolean, CheckConstraint, DateTime, ForeignKey, Numeric, Text, Index, UniqueConstraint, JSON, Uuid, event, text
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid
from datetime import datetime, timezone


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite for local/test).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """
    Identity mirror.

    Owned by the identity provider; the metering core only ever reads `id`.
    `role` gates the admin surface.
    """
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(Text, unique=True, nullable=True)
    role = Column(Text, default="athlete", nullable=False)  # 'athlete', 'admin', 'owner'
    display_name = Column(Text, nullable=True)
    # Opaque fitness profile (level, goals, equipment, limitations) forwarded to generation.
    fitness_profile = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow, nullable=False)


class SubscriptionPlan(Base):
    """
    Plan catalog entry.

    Read-only to the metering core; seeded/updated by administrative tooling.
    Quota columns use -1 for unlimited.
    """
    __tablename__ = "subscription_plans"

    id = Column(Text, primary_key=True)  # e.g. "pro-2025"
    name = Column(Text, unique=True, nullable=False)  # e.g. "pro"
    display_name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    price_monthly = Column(Numeric(10, 2), default=0, nullable=False)

    # Quota vector
    workouts_per_month = Column(Integer, default=0, nullable=False)
    coaching_cues_per_month = Column(Integer, default=0, nullable=False)
    modifications_per_month = Column(Integer, default=0, nullable=False)

    # Feature bitset
    has_coaching_cues = Column(Boolean, default=False, nullable=False)
    has_modifications = Column(Boolean, default=False, nullable=False)
    has_nutrition = Column(Boolean, default=False, nullable=False)
    has_recovery = Column(Boolean, default=False, nullable=False)
    has_form_analysis = Column(Boolean, default=False, nullable=False)
    has_progressive_programs = Column(Boolean, default=False, nullable=False)

    trial_days = Column(Integer, default=0, nullable=False)
    monthly_credits = Column(Integer, default=0, nullable=False)  # granted on each renewal
    sort_order = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("workouts_per_month >= -1", name="ck_plan_workouts_quota"),
        CheckConstraint("coaching_cues_per_month >= -1", name="ck_plan_coaching_quota"),
        CheckConstraint("modifications_per_month >= -1", name="ck_plan_modifications_quota"),
    )


class Subscription(Base):
    """
    Binding between a user and a plan for a billing period.

    Non-negotiable invariants:
    - at most one `active`-or-`trialing` row per user (partial unique index)
    - never hard-deleted; superseded rows move to `cancelled`
    """

    __tablename__ = "subscriptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Text, ForeignKey("subscription_plans.id"), nullable=False)

    status = Column(Text, nullable=False, index=True)  # active|trialing|cancelled
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    subscription_metadata = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow, nullable=False)

    plan = relationship("SubscriptionPlan", lazy="joined", innerjoin=True)

    __table_args__ = (
        Index(
            "uq_subscriptions_live_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('active', 'trialing')"),
            sqlite_where=text("status IN ('active', 'trialing')"),
        ),
    )


class Trial(Base):
    """
    One-shot free trial of a plan.

    Unique per (user, plan) forever; only the conversion fields (and the
    reminder bookkeeping) ever change after creation.
    """

    __tablename__ = "trials"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Text, ForeignKey("subscription_plans.id"), nullable=False)

    trial_start = Column(DateTime(timezone=True), nullable=False)
    trial_end = Column(DateTime(timezone=True), nullable=False, index=True)
    converted_to_paid = Column(Boolean, default=False, nullable=False)
    conversion_date = Column(DateTime(timezone=True), nullable=True)
    reminder_sent_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "plan_id", name="uq_trials_user_plan"),
    )


class LedgerEntry(Base):
    """
    Append-only record of every credit mutation and every metered request.

    Non-negotiable invariants:
    - write-only from the application (UPDATE/DELETE are refused at flush)
    - credit kinds carry a signed integer `amount`; usage records carry none
    - a deduction is compensated at most once (unique `refund_of_id`)
    """

    __tablename__ = "ledger_entries"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    kind = Column(Text, nullable=False)  # credit_grant | credit_deduction | usage_record
    amount = Column(Integer, nullable=True)

    # Credit feature key (deductions), grant reason, or metered action (usage)
    feature = Column(Text, nullable=True)
    # Quota category for usage records: workouts | coaching_cues | modifications
    category = Column(Text, nullable=True)

    # Usage record outcome
    endpoint = Column(Text, nullable=True)
    method = Column(Text, nullable=True)
    status_code = Column(Integer, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    provider = Column(Text, nullable=True)

    actor_id = Column(Uuid(as_uuid=True), nullable=True)  # admin/collaborator performing a grant/refund
    refund_of_id = Column(Uuid(as_uuid=True), ForeignKey("ledger_entries.id"), nullable=True, unique=True)
    external_reference = Column(Text, nullable=True, unique=True)  # idempotency key from collaborators
    entry_metadata = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "kind IN ('credit_grant', 'credit_deduction', 'usage_record')",
            name="ck_ledger_kind",
        ),
        CheckConstraint(
            "(kind = 'usage_record' AND amount IS NULL) "
            "OR (kind = 'credit_grant' AND amount > 0) "
            "OR (kind = 'credit_deduction' AND amount < 0)",
            name="ck_ledger_amount_sign",
        ),
        Index("ix_ledger_user_kind_created", "user_id", "kind", "created_at"),
        Index("ix_ledger_user_category_created", "user_id", "category", "created_at"),
    )


@event.listens_for(LedgerEntry, "before_update")
def _refuse_ledger_update(mapper, connection, target):
    raise RuntimeError(f"ledger_entries is append-only (attempted UPDATE of {target.id})")


@event.listens_for(LedgerEntry, "before_delete")
def _refuse_ledger_delete(mapper, connection, target):
    raise RuntimeError(f"ledger_entries is append-only (attempted DELETE of {target.id})")


class BillingEvent(Base):
    """
    Idempotency log of billing-collaborator events.

    A redelivered event_id is acknowledged without being re-applied.
    """

    __tablename__ = "billing_events"

    event_id = Column(Text, primary_key=True)
    event_type = Column(Text, nullable=False)
    user_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    received_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class CreditAccount(Base):
    """
    Per-user cached balance and lock row.

    `balance` is always rewritten from the ledger sum in the same transaction
    as the ledger write; `reconcile` re-derives it on demand.
    """

    __tablename__ = "credit_accounts"

    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), primary_key=True)
    balance = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_accounts_non_negative"),
    )
