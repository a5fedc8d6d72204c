"""
Billing collaborator events.

The payment side charges cards; this service only hears about the outcome
through signed events and turns them into grants and subscription changes.

Event envelope:
    {"id": "evt_...", "type": "credit_pack.purchased", "data": {"user_id": "...", ...}}

Each event id is applied at most once (billing_events table).
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.exceptions import MeteringValidationError
from models import BillingEvent, User
from services.credits import CreditEngine
from services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)


SIGNATURE_HEADER = "X-Billing-Signature"


def sign_payload(payload: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time check of the HMAC-SHA256 signature of the raw body."""
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature.strip())


def _require(data: Dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise MeteringValidationError(f"Billing event is missing data.{key}", field=key)
    return value


def process_billing_event(
    db: Session,
    *,
    event: Dict[str, Any],
    credits: CreditEngine,
    subscriptions: SubscriptionService,
) -> Dict[str, Any]:
    """
    Idempotently apply a billing event.
    """
    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    data = event.get("data") or {}

    if not event_id:
        return {"processed": False, "reason": "missing_event_id"}

    raw_user_id = _require(data, "user_id")
    try:
        user_id = UUID(str(raw_user_id))
    except ValueError:
        raise MeteringValidationError("Billing event has a malformed data.user_id", field="user_id")

    # Idempotency: if event already processed, do nothing.
    db.add(BillingEvent(event_id=event_id, event_type=event_type or "unknown", user_id=user_id))
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        return {"processed": False, "idempotent": True, "event_id": event_id}

    if db.query(User).filter(User.id == user_id).first() is None:
        db.commit()
        logger.warning(f"Billing event {event_id} references unknown user {user_id}")
        return {"processed": True, "event_id": event_id, "event_type": event_type, "matched_user": False}

    reference = f"billing:{event_id}"
    result: Dict[str, Any] = {"processed": True, "event_id": event_id, "event_type": event_type,
                              "user_id": str(user_id)}

    if event_type == "credit_pack.purchased":
        result["credit_balance"] = credits.grant_package(
            user_id, _require(data, "package"), external_reference=reference
        )
    elif event_type == "credits.granted":
        result["credit_balance"] = credits.grant(
            user_id,
            _require(data, "amount"),
            reason=data.get("reason") or "billing",
            metadata={"event_id": event_id},
            external_reference=reference,
        )
    elif event_type == "subscription.renewed":
        sub = subscriptions.renew(user_id)
        result["subscription_id"] = str(sub.id)
        result["plan_id"] = sub.plan_id
    elif event_type == "trial.converted":
        sub = subscriptions.activate_after_trial(user_id, _require(data, "plan_id"))
        result["subscription_id"] = str(sub.id)
        result["plan_id"] = sub.plan_id
    else:
        # Unknown/unhandled event: accept but no-op (still idempotently recorded).
        result["handled"] = False

    db.commit()
    logger.info(f"Billing event {event_id} ({event_type}) applied for user {user_id}")
    return result
