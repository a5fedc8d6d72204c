"""
Test doubles shared by the metering tests: a controllable clock,
in-process AI providers and bearer-token headers.
"""
from datetime import datetime, timedelta

from core.database import SessionLocal
from core.exceptions import GenerationTimeout, ProviderError
from core.security import issue_identity_token
from models import LedgerEntry
from services.ai_generation import AIProvider, GenerationResult
from services.credits import CreditEngine
from services.ledger import USAGE_RECORD, LedgerStore


class FakeClock:
    """Controllable UTC clock injected into services."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeProvider(AIProvider):
    """In-process stand-in for an LLM provider."""

    def __init__(self, name: str = "fake", content: str = '{"workout": "5 rounds"}', error: Exception = None):
        self.name = name
        self.model = f"{name}-model"
        self.content = content
        self.error = error
        self.calls = 0

    def complete(self, system: str, prompt: str) -> GenerationResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return GenerationResult(
            content=self.content,
            provider_used=self.name,
            model=self.model,
            input_tokens=120,
            output_tokens=340,
        )


def failing_provider(name: str = "down") -> FakeProvider:
    return FakeProvider(name=name, error=ProviderError(f"{name} returned 500", provider=name))


def timing_out_provider(name: str = "slow") -> FakeProvider:
    return FakeProvider(name=name, error=GenerationTimeout(f"{name} timed out", provider=name))


def auth_headers(user_id) -> dict:
    token = issue_identity_token(user_id)
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Short-lived sessions for API tests. The app serializes writers on the
# database lock, so tests never hold a transaction across a request.
# ---------------------------------------------------------------------------

def grant_credits(user_id, amount: int, reason: str = "purchase") -> int:
    with SessionLocal() as db:
        return CreditEngine(db).grant(user_id, amount, reason)


def spend_credits(user_id, feature_key: str):
    with SessionLocal() as db:
        return CreditEngine(db).deduct(user_id, feature_key)


def balance_of(user_id) -> int:
    with SessionLocal() as db:
        return LedgerStore(db).balance_of(user_id)


def seed_usage(user_id, category: str, count: int, status_code: int = 200) -> None:
    """Successful usage records stamped now, i.e. inside the live usage period."""
    with SessionLocal() as db:
        store = LedgerStore(db)
        for _ in range(count):
            store.append_usage(
                user_id=user_id,
                endpoint="/v1/wod/generate_workout",
                method="POST",
                status_code=status_code,
                category=category,
                action="generate_workout",
            )
        db.commit()


def usage_rows(user_id) -> list:
    with SessionLocal() as db:
        return (
            db.query(LedgerEntry)
            .filter(LedgerEntry.user_id == user_id, LedgerEntry.kind == USAGE_RECORD)
            .order_by(LedgerEntry.created_at)
            .all()
        )
