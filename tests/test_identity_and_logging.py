"""
Tests for identity-token verification and request-scoped log context.
"""
import json
import logging
from datetime import timedelta
from uuid import uuid4

from jose import jwt

from core.config import settings
from core.logging import JSONFormatter, RequestContextFilter, bind_log_context, clear_log_context
from core.security import ALGORITHM, SECRET_KEY, decode_identity_token, issue_identity_token, subject_of

from tests.metering_helpers import usage_rows


class TestIdentityTokens:

    def test_round_trip_subject(self):
        user_id = uuid4()
        claims = decode_identity_token(issue_identity_token(user_id, {"email": "a@example.com"}))
        assert subject_of(claims) == user_id
        assert claims["email"] == "a@example.com"

    def test_expired_token_is_rejected(self):
        token = issue_identity_token(uuid4(), ttl=timedelta(seconds=-5))
        assert decode_identity_token(token) is None

    def test_foreign_signature_is_rejected(self):
        token = jwt.encode({"sub": str(uuid4())}, "x" * 40, algorithm=ALGORITHM)
        assert decode_identity_token(token) is None

    def test_audience_checked_only_when_configured(self, monkeypatch):
        token = issue_identity_token(uuid4(), {"aud": "another-service"})
        assert decode_identity_token(token) is not None

        monkeypatch.setattr(settings, "JWT_AUDIENCE", "wod-broker")
        assert decode_identity_token(token) is None

    def test_non_uuid_subject(self):
        assert subject_of({"sub": "user-42"}) is None
        assert subject_of({}) is None

    def test_non_uuid_subject_is_unauthorized(self, client):
        token = jwt.encode({"sub": "user-42"}, SECRET_KEY, algorithm=ALGORITHM)
        response = client.get("/v1/credits/balance", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401


class TestRequestContext:

    def test_request_id_is_echoed_and_recorded(self, client, test_user, user_headers):
        headers = dict(user_headers, **{"X-Request-ID": "req-abc123"})
        response = client.post("/v1/wod/generate_workout", json={}, headers=headers)

        assert response.headers["X-Request-ID"] == "req-abc123"
        assert usage_rows(test_user.id)[0].entry_metadata["request_id"] == "req-abc123"

    def test_request_id_is_generated(self, client):
        assert client.get("/health").headers["X-Request-ID"]

    def test_json_records_carry_context(self):
        clear_log_context()
        bind_log_context(request_id="req-1", user_id="u-1")
        record = logging.LogRecord("services.credits", logging.INFO, __file__, 1, "deducted", None, None)
        record.extra_fields = {"feature": "custom_wod"}
        RequestContextFilter().filter(record)

        line = json.loads(JSONFormatter().format(record))
        clear_log_context()

        assert line["request_id"] == "req-1"
        assert line["user_id"] == "u-1"
        assert line["feature"] == "custom_wod"

    def test_unbound_context_is_omitted(self):
        clear_log_context()
        record = logging.LogRecord("main", logging.INFO, __file__, 1, "ping", None, None)
        RequestContextFilter().filter(record)

        line = json.loads(JSONFormatter().format(record))
        assert "request_id" not in line
        assert record.request_id == "-"
