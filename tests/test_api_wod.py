"""
API tests for metered actions and per-request usage recording.
"""
from uuid import uuid4

from core.config import settings
from core.dependencies import get_usage_recorder
from core.exceptions import GenerationTimeout, ProviderError

from tests.metering_helpers import balance_of, grant_credits, seed_usage, usage_rows

WOD_URL = "/v1/wod/generate_workout"


class TestAuthentication:

    def test_requires_token(self, client):
        response = client.post(WOD_URL, json={"payload": {}})
        assert response.status_code == 401

    def test_rejects_garbage_token(self, client):
        response = client.post(WOD_URL, json={}, headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_unknown_identity_is_provisioned_on_first_sight(self, client, headers_for):
        user_id = uuid4()
        headers = headers_for(user_id)

        assert client.post(WOD_URL, json={}, headers=headers).status_code == 200

        current = client.get("/v1/billing/current", headers=headers).json()
        assert current["plan_source"] == "default"
        assert current["subscription"]["plan_id"] == "free-2025"
        assert current["usage"]["workouts"]["used"] == 1


class TestGenerate:

    def test_quota_funded_generation(self, client, test_user, user_headers, fake_provider):
        response = client.post(WOD_URL, json={"payload": {"duration_minutes": 20}}, headers=user_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["content"] == '{"workout": "5 rounds"}'
        assert body["provider_used"] == "fake"
        assert body["funded_by"] == "quota"
        assert body["remaining"] == 9
        assert body["credits_charged"] == 0
        assert fake_provider.calls == 1

    def test_usage_is_recorded_for_the_request(self, client, test_user, user_headers):
        client.post(WOD_URL, json={}, headers=user_headers)

        rows = usage_rows(test_user.id)
        assert len(rows) == 1
        row = rows[0]
        assert row.endpoint == WOD_URL
        assert row.method == "POST"
        assert row.status_code == 200
        assert row.category == "workouts"
        assert row.feature == "generate_workout"
        assert row.provider == "fake"
        assert row.latency_ms is not None
        assert row.entry_metadata["funded_by"] == "quota"

    def test_credit_funded_generation(self, client, test_user, user_headers):
        grant_credits(test_user.id, 5)
        seed_usage(test_user.id, "workouts", 10)

        response = client.post(WOD_URL, json={}, headers=user_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["funded_by"] == "credits"
        assert body["credits_charged"] == 3
        assert body["credit_balance"] == 2
        assert body["transaction_id"]
        assert balance_of(test_user.id) == 2

    def test_quota_then_payment_required(self, client, test_user, user_headers):
        """Ten free workouts, then the eleventh needs 3 credits the user does not have."""
        for _ in range(10):
            assert client.post(WOD_URL, json={}, headers=user_headers).status_code == 200

        response = client.post(WOD_URL, json={}, headers=user_headers)
        assert response.status_code == 402
        body = response.json()
        assert body["error"] == "quota_exceeded_no_credits"
        assert body["credits_required"] == 3
        assert body["credits_available"] == 0
        assert body["upgrade_url"]

        # Denied requests are logged but never consume quota.
        statuses = [r.status_code for r in usage_rows(test_user.id)]
        assert statuses.count(200) == 10
        assert statuses.count(402) == 1

    def test_feature_not_included(self, client, user_headers, fake_provider):
        response = client.post("/v1/wod/form_analysis", json={}, headers=user_headers)
        assert response.status_code == 403
        assert response.json()["error"] == "feature_not_included"
        assert fake_provider.calls == 0

    def test_unknown_action(self, client, user_headers):
        response = client.post("/v1/wod/levitate", json={}, headers=user_headers)
        assert response.status_code == 422
        assert response.json()["error"] == "UNKNOWN_ACTION"
        assert response.json()["field"] == "action"


class TestUpstreamFailures:

    def test_provider_down_charges_nothing(self, client, test_user, user_headers, fake_provider):
        grant_credits(test_user.id, 5)
        seed_usage(test_user.id, "workouts", 10)
        fake_provider.error = ProviderError("fake returned 500", provider="fake")

        response = client.post(WOD_URL, json={}, headers=user_headers)
        assert response.status_code == 503
        assert response.json()["credits_charged"] == 0
        assert response.headers["Retry-After"] == "5"
        assert balance_of(test_user.id) == 5

    def test_timeout_charges_nothing(self, client, test_user, user_headers, fake_provider):
        grant_credits(test_user.id, 5)
        seed_usage(test_user.id, "workouts", 10)
        fake_provider.error = GenerationTimeout("fake timed out", provider="fake")

        response = client.post(WOD_URL, json={}, headers=user_headers)
        assert response.status_code == 504
        assert response.json()["error"] == "generation_timeout"
        assert balance_of(test_user.id) == 5

    def test_failed_generation_does_not_use_quota(self, client, test_user, user_headers, fake_provider):
        fake_provider.error = ProviderError("fake returned 500", provider="fake")
        client.post(WOD_URL, json={}, headers=user_headers)
        fake_provider.error = None

        body = client.post(WOD_URL, json={}, headers=user_headers).json()
        assert body["remaining"] == 9


class TestUsageRecordingDegradation:

    def test_recorder_failure_never_fails_the_request(self, client, test_user, user_headers, monkeypatch):
        def broken_session():
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(get_usage_recorder(), "session_factory", broken_session)

        response = client.post(WOD_URL, json={}, headers=user_headers)
        assert response.status_code == 200
        assert usage_rows(test_user.id) == []

    def test_enqueue_failure_falls_back_to_inline(self, client, test_user, user_headers, monkeypatch):
        from tasks.billing_tasks import record_usage_task

        def broker_down(*args, **kwargs):
            raise ConnectionError("broker unreachable")

        monkeypatch.setattr(settings, "USAGE_RECORDING_ASYNC", True)
        monkeypatch.setattr(record_usage_task, "apply_async", broker_down)

        assert client.post(WOD_URL, json={}, headers=user_headers).status_code == 200
        assert len(usage_rows(test_user.id)) == 1

    def test_enqueue_when_broker_is_up(self, client, test_user, user_headers, monkeypatch):
        from tasks.billing_tasks import record_usage_task

        enqueued = []
        monkeypatch.setattr(settings, "USAGE_RECORDING_ASYNC", True)
        monkeypatch.setattr(record_usage_task, "apply_async", lambda **kwargs: enqueued.append(kwargs))

        client.post(WOD_URL, json={}, headers=user_headers)
        assert len(enqueued) == 1
        assert enqueued[0]["kwargs"]["endpoint"] == WOD_URL
        assert enqueued[0]["kwargs"]["outcome"]["status_code"] == 200
        assert usage_rows(test_user.id) == []
