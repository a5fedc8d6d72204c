"""
API tests for the credits and usage read surfaces.
"""
from tests.metering_helpers import grant_credits, seed_usage, spend_credits


class TestCredits:

    def test_balance(self, client, test_user, user_headers):
        grant_credits(test_user.id, 12)
        body = client.get("/v1/credits/balance", headers=user_headers).json()
        assert body == {"user_id": str(test_user.id), "balance": 12}

    def test_history_is_credit_entries_only(self, client, test_user, user_headers):
        grant_credits(test_user.id, 12)
        spend_credits(test_user.id, "wod_refresh")
        client.get("/v1/credits/balance", headers=user_headers)  # leaves a usage record

        history = client.get("/v1/credits/history", headers=user_headers).json()
        assert sorted(e["kind"] for e in history) == ["credit_deduction", "credit_grant"]

    def test_cost_table_and_packages_are_public(self, client):
        features = {f["key"]: f["cost"] for f in client.get("/v1/credits/features").json()}
        assert features["custom_wod"] == 3
        assert features["personal_training"] == 8

        packages = client.get("/v1/credits/packages").json()
        assert [p["key"] for p in packages] == ["boost", "power", "beast"]

    def test_can_use_feature(self, client, test_user, user_headers):
        grant_credits(test_user.id, 2)
        body = client.get("/v1/credits/features/custom_wod/check", headers=user_headers).json()
        assert body["can_use"] is False
        assert body["credits_needed"] == 1

    def test_unknown_feature_check(self, client, user_headers):
        response = client.get("/v1/credits/features/teleport/check", headers=user_headers)
        assert response.status_code == 422
        assert response.json()["error"] == "UNKNOWN_CREDIT_FEATURE"


class TestEntitlementPreview:

    def test_preview_is_side_effect_free(self, client, test_user, user_headers):
        for _ in range(3):
            body = client.get("/v1/credits/entitlements/generate_workout", headers=user_headers).json()
            assert body["allowed"] is True
            assert body["funded_by"] == "quota"
            assert body["used"] == 0

    def test_preview_denial(self, client, user_headers):
        body = client.get("/v1/credits/entitlements/nutrition_plan", headers=user_headers).json()
        assert body["allowed"] is False
        assert body["denial"]["error"] == "feature_not_included"


class TestUsageAnalytics:

    def test_summary_and_monthly(self, client, user_headers):
        client.post("/v1/wod/generate_workout", json={}, headers=user_headers)
        client.post("/v1/wod/form_analysis", json={}, headers=user_headers)

        summary = client.get("/v1/usage/summary", headers=user_headers).json()
        assert summary["total_requests"] == 2
        assert summary["successful_requests"] == 1
        assert summary["failed_requests"] == 1
        assert summary["by_category"] == {"workouts": 1}

        monthly = client.get("/v1/usage/monthly", headers=user_headers).json()
        assert monthly["plan_id"] == "free-2025"
        assert monthly["usage"]["workouts"]["used"] == 1
        assert monthly["usage"]["workouts"]["remaining"] == 9

    def test_summary_reads_on_the_request_session(self, client, test_user, user_headers):
        seed_usage(test_user.id, "workouts", 2)
        for period in ("current", "last30", "last90"):
            response = client.get(f"/v1/usage/summary?period={period}", headers=user_headers)
            assert response.status_code == 200
            assert response.json()["by_category"] == {"workouts": 2}

    def test_unknown_period(self, client, user_headers):
        assert client.get("/v1/usage/summary?period=forever", headers=user_headers).status_code == 422
