"""
Tests for the credit and auto-topup API endpoints
"""
import pytest
from httpx import AsyncClient

from app.core.exceptions import ErrorCode
from app.db.models.account import Account
from app.domain.service_context import get_service_context, set_service_context


def _as(account: Account) -> dict:
    return {"X-Account-ID": str(account.id)}


class TestAccountHeader:

    @pytest.mark.integration
    async def test_missing_header(self, test_client: AsyncClient):
        response = await test_client.get("/api/credits/balance")

        assert response.status_code == 401
        assert response.json()["detail"] == "Missing X-Account-ID header"

    @pytest.mark.integration
    async def test_unknown_account(self, test_client: AsyncClient):
        response = await test_client.get("/api/credits/balance", headers={"X-Account-ID": "99999"})
        assert response.status_code == 403

    @pytest.mark.integration
    async def test_inactive_account(self, test_client: AsyncClient, account_factory):
        account = await account_factory(is_active=False)

        response = await test_client.get("/api/credits/balance", headers=_as(account))

        assert response.status_code == 403

    @pytest.mark.integration
    async def test_admin_endpoint_rejects_tradie(self, test_client: AsyncClient, tradie: Account):
        response = await test_client.post(
            "/api/credits/admin/bonus",
            json={"account_id": tradie.id, "credits": 5},
            headers=_as(tradie),
        )
        assert response.status_code == 403


class TestCreditEndpoints:

    @pytest.mark.integration
    async def test_packages_are_public(self, test_client: AsyncClient):
        response = await test_client.get("/api/credits/packages")

        assert response.status_code == 200
        body = response.json()
        premium = next(p for p in body["packages"] if p["package_type"] == "premium")
        assert premium["total_credits"] == 65
        assert premium["price"] == "34.99"
        assert body["usage_costs"]["direct_message"]["credits_required"] == 2

    @pytest.mark.integration
    async def test_balance(self, test_client: AsyncClient, tradie: Account):
        response = await test_client.get("/api/credits/balance", headers=_as(tradie))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["current_balance"] == 20

    @pytest.mark.integration
    async def test_purchase_with_idempotency_header(self, test_client: AsyncClient, tradie: Account, payment_gateway):
        payload = {"package_type": "standard", "payment_method_id": "pm_card_visa"}
        headers = {**_as(tradie), "Idempotency-Key": "checkout-42"}

        first = await test_client.post("/api/credits/purchase", json=payload, headers=headers)
        replay = await test_client.post("/api/credits/purchase", json=payload, headers=headers)

        assert first.status_code == 201
        assert first.json()["data"]["new_balance"] == 50
        assert replay.status_code == 201
        assert len(payment_gateway.charges) == 1

    @pytest.mark.integration
    async def test_declined_purchase(self, test_client: AsyncClient, tradie: Account, payment_gateway):
        payment_gateway.decline_next = 1

        response = await test_client.post(
            "/api/credits/purchase",
            json={"package_type": "starter", "payment_method_id": "pm_card_visa"},
            headers=_as(tradie),
        )

        assert response.status_code == 402
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == ErrorCode.PAYMENT_FAILED.value

    @pytest.mark.integration
    async def test_deduct_insufficient(self, test_client: AsyncClient, tradie: Account):
        response = await test_client.post(
            "/api/credits/deduct", json={"credits": 25}, headers=_as(tradie)
        )

        assert response.status_code == 402
        assert response.json()["error_code"] == ErrorCode.INSUFFICIENT_BALANCE.value

    @pytest.mark.integration
    async def test_deduct_rejects_injection_in_description(self, test_client: AsyncClient, tradie: Account):
        response = await test_client.post(
            "/api/credits/deduct",
            json={"credits": 1, "description": "<script>alert(1)</script>"},
            headers=_as(tradie),
        )
        assert response.status_code == 422

    @pytest.mark.integration
    async def test_usage_and_history(self, test_client: AsyncClient, tradie: Account):
        used = await test_client.post(
            "/api/credits/usage", json={"usage_type": "profile_boost"}, headers=_as(tradie)
        )
        history = await test_client.get(
            "/api/credits/transactions", params={"transaction_type": "usage"}, headers=_as(tradie)
        )

        assert used.status_code == 200
        assert used.json()["data"]["new_balance"] == 15
        assert history.json()["data"]["total"] == 1
        tx_id = history.json()["data"]["transactions"][0]["id"]

        single = await test_client.get(f"/api/credits/transactions/{tx_id}", headers=_as(tradie))
        assert single.status_code == 200

    @pytest.mark.integration
    async def test_check_requires_positive_amount(self, test_client: AsyncClient, tradie: Account):
        response = await test_client.get("/api/credits/check", params={"credits": 0}, headers=_as(tradie))
        assert response.status_code == 422

    @pytest.mark.integration
    async def test_validate(self, test_client: AsyncClient, tradie: Account):
        response = await test_client.post(
            "/api/credits/validate",
            json={"transaction_type": "usage", "credits": 80},
            headers=_as(tradie),
        )

        assert response.status_code == 400
        assert len(response.json()["errors"]) == 2

    @pytest.mark.integration
    async def test_admin_bonus_and_refund(self, test_client: AsyncClient, tradie: Account, admin_account: Account):
        bonus = await test_client.post(
            "/api/credits/admin/bonus",
            json={"account_id": tradie.id, "credits": 5},
            headers=_as(admin_account),
        )
        assert bonus.status_code == 201
        assert bonus.json()["data"]["new_balance"] == 25

        used = await test_client.post("/api/credits/deduct", json={"credits": 4}, headers=_as(tradie))
        tx_id = used.json()["data"]["transaction"]["id"]

        refund = await test_client.post(
            f"/api/credits/admin/transactions/{tx_id}/refund",
            json={"credits": 2, "reason": "duplicate charge"},
            headers=_as(admin_account),
        )
        assert refund.status_code == 200

        balance = await test_client.get("/api/credits/balance", headers=_as(tradie))
        assert balance.json()["data"]["current_balance"] == 23


class TestAutoTopupEndpoints:

    @pytest.mark.integration
    async def test_setup_and_status(self, test_client: AsyncClient, tradie: Account):
        setup = await test_client.put(
            "/api/auto-topup/",
            json={"payment_method_id": "pm_card_visa", "trigger_balance": 8, "package_type": "premium"},
            headers=_as(tradie),
        )
        status = await test_client.get("/api/auto-topup/", headers=_as(tradie))

        assert setup.status_code == 200
        assert status.json()["data"]["trigger_balance"] == 8
        assert status.json()["data"]["status"] == "enabled"

    @pytest.mark.integration
    async def test_trigger_out_of_range(self, test_client: AsyncClient, tradie: Account):
        response = await test_client.put(
            "/api/auto-topup/",
            json={"payment_method_id": "pm_card_visa", "trigger_balance": 51},
            headers=_as(tradie),
        )
        assert response.status_code == 422

    @pytest.mark.integration
    async def test_debit_triggers_topup(self, test_client: AsyncClient, tradie: Account):
        await test_client.put(
            "/api/auto-topup/",
            json={"payment_method_id": "pm_card_visa", "trigger_balance": 5},
            headers=_as(tradie),
        )

        await test_client.post("/api/credits/deduct", json={"credits": 16}, headers=_as(tradie))
        history = await test_client.get("/api/auto-topup/history", headers=_as(tradie))
        balance = await test_client.get("/api/credits/balance", headers=_as(tradie))

        assert len(history.json()["data"]) == 1
        assert balance.json()["data"]["current_balance"] == 34

    @pytest.mark.integration
    async def test_disable(self, test_client: AsyncClient, tradie: Account):
        await test_client.put("/api/auto-topup/", json={"payment_method_id": "pm_1"}, headers=_as(tradie))

        response = await test_client.post("/api/auto-topup/disable", headers=_as(tradie))

        assert response.status_code == 200
        status = await test_client.get("/api/auto-topup/", headers=_as(tradie))
        assert status.json()["data"]["status"] == "disabled"


class TestServiceContextWiring:

    @pytest.mark.unit
    def test_missing_context_is_an_error(self):
        set_service_context(None)

        with pytest.raises(RuntimeError, match="not initialized"):
            get_service_context()

    @pytest.mark.unit
    def test_installed_context_is_returned(self, service_context):
        set_service_context(service_context)
        try:
            assert get_service_context() is service_context
        finally:
            set_service_context(None)
