"""
Tests for the job and application API endpoints
"""
import pytest
from httpx import AsyncClient

from app.core.exceptions import ErrorCode
from app.db.models.account import Account
from app.db.models.marketplace_job import MarketplaceJob


def _as(account: Account) -> dict:
    return {"X-Account-ID": str(account.id)}


JOB_PAYLOAD = {
    "title": "Replace hot water system",
    "description": "Old 250L electric unit is leaking and needs replacing this week.",
    "job_type": "plumbing",
    "location": "Marrickville NSW",
    "urgency_level": "high",
    "estimated_budget": "1800.00",
}


class TestJobEndpoints:

    @pytest.mark.integration
    async def test_post_job(self, test_client: AsyncClient, client_account: Account):
        response = await test_client.post("/api/jobs/", json=JOB_PAYLOAD, headers=_as(client_account))

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["status"] == "available"
        assert data["estimated_budget"] == "1800.00"

    @pytest.mark.integration
    async def test_post_job_validation_errors(self, test_client: AsyncClient, client_account: Account):
        response = await test_client.post(
            "/api/jobs/", json={**JOB_PAYLOAD, "title": "Fix"}, headers=_as(client_account)
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == ErrorCode.VALIDATION_ERROR.value

    @pytest.mark.integration
    async def test_post_job_rejects_script(self, test_client: AsyncClient, client_account: Account):
        response = await test_client.post(
            "/api/jobs/",
            json={**JOB_PAYLOAD, "description": "<script>alert('x')</script> and more words here"},
            headers=_as(client_account),
        )
        assert response.status_code == 422

    @pytest.mark.integration
    async def test_search_is_public(self, test_client: AsyncClient, open_job: MarketplaceJob):
        response = await test_client.get("/api/jobs/", params={"job_type": "plumbing"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 1
        assert data["jobs"][0]["creditCost"] == 4

    @pytest.mark.integration
    async def test_tradie_job_view(self, test_client: AsyncClient, tradie: Account, open_job: MarketplaceJob):
        response = await test_client.get(f"/api/jobs/{open_job.id}", headers=_as(tradie))

        data = response.json()["data"]
        assert data["creditCost"] == 4
        assert data["canAfford"] is True

    @pytest.mark.integration
    async def test_missing_job(self, test_client: AsyncClient, tradie: Account):
        response = await test_client.get("/api/jobs/424242", headers=_as(tradie))

        assert response.status_code == 404
        assert response.json()["error_code"] == ErrorCode.JOB_NOT_FOUND.value

    @pytest.mark.integration
    async def test_edit_and_cancel(self, test_client: AsyncClient, client_account: Account, open_job: MarketplaceJob):
        edited = await test_client.patch(
            f"/api/jobs/{open_job.id}", json={"title": "Fix leaking kitchen mixer"}, headers=_as(client_account)
        )
        cancelled = await test_client.post(
            f"/api/jobs/{open_job.id}/status",
            json={"status": "cancelled", "reason": "Sold the house"},
            headers=_as(client_account),
        )

        assert edited.json()["data"]["title"] == "Fix leaking kitchen mixer"
        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["status"] == "cancelled"

    @pytest.mark.integration
    async def test_manual_assignment_is_rejected(
        self, test_client: AsyncClient, client_account: Account, open_job: MarketplaceJob
    ):
        response = await test_client.post(
            f"/api/jobs/{open_job.id}/status", json={"status": "assigned"}, headers=_as(client_account)
        )

        assert response.status_code == 409

    @pytest.mark.integration
    async def test_credit_cost_endpoint(self, test_client: AsyncClient, open_job: MarketplaceJob):
        response = await test_client.get(f"/api/jobs/{open_job.id}/credit-cost")
        assert response.json()["data"]["credit_cost"] == 4

    @pytest.mark.integration
    async def test_my_jobs(self, test_client: AsyncClient, client_account: Account, open_job: MarketplaceJob):
        response = await test_client.get("/api/jobs/mine", headers=_as(client_account))

        assert [j["id"] for j in response.json()["data"]] == [open_job.id]


class TestApplicationEndpoints:

    @pytest.mark.integration
    async def test_apply_select_and_view(
        self,
        test_client: AsyncClient,
        tradie: Account,
        client_account: Account,
        open_job: MarketplaceJob,
    ):
        applied = await test_client.post(
            f"/api/jobs/{open_job.id}/applications",
            json={"custom_quote": "380.00", "proposed_timeline": "Thursday morning"},
            headers=_as(tradie),
        )
        assert applied.status_code == 201
        application_id = applied.json()["data"]["id"]

        received = await test_client.get(f"/api/jobs/{open_job.id}/applications", headers=_as(client_account))
        assert [a["id"] for a in received.json()["data"]] == [application_id]

        selected = await test_client.post(
            f"/api/applications/{application_id}/status",
            json={"status": "selected"},
            headers=_as(client_account),
        )
        assert selected.status_code == 200

        job = await test_client.get(f"/api/jobs/{open_job.id}", headers=_as(client_account))
        assert job.json()["data"]["status"] == "assigned"

    @pytest.mark.integration
    async def test_apply_twice(self, test_client: AsyncClient, tradie: Account, open_job: MarketplaceJob):
        await test_client.post(f"/api/jobs/{open_job.id}/applications", json={}, headers=_as(tradie))
        again = await test_client.post(f"/api/jobs/{open_job.id}/applications", json={}, headers=_as(tradie))

        assert again.status_code == 409

    @pytest.mark.integration
    async def test_apply_without_credits(
        self, test_client: AsyncClient, account_factory, fund_account, open_job: MarketplaceJob
    ):
        broke = await account_factory()
        await fund_account(broke.id, 1)

        response = await test_client.post(
            f"/api/jobs/{open_job.id}/applications", json={}, headers=_as(broke)
        )

        assert response.status_code == 402
        assert response.json()["error_code"] == ErrorCode.INSUFFICIENT_BALANCE.value

    @pytest.mark.integration
    async def test_withdraw_without_body_refunds(
        self, test_client: AsyncClient, tradie: Account, open_job: MarketplaceJob
    ):
        applied = await test_client.post(f"/api/jobs/{open_job.id}/applications", json={}, headers=_as(tradie))
        application_id = applied.json()["data"]["id"]

        withdrawn = await test_client.post(f"/api/applications/{application_id}/withdraw", headers=_as(tradie))
        balance = await test_client.get("/api/credits/balance", headers=_as(tradie))

        assert withdrawn.status_code == 200
        assert balance.json()["data"]["current_balance"] == 20

    @pytest.mark.integration
    async def test_stranger_cannot_read_application(
        self, test_client: AsyncClient, tradie: Account, account_factory, open_job: MarketplaceJob
    ):
        applied = await test_client.post(f"/api/jobs/{open_job.id}/applications", json={}, headers=_as(tradie))
        stranger = await account_factory()

        response = await test_client.get(
            f"/api/applications/{applied.json()['data']['id']}", headers=_as(stranger)
        )

        assert response.status_code == 403

    @pytest.mark.integration
    async def test_my_applications_and_stats(
        self, test_client: AsyncClient, tradie: Account, open_job: MarketplaceJob
    ):
        await test_client.post(f"/api/jobs/{open_job.id}/applications", json={}, headers=_as(tradie))

        mine = await test_client.get("/api/applications/mine", headers=_as(tradie))
        stats = await test_client.get("/api/applications/stats", headers=_as(tradie))

        assert mine.json()["data"][0]["job_title"] == open_job.title
        assert stats.json()["data"]["total_applications"] == 1
        assert stats.json()["data"]["credits_spent"] == 4
