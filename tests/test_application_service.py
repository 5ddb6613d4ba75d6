"""
Tests for ApplicationService: submission, selection, rejection and withdrawal.
"""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.core.config import settings
from app.core.exceptions import ErrorCode
from app.db.models.account import AccountRole
from app.db.models.credit_balance import CreditBalance
from app.db.models.credit_transaction import CreditTransaction, TransactionStatus, TransactionType
from app.db.models.job_application import JobApplication
from app.db.models.marketplace_job import JobStatus, MarketplaceJob
from app.domain.services.notification_service import NotificationKind


async def _balance(services, account_id: int) -> int:
    return (await services.credits.get_balance(account_id)).data["current_balance"]


@pytest.fixture
def second_tradie(account_factory, fund_account):
    async def _create(credits: int = 20):
        account = await account_factory(role=AccountRole.TRADIE, name="Second Tradie")
        await fund_account(account.id, credits)
        return account
    return _create


class TestCreateApplication:

    @pytest.mark.unit
    async def test_apply_debits_cost(self, services, tradie, open_job, outbox_messages) -> None:
        result = await services.applications.create_application(
            tradie.id,
            open_job.id,
            custom_quote="420.00",
            proposed_timeline="Thursday morning",
            cover_message="Licensed plumber, 10 years in the area.",
        )

        assert result.success
        assert result.status_code == 201
        assert result.data["credits_used"] == 4
        assert result.data["new_balance"] == 16
        assert result.data["status"] == "submitted"
        assert result.data["custom_quote"] == "420.00"

        job = await services.jobs.get_job(open_job.id)
        assert job.data["application_count"] == 1
        assert len(await outbox_messages(NotificationKind.APPLICATION_RECEIVED.value)) == 1

    @pytest.mark.unit
    async def test_usage_row_links_to_job(self, services, tradie, open_job, db_session) -> None:
        result = await services.applications.create_application(tradie.id, open_job.id)

        application = await db_session.get(JobApplication, result.data["id"])
        usage = await db_session.get(CreditTransaction, application.usage_transaction_id)
        assert usage.usage_type.value == "marketplace_application"
        assert usage.reference_type == "job"
        assert usage.reference_id == str(open_job.id)

    @pytest.mark.unit
    async def test_client_cannot_apply(self, services, client_account, account_factory, job_factory) -> None:
        other_client = await account_factory(role=AccountRole.CLIENT)
        job = await job_factory(client_id=other_client.id)

        result = await services.applications.create_application(client_account.id, job.id)

        assert result.error_code == ErrorCode.UNAUTHORIZED

    @pytest.mark.unit
    async def test_duplicate_application(self, services, tradie, open_job) -> None:
        await services.applications.create_application(tradie.id, open_job.id)

        result = await services.applications.create_application(tradie.id, open_job.id)

        assert result.error_code == ErrorCode.DUPLICATE_APPLICATION
        assert result.status_code == 409
        assert await _balance(services, tradie.id) == 16

    @pytest.mark.unit
    async def test_expired_job(self, services, tradie, job_factory, client_account) -> None:
        job = await job_factory(client_id=client_account.id, expires_at=datetime.utcnow() - timedelta(hours=1))

        result = await services.applications.create_application(tradie.id, job.id)

        assert result.error_code == ErrorCode.JOB_EXPIRED
        assert result.status_code == 410
        assert (await services.jobs.get_job(job.id)).data["status"] == "expired"
        assert await _balance(services, tradie.id) == 20

    @pytest.mark.unit
    async def test_assigned_job(self, services, tradie, job_factory, client_account) -> None:
        job = await job_factory(client_id=client_account.id, status=JobStatus.ASSIGNED)

        result = await services.applications.create_application(tradie.id, job.id)

        assert result.error_code == ErrorCode.JOB_NOT_AVAILABLE

    @pytest.mark.unit
    async def test_application_limit(self, services, tradie, second_tradie, open_job, monkeypatch) -> None:
        monkeypatch.setattr(settings, "MAX_APPLICATIONS_PER_JOB", 1)
        await services.applications.create_application(tradie.id, open_job.id)
        other = await second_tradie()

        result = await services.applications.create_application(other.id, open_job.id)

        assert result.error_code == ErrorCode.APPLICATION_LIMIT_REACHED
        assert await _balance(services, other.id) == 20

    @pytest.mark.unit
    async def test_insufficient_balance_keeps_failed_row(
        self, services, second_tradie, open_job, db_session, outbox_messages
    ) -> None:
        poor = await second_tradie(credits=2)

        result = await services.applications.create_application(poor.id, open_job.id)

        assert result.error_code == ErrorCode.INSUFFICIENT_BALANCE
        assert result.data["shortfall"] == 2
        failed = await db_session.execute(
            select(CreditTransaction).where(
                CreditTransaction.account_id == poor.id,
                CreditTransaction.status == TransactionStatus.FAILED,
            )
        )
        assert len(failed.scalars().all()) == 1
        applications = await db_session.execute(
            select(JobApplication).where(JobApplication.tradie_id == poor.id)
        )
        assert applications.scalars().all() == []
        assert len(await outbox_messages(NotificationKind.USAGE_FAILED.value, recipient_id=poor.id)) == 1

    @pytest.mark.unit
    @pytest.mark.parametrize("quote", ["0", "1000000.01", "12.345", "abc"])
    async def test_invalid_quote(self, services, tradie, open_job, quote) -> None:
        result = await services.applications.create_application(tradie.id, open_job.id, custom_quote=quote)

        assert result.error_code == ErrorCode.VALIDATION_ERROR
        assert await _balance(services, tradie.id) == 20


class TestSelection:

    @pytest.mark.integration
    async def test_select_assigns_job_and_refunds_siblings(
        self, services, tradie, second_tradie, client_account, open_job, outbox_messages
    ) -> None:
        other = await second_tradie()
        chosen = await services.applications.create_application(tradie.id, open_job.id)
        sibling = await services.applications.create_application(other.id, open_job.id)

        result = await services.applications.update_application_status(
            chosen.data["id"], client_account.id, "selected"
        )

        assert result.success
        assert result.data["status"] == "selected"

        job = await services.jobs.get_job(open_job.id)
        assert job.data["status"] == "assigned"
        assert job.data["selected_tradie_id"] == tradie.id
        assert job.data["selected_application_id"] == chosen.data["id"]

        rejected = await services.applications.get_application(sibling.data["id"], other.id)
        assert rejected.data["status"] == "rejected"
        assert rejected.data["status_reason"] == "another application was selected"
        assert rejected.data["credits_refunded"] is True

        assert await _balance(services, other.id) == 20
        assert await _balance(services, tradie.id) == 16
        assert len(await outbox_messages(NotificationKind.APPLICATION_SELECTED.value)) == 1
        assert len(await outbox_messages(NotificationKind.JOB_ASSIGNED.value)) == 1

        assert [e.name for e in services.events.published] == [
            "application.submitted",
            "application.submitted",
            "application.selected",
            "job.assigned",
            "application.rejected",
        ]

    @pytest.mark.unit
    async def test_no_second_selection(self, services, tradie, second_tradie, client_account, open_job) -> None:
        other = await second_tradie()
        first = await services.applications.create_application(tradie.id, open_job.id)
        await services.applications.create_application(other.id, open_job.id)
        await services.applications.update_application_status(first.data["id"], client_account.id, "selected")

        late = await services.applications.create_application(
            (await second_tradie()).id, open_job.id
        )

        assert late.error_code == ErrorCode.JOB_NOT_AVAILABLE

    @pytest.mark.integration
    async def test_submission_racing_selection_is_never_lost(
        self, services, tradie, second_tradie, client_account, open_job, session_factory, service_context
    ) -> None:
        chosen = await services.applications.create_application(tradie.id, open_job.id)
        latecomer = await second_tradie()

        async with session_factory() as select_db, session_factory() as apply_db:
            selecting = service_context.services(select_db)
            applying = service_context.services(apply_db)
            selection, submission = await asyncio.gather(
                selecting.applications.update_application_status(
                    chosen.data["id"], client_account.id, "selected"
                ),
                applying.applications.create_application(latecomer.id, open_job.id),
            )

        assert selection.success
        if submission.success:
            # landed first, so the selection rejected and refunded it
            async with session_factory() as db:
                status = (
                    await db.execute(
                        select(JobApplication.status).where(JobApplication.id == submission.data["id"])
                    )
                ).scalar_one()
            assert status.value == "rejected"
        else:
            assert submission.error_code == ErrorCode.JOB_NOT_AVAILABLE

        async with session_factory() as db:
            balance = (
                await db.execute(
                    select(CreditBalance.current_balance).where(CreditBalance.account_id == latecomer.id)
                )
            ).scalar_one()
            job_status = (
                await db.execute(select(MarketplaceJob.status).where(MarketplaceJob.id == open_job.id))
            ).scalar_one()
        assert balance == 20
        assert job_status == JobStatus.ASSIGNED
        assert len(service_context.locks) == 0

    @pytest.mark.unit
    async def test_only_job_owner_can_review(self, services, tradie, account_factory, open_job) -> None:
        applied = await services.applications.create_application(tradie.id, open_job.id)
        stranger = await account_factory(role=AccountRole.CLIENT)

        result = await services.applications.update_application_status(applied.data["id"], stranger.id, "selected")

        assert result.error_code == ErrorCode.UNAUTHORIZED

    @pytest.mark.unit
    async def test_owner_cannot_withdraw_on_behalf(self, services, tradie, client_account, open_job) -> None:
        applied = await services.applications.create_application(tradie.id, open_job.id)

        result = await services.applications.update_application_status(
            applied.data["id"], client_account.id, "withdrawn"
        )

        assert result.error_code == ErrorCode.INVALID_STATE_TRANSITION

    @pytest.mark.unit
    async def test_under_review_then_reject_refunds(self, services, tradie, client_account, open_job) -> None:
        applied = await services.applications.create_application(tradie.id, open_job.id)

        review = await services.applications.update_application_status(
            applied.data["id"], client_account.id, "under_review"
        )
        reject = await services.applications.update_application_status(
            applied.data["id"], client_account.id, "rejected", reason="Quote too high"
        )
        again = await services.applications.update_application_status(
            applied.data["id"], client_account.id, "selected"
        )

        assert review.data["status"] == "under_review"
        assert reject.data["credits_refunded"] is True
        assert await _balance(services, tradie.id) == 20
        assert again.error_code == ErrorCode.INVALID_STATE_TRANSITION


class TestWithdraw:

    @pytest.mark.unit
    async def test_withdraw_refunds(self, services, tradie, open_job, outbox_messages) -> None:
        applied = await services.applications.create_application(tradie.id, open_job.id)

        result = await services.applications.withdraw_application(applied.data["id"], tradie.id)

        assert result.data["status"] == "withdrawn"
        assert result.data["credits_refunded"] is True
        assert await _balance(services, tradie.id) == 20
        assert len(await outbox_messages(NotificationKind.APPLICATION_WITHDRAWN.value)) == 1

    @pytest.mark.unit
    async def test_withdraw_without_refund(self, services, tradie, open_job) -> None:
        applied = await services.applications.create_application(tradie.id, open_job.id)

        result = await services.applications.withdraw_application(applied.data["id"], tradie.id, refund=False)

        assert result.data["credits_refunded"] is False
        assert await _balance(services, tradie.id) == 16

    @pytest.mark.unit
    async def test_refund_is_applied_once(self, services, tradie, open_job, db_session) -> None:
        applied = await services.applications.create_application(tradie.id, open_job.id)
        await services.applications.withdraw_application(applied.data["id"], tradie.id)

        second = await services.applications.withdraw_application(applied.data["id"], tradie.id)

        assert second.error_code == ErrorCode.INVALID_STATE_TRANSITION
        refunds = await db_session.execute(
            select(CreditTransaction).where(
                CreditTransaction.account_id == tradie.id,
                CreditTransaction.transaction_type == TransactionType.REFUND,
            )
        )
        assert len(refunds.scalars().all()) == 1

    @pytest.mark.unit
    async def test_only_owner_can_withdraw(self, services, tradie, second_tradie, open_job) -> None:
        applied = await services.applications.create_application(tradie.id, open_job.id)
        other = await second_tradie()

        result = await services.applications.withdraw_application(applied.data["id"], other.id)

        assert result.error_code == ErrorCode.UNAUTHORIZED


class TestCompletion:

    @pytest.mark.integration
    async def test_completion_bonus(self, services, tradie, client_account, open_job, db_session) -> None:
        applied = await services.applications.create_application(tradie.id, open_job.id)
        await services.applications.update_application_status(applied.data["id"], client_account.id, "selected")

        result = await services.jobs.update_job_status(open_job.id, client_account.id, "completed")

        assert result.data["status"] == "completed"
        assert await _balance(services, tradie.id) == 20
        bonus = await db_session.execute(
            select(CreditTransaction).where(CreditTransaction.idempotency_key == f"completion-bonus:{open_job.id}")
        )
        assert bonus.scalar_one().credits == 4

    @pytest.mark.unit
    async def test_small_budget_earns_no_bonus(self, services, tradie, client_account, job_factory) -> None:
        job = await job_factory(client_id=client_account.id, estimated_budget=Decimal("80.00"))
        applied = await services.applications.create_application(tradie.id, job.id)
        await services.applications.update_application_status(applied.data["id"], client_account.id, "selected")

        await services.jobs.update_job_status(job.id, client_account.id, "completed")

        assert await _balance(services, tradie.id) == 16


class TestQueries:

    @pytest.mark.unit
    async def test_job_applications_for_owner_only(self, services, tradie, client_account, open_job) -> None:
        await services.applications.create_application(tradie.id, open_job.id)

        owner_view = await services.applications.get_job_applications(open_job.id, client_account.id)
        tradie_view = await services.applications.get_job_applications(open_job.id, tradie.id)

        assert len(owner_view.data) == 1
        assert tradie_view.error_code == ErrorCode.UNAUTHORIZED

    @pytest.mark.unit
    async def test_tradie_applications_include_job_title(self, services, tradie, open_job) -> None:
        await services.applications.create_application(tradie.id, open_job.id)

        result = await services.applications.get_tradie_applications(tradie.id)

        assert result.data[0]["job_title"] == "Replace kitchen tap"
        assert result.data[0]["job_status"] == "available"

    @pytest.mark.unit
    async def test_stats(self, services, tradie, client_account, job_factory) -> None:
        first = await job_factory(client_id=client_account.id)
        second = await job_factory(client_id=client_account.id)
        selected = await services.applications.create_application(tradie.id, first.id)
        withdrawn = await services.applications.create_application(tradie.id, second.id)
        await services.applications.update_application_status(selected.data["id"], client_account.id, "selected")
        await services.applications.withdraw_application(withdrawn.data["id"], tradie.id)

        result = await services.applications.get_tradie_application_stats(tradie.id)

        assert result.data["total_applications"] == 2
        assert result.data["by_status"]["selected"] == 1
        assert result.data["by_status"]["withdrawn"] == 1
        assert result.data["credits_spent"] == 8
        assert result.data["credits_refunded"] == 4
        assert result.data["net_credits_spent"] == 4
        assert result.data["success_rate"] == 0.5
