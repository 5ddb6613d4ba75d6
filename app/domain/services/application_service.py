"""
Application Service - tradie applications against marketplace jobs

Submission runs under ``job:{id}`` then ``account:{tradie}``: the job is
re-checked, the credits are debited, and only then is the application row
created, all in one commit. A submission that arrives while a selection holds
the job lock sees the job as assigned and is rejected.
"""
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AppException,
    DuplicateApplicationError,
    ErrorCode,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    JobExpiredError,
    JobNotAvailableError,
    MarketplaceException,
    NotFoundException,
    UnauthorizedError,
    ValidationException,
)
from app.core.locks import account_lock_key, job_lock_key
from app.core.logging import get_logger
from app.core.validation import AmountValidator, TextSanitizer
from app.db.models.account import Account
from app.db.models.credit_transaction import UsageType
from app.db.models.job_application import ApplicationStatus, JobApplication
from app.db.models.marketplace_job import JobStatus, MarketplaceJob
from app.domain.credit_policy import application_credit_cost
from app.domain.results import ServiceResult
from app.domain.serializers import application_to_dict
from app.domain.services.credit_service import CreditService
from app.domain.services.notification_service import NotificationKind
from app.domain.services.workflow_coordinator import WorkflowCoordinator
from app.state_machine import EntityType

logger = get_logger(__name__)

# statuses a job owner may set; withdrawn belongs to the tradie
CLIENT_APPLICATION_TARGETS = frozenset({
    ApplicationStatus.UNDER_REVIEW,
    ApplicationStatus.SELECTED,
    ApplicationStatus.REJECTED,
})

MAX_QUOTE = Decimal("1000000")
MAX_PAGE_SIZE = 100


class ApplicationService:

    def __init__(self, db: AsyncSession, credits: CreditService, coordinator: WorkflowCoordinator):
        self.db = db
        self.credits = credits
        self.coordinator = coordinator
        self.locks = credits.locks

    # ---- helpers ----

    async def _job(self, job_id: int, for_update: bool = False) -> MarketplaceJob:
        query = select(MarketplaceJob).where(MarketplaceJob.id == job_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        job = result.scalar_one_or_none()
        if job is None:
            raise NotFoundException("MarketplaceJob", job_id, error_code=ErrorCode.JOB_NOT_FOUND)
        return job

    async def _application(self, application_id: int, for_update: bool = False) -> JobApplication:
        query = select(JobApplication).where(JobApplication.id == application_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        application = result.scalar_one_or_none()
        if application is None:
            raise NotFoundException(
                "JobApplication", application_id, error_code=ErrorCode.APPLICATION_NOT_FOUND
            )
        return application

    async def _fail(self, exc: AppException, **log_data: Any) -> ServiceResult:
        await self.coordinator.rollback(self.db)
        logger.info(
            "Application operation rejected",
            extra_data={"error_code": exc.error_code.value, "message": exc.message, **log_data}
        )
        return ServiceResult.from_exception(exc)

    async def _system_error(self, operation: str, error: Exception, **log_data: Any) -> ServiceResult:
        await self.coordinator.rollback(self.db)
        logger.error(f"{operation} failed", extra_data={"error": str(error), **log_data}, exc_info=True)
        return ServiceResult.system_error()

    async def _ensure_open_job(self, job: MarketplaceJob) -> None:
        """Raise unless the locked job still accepts applications / selection"""
        if job.status == JobStatus.AVAILABLE and job.is_past_expiry():
            await self.coordinator.transition_job(self.db, job, JobStatus.EXPIRED, reason="expired")
            await self.coordinator.commit(self.db)
            raise JobExpiredError(job.id)
        if job.status != JobStatus.AVAILABLE:
            raise JobNotAvailableError(job.id, job.status.value)

    @staticmethod
    def _clean_submission(
        custom_quote: Any, proposed_timeline: str | None, cover_message: str | None
    ) -> dict[str, Any]:
        errors = []
        cleaned: dict[str, Any] = {}
        if custom_quote is not None:
            is_valid, message = AmountValidator.validate(custom_quote, Decimal("1"), MAX_QUOTE)
            if is_valid:
                cleaned["custom_quote"] = Decimal(str(custom_quote))
            else:
                errors.append(f"Quote: {message}")
        if proposed_timeline is not None:
            cleaned["proposed_timeline"] = TextSanitizer.sanitize(proposed_timeline, max_length=200)
        if cover_message is not None:
            is_safe, pattern = TextSanitizer.check_for_injection(cover_message)
            if not is_safe:
                errors.append(f"Cover message contains invalid content: {pattern}")
            cleaned["cover_message"] = TextSanitizer.sanitize(
                TextSanitizer.remove_control_characters(cover_message), max_length=2000
            )
        if errors:
            raise ValidationException("Invalid application details", details={"errors": errors})
        return cleaned

    # ---- submission ----

    async def create_application(
        self,
        tradie_id: int,
        job_id: int,
        custom_quote: Decimal | float | str | None = None,
        proposed_timeline: str | None = None,
        cover_message: str | None = None,
    ) -> ServiceResult:
        """
        Apply to a job. Credits are debited before the application exists; if
        the debit fails no application is created, and an insufficient
        balance leaves a failed usage row in the ledger.
        """
        try:
            tradie = await self.db.get(Account, tradie_id)
            if tradie is None:
                raise NotFoundException("Account", tradie_id)
            if not tradie.is_tradie:
                raise UnauthorizedError(tradie_id, "application:create")
            fields = self._clean_submission(custom_quote, proposed_timeline, cover_message)

            async with self.locks.hold(job_lock_key(job_id)):
                job = await self._job(job_id, for_update=True)
                if job.client_id == tradie_id:
                    raise ValidationException("You cannot apply to your own job", field="job_id")
                await self._ensure_open_job(job)

                existing = await self.db.execute(
                    select(JobApplication.id).where(
                        JobApplication.marketplace_job_id == job_id,
                        JobApplication.tradie_id == tradie_id,
                    )
                )
                if existing.scalar_one_or_none() is not None:
                    raise DuplicateApplicationError(job_id, tradie_id)
                if job.application_count >= settings.MAX_APPLICATIONS_PER_JOB:
                    raise MarketplaceException(
                        "This job is not accepting more applications",
                        ErrorCode.APPLICATION_LIMIT_REACHED,
                        job_id=job_id,
                        details={"max_applications": settings.MAX_APPLICATIONS_PER_JOB},
                    )

                cost = application_credit_cost(job.urgency_level, job.job_type)
                async with self.locks.hold(account_lock_key(tradie_id)):
                    try:
                        usage_tx = await self.credits.debit_in_unit_of_work(
                            tradie_id,
                            cost,
                            usage_type=UsageType.MARKETPLACE_APPLICATION,
                            quantity=1,
                            description=f"Application to job #{job_id}",
                            reference_id=job_id,
                            reference_type="job",
                        )
                    except InsufficientBalanceError as e:
                        if e.details.get("reason") != "operation_timeout":
                            # keep the failed usage row
                            await self.db.commit()
                            await self.credits.notifications.send(
                                tradie_id,
                                NotificationKind.USAGE_FAILED,
                                {"credits": cost, "job_id": job_id},
                            )
                            await self.db.commit()
                        raise

                    application = JobApplication(
                        marketplace_job_id=job_id,
                        tradie_id=tradie_id,
                        credits_used=cost,
                        usage_transaction_id=usage_tx.id,
                        credits_refunded=False,
                        status=ApplicationStatus.SUBMITTED,
                        **fields,
                    )
                    self.db.add(application)
                    job.application_count += 1
                    await self.db.flush()
                    await self.coordinator.application_created(self.db, application)
                    await self.db.commit()
                    data = {**application_to_dict(application), "new_balance": usage_tx.balance_after}
        except IntegrityError:
            return await self._fail(DuplicateApplicationError(job_id, tradie_id), job_id=job_id)
        except AppException as e:
            return await self._fail(e, job_id=job_id, tradie_id=tradie_id)
        except Exception as e:
            return await self._system_error("create_application", e, job_id=job_id, tradie_id=tradie_id)

        logger.info(
            "Application submitted",
            extra_data={
                "application_id": data["id"],
                "job_id": job_id,
                "tradie_id": tradie_id,
                "credits_used": cost,
            }
        )
        await self.credits.after_balance_change(tradie_id, debited=True)
        return ServiceResult.ok("Application submitted", data, status_code=201)

    # ---- queries ----

    async def get_application(self, application_id: int, actor_id: int) -> ServiceResult:
        try:
            application = await self._application(application_id)
            if application.tradie_id != actor_id:
                job = await self._job(application.marketplace_job_id)
                if job.client_id != actor_id:
                    raise UnauthorizedError(actor_id, f"application:{application_id}")
            return ServiceResult.ok("Application retrieved", application_to_dict(application))
        except AppException as e:
            return ServiceResult.from_exception(e)

    async def get_job_applications(
        self, job_id: int, client_id: int, status: str | None = None
    ) -> ServiceResult:
        try:
            job = await self._job(job_id)
            if job.client_id != client_id:
                raise UnauthorizedError(client_id, f"job:{job_id}")
            conditions = [JobApplication.marketplace_job_id == job_id]
            if status:
                try:
                    conditions.append(JobApplication.status == ApplicationStatus(status))
                except ValueError:
                    raise ValidationException(f"Unknown application status: {status}", field="status")
        except AppException as e:
            return ServiceResult.from_exception(e)

        result = await self.db.execute(
            select(JobApplication).where(*conditions).order_by(JobApplication.created_at, JobApplication.id)
        )
        return ServiceResult.ok(
            "Job applications retrieved",
            [application_to_dict(a) for a in result.scalars().all()]
        )

    async def get_tradie_applications(
        self, tradie_id: int, status: str | None = None, limit: int = 20, offset: int = 0
    ) -> ServiceResult:
        conditions = [JobApplication.tradie_id == tradie_id]
        if status:
            try:
                conditions.append(JobApplication.status == ApplicationStatus(status))
            except ValueError:
                return ServiceResult.fail(f"Unknown application status: {status}")
        result = await self.db.execute(
            select(JobApplication, MarketplaceJob.title, MarketplaceJob.status)
            .join(MarketplaceJob, MarketplaceJob.id == JobApplication.marketplace_job_id)
            .where(*conditions)
            .order_by(JobApplication.created_at.desc(), JobApplication.id.desc())
            .limit(max(1, min(limit, MAX_PAGE_SIZE)))
            .offset(max(0, offset))
        )
        items = []
        for application, job_title, job_status in result.all():
            item = application_to_dict(application)
            item["job_title"] = job_title
            item["job_status"] = JobStatus(job_status).value
            items.append(item)
        return ServiceResult.ok("Tradie applications retrieved", items)

    async def get_tradie_application_stats(self, tradie_id: int) -> ServiceResult:
        result = await self.db.execute(
            select(JobApplication.status, func.count(JobApplication.id), func.coalesce(func.sum(JobApplication.credits_used), 0))
            .where(JobApplication.tradie_id == tradie_id)
            .group_by(JobApplication.status)
        )
        refunded = await self.db.execute(
            select(func.coalesce(func.sum(JobApplication.credits_used), 0)).where(
                JobApplication.tradie_id == tradie_id,
                JobApplication.credits_refunded.is_(True),
            )
        )
        by_status = {s.value: 0 for s in ApplicationStatus}
        total = 0
        credits_spent = 0
        for status, count, credits in result.all():
            by_status[ApplicationStatus(status).value] = count
            total += count
            credits_spent += int(credits)
        credits_refunded = int(refunded.scalar_one() or 0)
        return ServiceResult.ok(
            "Application statistics retrieved",
            {
                "total_applications": total,
                "by_status": by_status,
                "credits_spent": credits_spent,
                "credits_refunded": credits_refunded,
                "net_credits_spent": credits_spent - credits_refunded,
                "success_rate": round(by_status[ApplicationStatus.SELECTED.value] / total, 4) if total else 0.0,
            }
        )

    # ---- transitions ----

    async def update_application_status(
        self, application_id: int, client_id: int, status: str, reason: str | None = None
    ) -> ServiceResult:
        """
        Job owner moves an application to under_review, selected or rejected.
        Selecting one application assigns the job and rejects and refunds every
        other open application in the same commit.
        """
        try:
            target = ApplicationStatus(status)
        except ValueError:
            return ServiceResult.fail(f"Unknown application status: {status}")

        try:
            application = await self._application(application_id)
            job_id = application.marketplace_job_id
            async with self.locks.hold(job_lock_key(job_id)):
                job = await self._job(job_id, for_update=True)
                if job.client_id != client_id:
                    raise UnauthorizedError(client_id, f"application:{application_id}")
                application = await self._application(application_id, for_update=True)
                if target not in CLIENT_APPLICATION_TARGETS:
                    raise InvalidStateTransitionError(
                        EntityType.APPLICATION.value, application.status.value, target.value, application_id
                    )
                if target == ApplicationStatus.SELECTED:
                    await self._ensure_open_job(job)

                await self.coordinator.transition_application(
                    self.db, application, target,
                    actor_id=client_id,
                    reason=TextSanitizer.sanitize(reason, max_length=500) if reason else None,
                )
                await self.db.commit()
                data = application_to_dict(application)
        except AppException as e:
            return await self._fail(e, application_id=application_id, target=status)
        except Exception as e:
            return await self._system_error("update_application_status", e, application_id=application_id)

        logger.info(
            "Application status updated",
            extra_data={"application_id": application_id, "job_id": job_id, "status": target.value}
        )
        await self.coordinator.after_commit()
        return ServiceResult.ok(f"Application {target.value}", data)

    async def withdraw_application(
        self, application_id: int, tradie_id: int, refund: bool = True, reason: str | None = None
    ) -> ServiceResult:
        """Owner-only; refunds credits_used unless ``refund`` is False"""
        try:
            application = await self._application(application_id)
            if application.tradie_id != tradie_id:
                raise UnauthorizedError(tradie_id, f"application:{application_id}")
            job_id = application.marketplace_job_id
            async with self.locks.hold(job_lock_key(job_id)):
                await self._job(job_id, for_update=True)
                application = await self._application(application_id, for_update=True)
                await self.coordinator.transition_application(
                    self.db, application, ApplicationStatus.WITHDRAWN,
                    actor_id=tradie_id,
                    reason=TextSanitizer.sanitize(reason, max_length=500) if reason else "withdrawn by tradie",
                    refund=refund,
                )
                await self.db.commit()
                data = application_to_dict(application)
        except AppException as e:
            return await self._fail(e, application_id=application_id)
        except Exception as e:
            return await self._system_error("withdraw_application", e, application_id=application_id)

        await self.coordinator.after_commit()
        return ServiceResult.ok("Application withdrawn", data)
