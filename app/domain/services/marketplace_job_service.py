"""
Marketplace Job Service - posting, browsing and closing client jobs

Status changes go through the WorkflowCoordinator while ``job:{id}`` is held.
Expiry is detected lazily in get_job() and by the periodic sweep; both call
handle_expiry(), which rejects and refunds the job's open applications.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AppException,
    ErrorCode,
    InvalidStateTransitionError,
    JobExpiredError,
    JobNotAvailableError,
    MarketplaceException,
    NotFoundException,
    UnauthorizedError,
    ValidationException,
)
from app.core.locks import job_lock_key
from app.core.logging import get_logger, log_async_operation
from app.core.validation import AmountValidator, JobFieldValidator, TextSanitizer
from app.db.models.account import Account, AccountRole
from app.db.models.job_application import JobApplication
from app.db.models.marketplace_job import JobStatus, JobType, MarketplaceJob, UrgencyLevel
from app.domain.credit_policy import application_credit_cost
from app.domain.events import DomainEvent
from app.domain.results import ServiceResult
from app.domain.serializers import job_to_dict
from app.domain.services.credit_service import CreditService
from app.domain.services.workflow_coordinator import WorkflowCoordinator
from app.state_machine import EntityType
from app.state_machine.states import MANUAL_JOB_TARGETS

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100
DELETION_REASON = "job deleted by client"

_EDITABLE_FIELDS = frozenset({
    "title", "description", "job_type", "location", "urgency_level", "estimated_budget", "date_required",
})


class MarketplaceJobService:

    def __init__(self, db: AsyncSession, credits: CreditService, coordinator: WorkflowCoordinator):
        self.db = db
        self.credits = credits
        self.coordinator = coordinator
        self.locks = credits.locks

    # ---- helpers ----

    async def get_job_row(self, job_id: int, for_update: bool = False) -> MarketplaceJob | None:
        query = select(MarketplaceJob).where(MarketplaceJob.id == job_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def _require_job(self, job_id: int, for_update: bool = False) -> MarketplaceJob:
        job = await self.get_job_row(job_id, for_update=for_update)
        if job is None:
            raise NotFoundException("MarketplaceJob", job_id, error_code=ErrorCode.JOB_NOT_FOUND)
        return job

    @staticmethod
    def _ensure_owner(job: MarketplaceJob, actor_id: int) -> None:
        if job.client_id != actor_id:
            raise UnauthorizedError(actor_id, f"job:{job.id}")

    async def _account(self, account_id: int) -> Account:
        account = await self.db.get(Account, account_id)
        if account is None:
            raise NotFoundException("Account", account_id)
        return account

    async def _fail(self, exc: AppException, **log_data: Any) -> ServiceResult:
        await self.coordinator.rollback(self.db)
        logger.info(
            "Job operation rejected",
            extra_data={"error_code": exc.error_code.value, "message": exc.message, **log_data}
        )
        return ServiceResult.from_exception(exc)

    async def _system_error(self, operation: str, error: Exception, **log_data: Any) -> ServiceResult:
        await self.coordinator.rollback(self.db)
        logger.error(f"{operation} failed", extra_data={"error": str(error), **log_data}, exc_info=True)
        return ServiceResult.system_error()

    @staticmethod
    def _clean_fields(fields: dict[str, Any], partial: bool) -> dict[str, Any]:
        """Validate and normalise job fields; raises ValidationException listing every problem"""
        errors = JobFieldValidator.validate(
            fields.get("title"), fields.get("description"), fields.get("location"), partial=partial
        )
        cleaned: dict[str, Any] = {}
        for name in ("title", "description", "location"):
            if fields.get(name) is not None:
                cleaned[name] = TextSanitizer.sanitize(fields[name])

        if fields.get("job_type") is not None or not partial:
            try:
                cleaned["job_type"] = JobType(fields.get("job_type"))
            except ValueError:
                errors.append(f"Unknown job type: {fields.get('job_type')}")
        if fields.get("urgency_level") is not None:
            try:
                cleaned["urgency_level"] = UrgencyLevel(fields["urgency_level"])
            except ValueError:
                errors.append(f"Unknown urgency level: {fields['urgency_level']}")
        if fields.get("estimated_budget") is not None:
            is_valid, message = AmountValidator.validate_budget(fields["estimated_budget"])
            if is_valid:
                cleaned["estimated_budget"] = Decimal(str(fields["estimated_budget"]))
            else:
                errors.append(f"Budget: {message}")
        if fields.get("date_required") is not None:
            cleaned["date_required"] = fields["date_required"]

        if errors:
            raise ValidationException(
                "Invalid job details", details={"errors": errors}
            )
        return cleaned

    # ---- expiry ----

    async def _expire_locked(self, job: MarketplaceJob, now: datetime) -> bool:
        """Expire an available job past its expiry; caller holds the job lock"""
        if job.status != JobStatus.AVAILABLE or not job.is_past_expiry(now):
            return False
        await self.coordinator.transition_job(self.db, job, JobStatus.EXPIRED, reason="expired")
        return True

    async def handle_expiry(self, job_id: int, now: datetime | None = None) -> bool:
        """Shared expiry handler for lazy reads and the sweep; returns True if the job expired"""
        now = now or datetime.utcnow()
        async with self.locks.hold(job_lock_key(job_id)):
            try:
                job = await self._require_job(job_id, for_update=True)
                expired = await self._expire_locked(job, now)
                if expired:
                    await self.coordinator.commit(self.db)
                else:
                    await self.db.commit()
            except Exception:
                await self.coordinator.rollback(self.db)
                raise
        if expired:
            logger.info("Job expired", extra_data={"job_id": job_id})
        return expired

    @log_async_operation("process_expired_jobs")
    async def process_expired_jobs(self, now: datetime | None = None, limit: int = 200) -> int:
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(MarketplaceJob.id)
            .where(MarketplaceJob.status == JobStatus.AVAILABLE, MarketplaceJob.expires_at <= now)
            .order_by(MarketplaceJob.expires_at)
            .limit(limit)
        )
        expired = 0
        for job_id in list(result.scalars().all()):
            try:
                if await self.handle_expiry(job_id, now):
                    expired += 1
            except Exception as e:
                logger.error(
                    "Job expiry failed",
                    extra_data={"job_id": job_id, "error": str(e)},
                    exc_info=True
                )
        return expired

    # ---- operations ----

    async def create_job(
        self,
        client_id: int,
        title: str,
        description: str,
        job_type: str,
        location: str,
        urgency_level: str = UrgencyLevel.MEDIUM.value,
        estimated_budget: Decimal | float | str | None = None,
        date_required: datetime | None = None,
    ) -> ServiceResult:
        try:
            account = await self._account(client_id)
            if account.role not in (AccountRole.CLIENT, AccountRole.ADMIN):
                raise UnauthorizedError(client_id, "job:create")

            fields = self._clean_fields(
                {
                    "title": title,
                    "description": description,
                    "job_type": job_type,
                    "location": location,
                    "urgency_level": urgency_level,
                    "estimated_budget": estimated_budget,
                    "date_required": date_required,
                },
                partial=False,
            )
            now = datetime.utcnow()
            job = MarketplaceJob(
                client_id=client_id,
                status=JobStatus.AVAILABLE,
                application_count=0,
                expires_at=now + timedelta(days=settings.JOB_EXPIRY_DAYS),
                **fields,
            )
            self.db.add(job)
            await self.db.flush()
            await self.coordinator.events.publish(self.db, self._created_event(job))
            await self.coordinator.commit(self.db)
        except AppException as e:
            return await self._fail(e, client_id=client_id)
        except Exception as e:
            return await self._system_error("create_job", e, client_id=client_id)

        logger.info(
            "Job created",
            extra_data={"job_id": job.id, "client_id": client_id, "job_type": job.job_type.value}
        )
        return ServiceResult.ok("Job created", job_to_dict(job), status_code=201)

    @staticmethod
    def _created_event(job: MarketplaceJob) -> DomainEvent:
        return DomainEvent(
            entity_type=EntityType.JOB.value,
            entity_id=job.id,
            from_state=None,
            to_state=JobStatus.AVAILABLE.value,
            actor_id=job.client_id,
            payload={"client_id": job.client_id, "job_type": job.job_type.value},
        )

    async def get_job(self, job_id: int, viewer_id: int | None = None) -> ServiceResult:
        """Job details; a tradie viewer also gets the application cost and affordability"""
        try:
            job = await self._require_job(job_id)
            if job.status == JobStatus.AVAILABLE and job.is_past_expiry():
                await self.handle_expiry(job_id)
                job = await self._require_job(job_id)

            data = job_to_dict(job)
            if viewer_id is not None:
                viewer = await self.db.get(Account, viewer_id)
                if viewer is not None and viewer.is_tradie:
                    cost = application_credit_cost(job.urgency_level, job.job_type)
                    balance = await self.credits.ledger.get_balance_row(viewer_id)
                    applied = await self.db.execute(
                        select(JobApplication.id).where(
                            JobApplication.marketplace_job_id == job.id,
                            JobApplication.tradie_id == viewer_id,
                        )
                    )
                    data["creditCost"] = cost
                    data["canAfford"] = bool(balance and balance.current_balance >= cost)
                    data["hasApplied"] = applied.scalar_one_or_none() is not None
            return ServiceResult.ok("Job retrieved", data)
        except AppException as e:
            return await self._fail(e, job_id=job_id)
        except Exception as e:
            return await self._system_error("get_job", e, job_id=job_id)

    async def search_jobs(
        self,
        job_type: str | None = None,
        location: str | None = None,
        urgency_level: str | None = None,
        min_budget: Decimal | float | None = None,
        max_budget: Decimal | float | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> ServiceResult:
        """Open jobs only; jobs past expiry are hidden until the sweep closes them"""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        conditions = [
            MarketplaceJob.status == JobStatus.AVAILABLE,
            MarketplaceJob.expires_at > datetime.utcnow(),
        ]
        try:
            if job_type:
                conditions.append(MarketplaceJob.job_type == JobType(job_type))
            if urgency_level:
                conditions.append(MarketplaceJob.urgency_level == UrgencyLevel(urgency_level))
        except ValueError as e:
            return ServiceResult.fail(str(e))
        if location:
            conditions.append(MarketplaceJob.location.ilike(f"%{location.strip()}%"))
        if min_budget is not None:
            conditions.append(MarketplaceJob.estimated_budget >= Decimal(str(min_budget)))
        if max_budget is not None:
            conditions.append(MarketplaceJob.estimated_budget <= Decimal(str(max_budget)))

        total = await self.db.execute(select(func.count(MarketplaceJob.id)).where(*conditions))
        result = await self.db.execute(
            select(MarketplaceJob)
            .where(*conditions)
            .order_by(MarketplaceJob.created_at.desc(), MarketplaceJob.id.desc())
            .limit(limit)
            .offset(offset)
        )
        jobs = []
        for job in result.scalars().all():
            item = job_to_dict(job)
            item["creditCost"] = application_credit_cost(job.urgency_level, job.job_type)
            jobs.append(item)
        return ServiceResult.ok(
            "Jobs retrieved",
            {"jobs": jobs, "total": total.scalar_one(), "limit": limit, "offset": offset}
        )

    async def update_job(self, job_id: int, client_id: int, **changes: Any) -> ServiceResult:
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            return ServiceResult.fail(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        try:
            async with self.locks.hold(job_lock_key(job_id)):
                job = await self._require_job(job_id, for_update=True)
                self._ensure_owner(job, client_id)
                if await self._expire_locked(job, datetime.utcnow()):
                    await self.coordinator.commit(self.db)
                    raise JobExpiredError(job_id)
                if job.status != JobStatus.AVAILABLE:
                    raise JobNotAvailableError(job_id, job.status.value)

                cleaned = self._clean_fields({k: v for k, v in changes.items() if v is not None}, partial=True)
                for name, value in cleaned.items():
                    setattr(job, name, value)
                await self.coordinator.commit(self.db)
        except AppException as e:
            return await self._fail(e, job_id=job_id)
        except Exception as e:
            return await self._system_error("update_job", e, job_id=job_id)

        return ServiceResult.ok("Job updated", job_to_dict(job))

    async def update_job_status(
        self, job_id: int, client_id: int, status: str, reason: str | None = None
    ) -> ServiceResult:
        """Client-driven transition; only completed and cancelled are manual targets"""
        try:
            target = JobStatus(status)
        except ValueError:
            return ServiceResult.fail(f"Unknown job status: {status}")

        try:
            async with self.locks.hold(job_lock_key(job_id)):
                job = await self._require_job(job_id, for_update=True)
                self._ensure_owner(job, client_id)
                if target not in MANUAL_JOB_TARGETS:
                    raise InvalidStateTransitionError(
                        EntityType.JOB.value, job.status.value, target.value, entity_id=job_id
                    )
                if await self._expire_locked(job, datetime.utcnow()):
                    await self.coordinator.commit(self.db)
                    raise JobExpiredError(job_id)

                await self.coordinator.transition_job(
                    self.db, job, target, actor_id=client_id,
                    reason=TextSanitizer.sanitize(reason, max_length=500) if reason else None,
                )
                await self.db.commit()
                data = job_to_dict(job)
        except AppException as e:
            return await self._fail(e, job_id=job_id, target=status)
        except Exception as e:
            return await self._system_error("update_job_status", e, job_id=job_id)

        await self.coordinator.after_commit()
        return ServiceResult.ok(f"Job {target.value}", data)

    async def delete_job(self, job_id: int, client_id: int) -> ServiceResult:
        """
        A job without applications is removed. A job with applications is
        cancelled instead, which refunds every open application and keeps the
        credit history intact. Assigned and completed jobs cannot be deleted.
        """
        try:
            async with self.locks.hold(job_lock_key(job_id)):
                job = await self._require_job(job_id, for_update=True)
                self._ensure_owner(job, client_id)
                if job.status in (JobStatus.ASSIGNED, JobStatus.COMPLETED):
                    raise MarketplaceException(
                        "Assigned or completed jobs cannot be deleted",
                        ErrorCode.JOB_NOT_AVAILABLE,
                        job_id=job_id,
                        details={"current_status": job.status.value},
                    )

                count = await self.db.execute(
                    select(func.count(JobApplication.id)).where(JobApplication.marketplace_job_id == job_id)
                )
                if count.scalar_one() == 0:
                    await self.db.delete(job)
                    await self.coordinator.commit(self.db)
                    data = {"job_id": job_id, "deleted": True, "cancelled": False}
                else:
                    if job.status == JobStatus.AVAILABLE:
                        await self.coordinator.transition_job(
                            self.db, job, JobStatus.CANCELLED, actor_id=client_id, reason=DELETION_REASON
                        )
                    await self.coordinator.commit(self.db)
                    data = {"job_id": job_id, "deleted": False, "cancelled": True}
        except AppException as e:
            return await self._fail(e, job_id=job_id)
        except Exception as e:
            return await self._system_error("delete_job", e, job_id=job_id)

        logger.info("Job deleted", extra_data={"client_id": client_id, **data})
        return ServiceResult.ok("Job deleted", data)

    async def get_client_jobs(
        self, client_id: int, status: str | None = None, limit: int = 20, offset: int = 0
    ) -> ServiceResult:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        conditions = [MarketplaceJob.client_id == client_id]
        if status:
            try:
                conditions.append(MarketplaceJob.status == JobStatus(status))
            except ValueError:
                return ServiceResult.fail(f"Unknown job status: {status}")
        result = await self.db.execute(
            select(MarketplaceJob)
            .where(*conditions)
            .order_by(MarketplaceJob.created_at.desc(), MarketplaceJob.id.desc())
            .limit(limit)
            .offset(max(0, offset))
        )
        return ServiceResult.ok("Client jobs retrieved", [job_to_dict(job) for job in result.scalars().all()])

    async def get_job_credit_cost(self, job_id: int) -> ServiceResult:
        try:
            job = await self._require_job(job_id)
        except AppException as e:
            return ServiceResult.from_exception(e)
        return ServiceResult.ok(
            "Credit cost calculated",
            {
                "job_id": job.id,
                "credit_cost": application_credit_cost(job.urgency_level, job.job_type),
                "urgency_level": job.urgency_level.value,
                "job_type": job.job_type.value,
            }
        )

    async def get_marketplace_stats(self) -> ServiceResult:
        by_status = await self.db.execute(
            select(MarketplaceJob.status, func.count(MarketplaceJob.id)).group_by(MarketplaceJob.status)
        )
        by_type = await self.db.execute(
            select(MarketplaceJob.job_type, func.count(MarketplaceJob.id))
            .where(MarketplaceJob.status == JobStatus.AVAILABLE)
            .group_by(MarketplaceJob.job_type)
        )
        applications = await self.db.execute(select(func.count(JobApplication.id)))

        status_counts = {s.value: 0 for s in JobStatus}
        for status, count in by_status.all():
            status_counts[JobStatus(status).value] = count
        total_jobs = sum(status_counts.values())
        total_applications = applications.scalar_one()
        return ServiceResult.ok(
            "Marketplace statistics retrieved",
            {
                "jobs_by_status": status_counts,
                "available_by_type": {JobType(t).value: c for t, c in by_type.all()},
                "total_jobs": total_jobs,
                "total_applications": total_applications,
                "average_applications_per_job": (
                    round(total_applications / total_jobs, 2) if total_jobs else 0
                ),
            }
        )
