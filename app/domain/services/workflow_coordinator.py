"""
Workflow Coordinator

Every job / application status change goes through transition_job() or
transition_application(), which validate it against the state tables and
publish one DomainEvent. The coordinator subscribes to those events and runs
the side effects listed in its table, keyed by
``(entity_type, from_state | "*", to_state)``. Effects run inside the
publisher's unit of work, so a selection, its sibling rejections and their
refunds commit or roll back together.

Lock order: the publishing service holds ``job:{id}``; refund and bonus
effects take each tradie's ``account:{id}`` lock one at a time.
"""
from datetime import datetime
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.locks import account_lock_key
from app.core.logging import get_logger
from app.db.models.credit_transaction import TransactionType
from app.db.models.job_application import (
    OPEN_APPLICATION_STATUSES,
    ApplicationStatus,
    JobApplication,
)
from app.db.models.marketplace_job import JobStatus, MarketplaceJob
from app.domain.credit_policy import completion_bonus_credits
from app.domain.events import DomainEvent, EventBus
from app.domain.services.credit_service import CreditService
from app.domain.services.notification_service import NotificationKind
from app.domain.services.outbox_service import OutboxService
from app.state_machine import EntityType, state_manager

logger = get_logger(__name__)

ANY_STATE = "*"

SELECTION_REJECTION_REASON = "another application was selected"
CANCELLATION_REJECTION_REASON = "job was cancelled"
EXPIRY_REJECTION_REASON = "job expired"

Effect = Callable[[AsyncSession, DomainEvent], Awaitable[None]]
EffectKey = tuple[str, str, str]


async def relay_event_to_outbox(db: AsyncSession, event: DomainEvent) -> None:
    """Bus subscriber that stores each event for the Redis publisher worker"""
    await OutboxService(db).queue_event(event)


class WorkflowCoordinator:

    def __init__(self, credits: CreditService, events: EventBus):
        self.credits = credits
        self.events = events
        self.notifications = credits.notifications
        self._touched_accounts: set[int] = set()

        job, app = EntityType.JOB.value, EntityType.APPLICATION.value
        self._effects: dict[EffectKey, list[Effect]] = {
            (app, ANY_STATE, ApplicationStatus.SUBMITTED.value): [
                self.notify_application_received,
            ],
            (app, ANY_STATE, ApplicationStatus.SELECTED.value): [
                self.assign_job,
                self.reject_open_siblings,
                self.notify_application_selected,
            ],
            (app, ANY_STATE, ApplicationStatus.REJECTED.value): [
                self.refund_application,
                self.notify_application_rejected,
            ],
            (app, ANY_STATE, ApplicationStatus.WITHDRAWN.value): [
                self.refund_application,
                self.notify_application_withdrawn,
            ],
            (job, JobStatus.AVAILABLE.value, JobStatus.ASSIGNED.value): [
                self.notify_job_assigned,
            ],
            (job, JobStatus.ASSIGNED.value, JobStatus.COMPLETED.value): [
                self.award_completion_bonus,
                self.notify_job_completed,
            ],
            (job, ANY_STATE, JobStatus.CANCELLED.value): [
                self.close_open_applications,
                self.notify_job_cancelled,
            ],
            (job, JobStatus.AVAILABLE.value, JobStatus.EXPIRED.value): [
                self.close_open_applications,
                self.notify_job_expired,
            ],
        }

    # ---- table ----

    def _lookup(self, entity_type: str, from_state: str | None, to_state: str) -> list[Effect]:
        effects = list(self._effects.get((entity_type, from_state or ANY_STATE, to_state), []))
        if from_state is not None:
            effects += self._effects.get((entity_type, ANY_STATE, to_state), [])
        return effects

    def effects_for(self, entity_type: str, from_state: str | None, to_state: str) -> list[str]:
        """Names of the side effects a transition runs, in order"""
        return [effect.__name__ for effect in self._lookup(entity_type, from_state, to_state)]

    async def handle(self, db: AsyncSession, event: DomainEvent) -> None:
        for effect in self._lookup(event.entity_type, event.from_state, event.to_state):
            logger.debug(
                "Running workflow effect",
                extra_data={"event": event.name, "entity_id": event.entity_id, "effect": effect.__name__}
            )
            await effect(db, event)

    # ---- post-commit ----

    async def after_commit(self) -> None:
        """Balance alert hooks for every account credited in the committed unit of work"""
        touched, self._touched_accounts = self._touched_accounts, set()
        for account_id in sorted(touched):
            await self.credits.after_balance_change(account_id, debited=False)

    def discard_pending(self) -> None:
        self._touched_accounts.clear()

    async def commit(self, db: AsyncSession) -> None:
        await db.commit()
        await self.after_commit()

    async def rollback(self, db: AsyncSession) -> None:
        await db.rollback()
        self.discard_pending()

    # ---- transitions ----

    async def transition_job(
        self,
        db: AsyncSession,
        job: MarketplaceJob,
        target: JobStatus,
        *,
        actor_id: int | None = None,
        reason: str | None = None,
        **payload: Any,
    ) -> None:
        current = job.status
        state_manager.ensure_transition(EntityType.JOB, current, target, job.id)
        job.status = target
        if reason:
            job.status_reason = reason
        if target == JobStatus.COMPLETED:
            job.completed_at = datetime.utcnow()
        elif target in (JobStatus.CANCELLED, JobStatus.EXPIRED):
            job.selected_tradie_id = None
        await db.flush()

        logger.info(
            "Job status changed",
            extra_data={"job_id": job.id, "from": current.value, "to": target.value, "actor_id": actor_id}
        )
        await self.events.publish(
            db,
            DomainEvent(
                entity_type=EntityType.JOB.value,
                entity_id=job.id,
                from_state=current.value,
                to_state=target.value,
                actor_id=actor_id,
                payload={
                    "client_id": job.client_id,
                    "selected_tradie_id": job.selected_tradie_id,
                    "reason": reason,
                    **payload,
                },
            ),
        )

    def _application_payload(self, application: JobApplication, reason: str | None) -> dict[str, Any]:
        return {
            "job_id": application.marketplace_job_id,
            "tradie_id": application.tradie_id,
            "credits_used": application.credits_used,
            "reason": reason,
        }

    async def application_created(self, db: AsyncSession, application: JobApplication) -> None:
        await self.events.publish(
            db,
            DomainEvent(
                entity_type=EntityType.APPLICATION.value,
                entity_id=application.id,
                from_state=None,
                to_state=application.status.value,
                actor_id=application.tradie_id,
                payload=self._application_payload(application, None),
            ),
        )

    async def transition_application(
        self,
        db: AsyncSession,
        application: JobApplication,
        target: ApplicationStatus,
        *,
        actor_id: int | None = None,
        reason: str | None = None,
        **payload: Any,
    ) -> None:
        current = application.status
        state_manager.ensure_transition(EntityType.APPLICATION, current, target, application.id)
        application.status = target
        if reason:
            application.status_reason = reason
        await db.flush()

        await self.events.publish(
            db,
            DomainEvent(
                entity_type=EntityType.APPLICATION.value,
                entity_id=application.id,
                from_state=current.value,
                to_state=target.value,
                actor_id=actor_id,
                payload={**self._application_payload(application, reason), **payload},
            ),
        )

    # ---- loaders ----

    @staticmethod
    async def _job(db: AsyncSession, job_id: int) -> MarketplaceJob:
        result = await db.execute(
            select(MarketplaceJob)
            .where(MarketplaceJob.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    @staticmethod
    async def _application(db: AsyncSession, application_id: int) -> JobApplication:
        result = await db.execute(
            select(JobApplication)
            .where(JobApplication.id == application_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    @staticmethod
    async def _open_applications(
        db: AsyncSession, job_id: int, exclude_id: int | None = None
    ) -> list[JobApplication]:
        query = select(JobApplication).where(
            JobApplication.marketplace_job_id == job_id,
            JobApplication.status.in_(OPEN_APPLICATION_STATUSES),
        )
        if exclude_id is not None:
            query = query.where(JobApplication.id != exclude_id)
        result = await db.execute(
            query.order_by(JobApplication.id).with_for_update().execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # ---- effects: applications ----

    async def assign_job(self, db: AsyncSession, event: DomainEvent) -> None:
        application = await self._application(db, event.entity_id)
        job = await self._job(db, application.marketplace_job_id)
        job.selected_tradie_id = application.tradie_id
        job.selected_application_id = application.id
        await self.transition_job(
            db, job, JobStatus.ASSIGNED, actor_id=event.actor_id, application_id=application.id
        )

    async def reject_open_siblings(self, db: AsyncSession, event: DomainEvent) -> None:
        siblings = await self._open_applications(db, event.payload["job_id"], exclude_id=event.entity_id)
        for sibling in siblings:
            await self.transition_application(
                db, sibling, ApplicationStatus.REJECTED,
                actor_id=event.actor_id, reason=SELECTION_REJECTION_REASON,
            )

    async def refund_application(self, db: AsyncSession, event: DomainEvent) -> None:
        if event.payload.get("refund") is False:
            return
        application = await self._application(db, event.entity_id)
        if application.credits_refunded or application.credits_used <= 0:
            return

        async with self.credits.locks.hold(account_lock_key(application.tradie_id)):
            await self.credits.refund_in_unit_of_work(
                application.tradie_id,
                application.credits_used,
                description=f"Refund for application #{application.id} ({event.to_state})",
                reference_id=application.id,
                reference_type="application",
                related_transaction_id=application.usage_transaction_id,
                idempotency_key=f"application-refund:{application.id}",
            )
            application.credits_refunded = True
            await db.flush()
        self._touched_accounts.add(application.tradie_id)

    async def notify_application_received(self, db: AsyncSession, event: DomainEvent) -> None:
        job = await db.get(MarketplaceJob, event.payload["job_id"])
        await self.notifications.send(
            job.client_id,
            NotificationKind.APPLICATION_RECEIVED,
            {"job_id": job.id, "job_title": job.title, "application_id": event.entity_id},
        )

    async def notify_application_selected(self, db: AsyncSession, event: DomainEvent) -> None:
        await self.notifications.send(
            event.payload["tradie_id"],
            NotificationKind.APPLICATION_SELECTED,
            {"job_id": event.payload["job_id"], "application_id": event.entity_id},
        )

    async def notify_application_rejected(self, db: AsyncSession, event: DomainEvent) -> None:
        await self.notifications.send(
            event.payload["tradie_id"],
            NotificationKind.APPLICATION_REJECTED,
            {
                "job_id": event.payload["job_id"],
                "application_id": event.entity_id,
                "reason": event.payload.get("reason"),
                "credits_refunded": event.payload["credits_used"],
            },
        )

    async def notify_application_withdrawn(self, db: AsyncSession, event: DomainEvent) -> None:
        job = await db.get(MarketplaceJob, event.payload["job_id"])
        await self.notifications.send(
            job.client_id,
            NotificationKind.APPLICATION_WITHDRAWN,
            {"job_id": job.id, "application_id": event.entity_id},
        )

    # ---- effects: jobs ----

    async def close_open_applications(self, db: AsyncSession, event: DomainEvent) -> None:
        reason = (
            EXPIRY_REJECTION_REASON if event.to_state == JobStatus.EXPIRED.value
            else event.payload.get("reason") or CANCELLATION_REJECTION_REASON
        )
        for application in await self._open_applications(db, event.entity_id):
            await self.transition_application(
                db, application, ApplicationStatus.REJECTED, actor_id=event.actor_id, reason=reason,
            )

    async def award_completion_bonus(self, db: AsyncSession, event: DomainEvent) -> None:
        job = await self._job(db, event.entity_id)
        bonus = completion_bonus_credits(job.estimated_budget)
        if bonus <= 0 or job.selected_tradie_id is None:
            return
        async with self.credits.locks.hold(account_lock_key(job.selected_tradie_id)):
            await self.credits.ledger.post(
                job.selected_tradie_id,
                TransactionType.BONUS,
                bonus,
                description=f"Completion bonus for job #{job.id}",
                reference_id=job.id,
                reference_type="job",
                idempotency_key=f"completion-bonus:{job.id}",
            )
        self._touched_accounts.add(job.selected_tradie_id)

    async def notify_job_assigned(self, db: AsyncSession, event: DomainEvent) -> None:
        await self.notifications.send(
            event.payload["client_id"],
            NotificationKind.JOB_ASSIGNED,
            {"job_id": event.entity_id, "tradie_id": event.payload.get("selected_tradie_id")},
        )

    async def notify_job_completed(self, db: AsyncSession, event: DomainEvent) -> None:
        data = {"job_id": event.entity_id}
        await self.notifications.send(event.payload["client_id"], NotificationKind.JOB_COMPLETED, data)
        if event.payload.get("selected_tradie_id"):
            await self.notifications.send(
                event.payload["selected_tradie_id"], NotificationKind.JOB_COMPLETED, data
            )

    async def notify_job_cancelled(self, db: AsyncSession, event: DomainEvent) -> None:
        await self.notifications.send(
            event.payload["client_id"],
            NotificationKind.JOB_CANCELLED,
            {"job_id": event.entity_id, "reason": event.payload.get("reason")},
        )

    async def notify_job_expired(self, db: AsyncSession, event: DomainEvent) -> None:
        await self.notifications.send(
            event.payload["client_id"],
            NotificationKind.JOB_EXPIRED,
            {"job_id": event.entity_id},
        )
