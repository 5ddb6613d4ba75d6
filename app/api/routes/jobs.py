"""
Marketplace Job API Routes
"""
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from app.api.dependencies.auth import get_current_account, get_services, result_response
from app.core.validation import TextSanitizer
from app.db.models.account import Account
from app.db.models.marketplace_job import UrgencyLevel
from app.domain.service_context import MarketplaceServices

router = APIRouter()


def _check_free_text(v: str | None) -> str | None:
    if v is None:
        return None
    is_safe, _ = TextSanitizer.check_for_injection(v)
    if not is_safe:
        raise ValueError("Invalid characters in text")
    return v


class JobCreate(BaseModel):
    """Length and budget bounds are enforced by the service, which reports every problem at once"""
    title: str
    description: str
    job_type: str
    location: str
    urgency_level: str = UrgencyLevel.MEDIUM.value
    estimated_budget: Decimal | None = None
    date_required: datetime | None = None

    @field_validator("title", "description", "location")
    @classmethod
    def reject_injection(cls, v: str) -> str:
        return _check_free_text(v)


class JobUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    job_type: str | None = None
    location: str | None = None
    urgency_level: str | None = None
    estimated_budget: Decimal | None = None
    date_required: datetime | None = None

    @field_validator("title", "description", "location")
    @classmethod
    def reject_injection(cls, v: str | None) -> str | None:
        return _check_free_text(v)


class JobStatusUpdate(BaseModel):
    status: str
    reason: str | None = Field(default=None, max_length=500)


class ApplicationCreate(BaseModel):
    custom_quote: Decimal | None = None
    proposed_timeline: str | None = Field(default=None, max_length=200)
    cover_message: str | None = Field(default=None, max_length=2000)


@router.post("/", summary="Post a job", description="Clients post jobs; they stay open for JOB_EXPIRY_DAYS.")
async def create_job(
    request: JobCreate,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.jobs.create_job(account.id, **request.model_dump())
    return result_response(result, success_status=201)


@router.get("/", summary="Search open jobs")
async def search_jobs(
    job_type: str | None = None,
    location: str | None = None,
    urgency_level: str | None = None,
    min_budget: Decimal | None = None,
    max_budget: Decimal | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.jobs.search_jobs(
        job_type=job_type,
        location=location,
        urgency_level=urgency_level,
        min_budget=min_budget,
        max_budget=max_budget,
        limit=limit,
        offset=offset,
    )
    return result_response(result)


@router.get("/mine", summary="Jobs posted by the acting client")
async def get_my_jobs(
    status: str | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.jobs.get_client_jobs(account.id, status=status, limit=limit, offset=offset)
    return result_response(result)


@router.get("/stats", summary="Marketplace totals")
async def get_marketplace_stats(services: MarketplaceServices = Depends(get_services)):
    return result_response(await services.jobs.get_marketplace_stats())


@router.get(
    "/{job_id}",
    summary="A single job",
    description="Tradie viewers also get creditCost, canAfford and hasApplied.",
)
async def get_job(
    job_id: int,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.jobs.get_job(job_id, viewer_id=account.id))


@router.patch("/{job_id}", summary="Edit an open job")
async def update_job(
    job_id: int,
    request: JobUpdate,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    changes = request.model_dump(exclude_unset=True)
    return result_response(await services.jobs.update_job(job_id, account.id, **changes))


@router.post(
    "/{job_id}/status",
    summary="Complete or cancel a job",
    description="Only completed and cancelled can be set directly; assignment happens by selecting an application.",
)
async def update_job_status(
    job_id: int,
    request: JobStatusUpdate,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.jobs.update_job_status(job_id, account.id, request.status, request.reason)
    return result_response(result)


@router.delete("/{job_id}", summary="Delete a job")
async def delete_job(
    job_id: int,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.jobs.delete_job(job_id, account.id))


@router.get("/{job_id}/credit-cost", summary="Credits an application to this job costs")
async def get_job_credit_cost(
    job_id: int,
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.jobs.get_job_credit_cost(job_id))


@router.get("/{job_id}/applications", summary="Applications received (job owner)")
async def get_job_applications(
    job_id: int,
    status: str | None = None,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.applications.get_job_applications(job_id, account.id, status=status)
    return result_response(result)


@router.post(
    "/{job_id}/applications",
    summary="Apply to a job",
    description="Debits the application cost; nothing is created when the debit fails.",
)
async def create_application(
    job_id: int,
    request: ApplicationCreate,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.applications.create_application(
        account.id,
        job_id,
        custom_quote=request.custom_quote,
        proposed_timeline=request.proposed_timeline,
        cover_message=request.cover_message,
    )
    return result_response(result)
