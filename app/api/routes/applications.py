"""
Job Application API Routes
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.api.dependencies.auth import get_current_account, get_services, result_response
from app.db.models.account import Account
from app.domain.service_context import MarketplaceServices

router = APIRouter()


class ApplicationStatusUpdate(BaseModel):
    status: str
    reason: str | None = Field(default=None, max_length=500)


class WithdrawRequest(BaseModel):
    refund: bool = True
    reason: str | None = Field(default=None, max_length=500)


@router.get("/mine", summary="Applications submitted by the acting tradie")
async def get_my_applications(
    status: str | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.applications.get_tradie_applications(
        account.id, status=status, limit=limit, offset=offset
    )
    return result_response(result)


@router.get("/stats", summary="Application counts, credits spent and success rate")
async def get_my_application_stats(
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.applications.get_tradie_application_stats(account.id))


@router.get("/{application_id}", summary="A single application (applicant or job owner)")
async def get_application(
    application_id: int,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.applications.get_application(application_id, account.id))


@router.post(
    "/{application_id}/status",
    summary="Review, select or reject an application (job owner)",
    description=(
        "Selecting assigns the job and rejects every other open application; "
        "rejected applications are refunded."
    ),
)
async def update_application_status(
    application_id: int,
    request: ApplicationStatusUpdate,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.applications.update_application_status(
        application_id, account.id, request.status, request.reason
    )
    return result_response(result)


@router.post("/{application_id}/withdraw", summary="Withdraw an open application")
async def withdraw_application(
    application_id: int,
    request: WithdrawRequest | None = None,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    request = request or WithdrawRequest()
    result = await services.applications.withdraw_application(
        application_id, account.id, refund=request.refund, reason=request.reason
    )
    return result_response(result)
