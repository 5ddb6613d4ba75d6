"""
FastAPI dependencies for the acting account and the service bundle

Usage:
    @router.get("/balance")
    async def balance(
        account: Account = Depends(get_current_account),
        services: MarketplaceServices = Depends(get_services),
    ):
        return result_response(await services.credits.get_balance(account.id))

Authentication happens upstream; the gateway forwards the authenticated
account id in the X-Account-ID header.
"""
from fastapi import Depends, Header, HTTPException, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.account import Account, AccountRole
from app.domain.results import ServiceResult
from app.domain.service_context import MarketplaceServices, get_service_context

logger = get_logger(__name__)


async def get_current_account(
    x_account_id: int | None = Header(default=None, alias="X-Account-ID"),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """
    Resolve the acting account.

    401 when the header is missing, 403 when the account is unknown or
    inactive.
    """
    if x_account_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Account-ID header",
        )

    account = await db.get(Account, x_account_id)
    if account is None or not account.is_active:
        logger.warning(
            "Request rejected for unknown or inactive account",
            extra_data={"account_id": x_account_id, "found": account is not None},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is not active",
        )
    return account


async def require_admin(account: Account = Depends(get_current_account)) -> Account:
    if account.role != AccountRole.ADMIN:
        logger.warning("Admin endpoint rejected", extra_data={"account_id": account.id})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return account


async def get_services(db: AsyncSession = Depends(get_db)) -> MarketplaceServices:
    """Per-request services sharing the request's session"""
    return get_service_context().services(db)


def result_response(result: ServiceResult, success_status: int | None = None) -> JSONResponse:
    status_code = result.status_code
    if result.success and success_status is not None:
        status_code = success_status
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result.to_dict()))
