"""
Auto-Topup API Routes
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.api.dependencies.auth import get_current_account, get_services, result_response
from app.db.models.account import Account
from app.domain.credit_policy import (
    AUTO_TOPUP_DEFAULT_PACKAGE,
    AUTO_TOPUP_DEFAULT_TRIGGER,
    AUTO_TOPUP_MAX_TRIGGER,
    AUTO_TOPUP_MIN_TRIGGER,
)
from app.domain.service_context import MarketplaceServices

router = APIRouter()


class AutoTopupSetupRequest(BaseModel):
    payment_method_id: str = Field(min_length=1, max_length=255)
    trigger_balance: int = Field(
        default=AUTO_TOPUP_DEFAULT_TRIGGER, ge=AUTO_TOPUP_MIN_TRIGGER, le=AUTO_TOPUP_MAX_TRIGGER
    )
    package_type: str = AUTO_TOPUP_DEFAULT_PACKAGE.value


class PaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(min_length=1, max_length=255)


@router.get("/", summary="Auto-topup status")
async def get_status(
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.auto_topup.get_status(account.id))


@router.put(
    "/",
    summary="Configure and enable auto-topup",
    description=(
        "Buys the chosen package whenever a debit leaves the balance at or under "
        "trigger_balance. Reconfiguring clears a suspension."
    ),
)
async def setup_auto_topup(
    request: AutoTopupSetupRequest,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.auto_topup.setup_auto_topup(
        account.id,
        request.payment_method_id,
        trigger_balance=request.trigger_balance,
        package_type=request.package_type,
    )
    return result_response(result)


@router.post("/enable", summary="Re-enable a disabled policy")
async def enable(
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.auto_topup.enable(account.id))


@router.post("/disable", summary="Disable auto-topup")
async def disable(
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.auto_topup.disable(account.id))


@router.put("/payment-method", summary="Replace the stored payment method")
async def update_payment_method(
    request: PaymentMethodRequest,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.auto_topup.update_payment_method(account.id, request.payment_method_id)
    return result_response(result)


@router.get("/history", summary="Past auto-topup purchases")
async def get_history(
    limit: int = Query(default=20, ge=1, le=100),
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.auto_topup.get_history(account.id, limit))
