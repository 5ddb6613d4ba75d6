"""
Credit API Routes
"""
from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field, field_validator

from app.api.dependencies.auth import (
    get_current_account,
    get_services,
    require_admin,
    result_response,
)
from app.core.validation import TextSanitizer
from app.db.models.account import Account
from app.db.models.credit_transaction import TransactionType
from app.domain.credit_policy import CREDIT_PACKAGES, USAGE_POLICIES
from app.domain.service_context import MarketplaceServices

router = APIRouter()


class PurchaseRequest(BaseModel):
    package_type: str
    payment_method_id: str = Field(min_length=1, max_length=255)
    idempotency_key: str | None = Field(default=None, max_length=255)


class DeductRequest(BaseModel):
    credits: int
    usage_type: str | None = None
    quantity: int = Field(default=1, ge=1)
    description: str | None = None
    reference_id: str | None = None
    reference_type: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=255)

    @field_validator("description")
    @classmethod
    def sanitize_description(cls, v: str | None) -> str | None:
        if v is None:
            return None
        is_safe, _ = TextSanitizer.check_for_injection(v)
        if not is_safe:
            raise ValueError("Invalid characters in description")
        return TextSanitizer.sanitize(v, max_length=500)


class UsageRequest(BaseModel):
    usage_type: str
    quantity: int = Field(default=1, ge=1)
    reference_id: str | None = None
    reference_type: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=255)


class ValidateRequest(BaseModel):
    transaction_type: str
    credits: int
    usage_type: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class BonusRequest(BaseModel):
    account_id: int
    credits: int
    description: str | None = Field(default=None, max_length=500)
    idempotency_key: str | None = Field(default=None, max_length=255)


class RefundRequest(BaseModel):
    credits: int | None = None
    reason: str | None = Field(default=None, max_length=500)


@router.get(
    "/packages",
    summary="List credit packages",
    description="Purchasable packages with their credits, bonus credits and AUD price.",
)
async def list_packages():
    return {
        "packages": [
            {
                "package_type": package.package_type.value,
                "name": package.name,
                "credits": package.credits,
                "bonus_credits": package.bonus_credits,
                "total_credits": package.total_credits,
                "price": str(package.price),
                "validity_days": package.validity_days,
                "is_default": package.is_default,
            }
            for package in CREDIT_PACKAGES.values()
        ],
        "usage_costs": {
            usage_type.value: {
                "name": policy.name,
                "credits_required": policy.credits_required,
                "max_per_day": policy.max_per_day,
                "max_per_month": policy.max_per_month,
            }
            for usage_type, policy in USAGE_POLICIES.items()
        },
    }


@router.get("/balance", summary="Current credit balance")
async def get_balance(
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.credits.get_balance(account.id))


@router.get(
    "/dashboard",
    summary="Credit dashboard",
    description="Balance, usage this month, auto-topup status and recent transactions.",
)
async def get_dashboard(
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.credits.get_dashboard(account.id))


@router.get("/limits", summary="Role limits and today's usage against the caps")
async def get_limits(
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.credits.get_credit_limits(account.id))


@router.get("/usage", summary="Usage statistics per usage type")
async def get_usage_stats(
    usage_type: str | None = None,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.credits.get_usage_stats(account.id, usage_type))


@router.get("/check", summary="Check whether the balance covers an amount")
async def check_sufficiency(
    credits: int = Query(ge=1),
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.credits.check_sufficiency(account.id, credits))


@router.get("/expiring", summary="Credits expiring within a number of days")
async def get_expiring_credits(
    days: int = Query(default=30, ge=1, le=365),
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.credits.get_expiring_credits(account.id, days))


@router.post(
    "/purchase",
    summary="Purchase a credit package",
    description=(
        "Charges the payment method and credits the package. An Idempotency-Key header "
        "(or body field) makes retries return the original purchase."
    ),
)
async def purchase_credits(
    request: PurchaseRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.credits.purchase_credits(
        account.id,
        request.package_type,
        request.payment_method_id,
        idempotency_key=request.idempotency_key or idempotency_key,
    )
    return result_response(result, success_status=201)


@router.post("/deduct", summary="Debit credits as a usage transaction")
async def deduct_credits(
    request: DeductRequest,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.credits.deduct_credits(
        account.id,
        request.credits,
        usage_type=request.usage_type,
        quantity=request.quantity,
        description=request.description,
        reference_id=request.reference_id,
        reference_type=request.reference_type,
        idempotency_key=request.idempotency_key,
    )
    return result_response(result)


@router.post("/usage", summary="Consume a priced usage (cost from the usage table)")
async def consume_usage(
    request: UsageRequest,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.credits.consume_usage(
        account.id,
        request.usage_type,
        quantity=request.quantity,
        reference_id=request.reference_id,
        reference_type=request.reference_type,
        idempotency_key=request.idempotency_key,
    )
    return result_response(result)


@router.post("/trial", summary="Claim the one-off trial credits")
async def claim_trial_credits(
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.credits.award_trial_credits(account.id))


@router.post("/validate", summary="Validate a transaction request without applying it")
async def validate_transaction(
    request: ValidateRequest,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = services.transactions.validate_transaction_request(
        request.transaction_type, request.credits, request.usage_type
    )
    return result_response(result)


@router.get("/transactions", summary="Transaction history, newest first")
async def get_transaction_history(
    transaction_type: str | None = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.transactions.get_transaction_history(
        account.id, transaction_type=transaction_type, limit=limit, offset=offset
    )
    return result_response(result)


@router.get("/transactions/summary", summary="Totals per transaction type")
async def get_transaction_summary(
    days: int = Query(default=30, ge=1, le=365),
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.transactions.get_transaction_summary(account.id, days))


@router.get("/transactions/{transaction_id}", summary="A single transaction")
async def get_transaction(
    transaction_id: int,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    return result_response(await services.transactions.get_transaction(transaction_id, account.id))


@router.post("/transactions/{transaction_id}/cancel", summary="Cancel a pending transaction")
async def cancel_transaction(
    transaction_id: int,
    request: CancelRequest | None = None,
    account: Account = Depends(get_current_account),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.transactions.cancel_transaction(
        transaction_id, account_id=account.id, reason=request.reason if request else None
    )
    return result_response(result)


@router.post(
    "/admin/bonus",
    summary="Grant bonus credits (admin)",
)
async def grant_bonus_credits(
    request: BonusRequest,
    admin: Account = Depends(require_admin),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.credits.add_credits(
        request.account_id,
        request.credits,
        transaction_type=TransactionType.BONUS,
        description=request.description or f"Bonus granted by admin #{admin.id}",
        reference_type="admin",
        reference_id=admin.id,
        idempotency_key=request.idempotency_key,
    )
    return result_response(result, success_status=201)


@router.post(
    "/admin/transactions/{transaction_id}/refund",
    summary="Refund a usage transaction (admin)",
    description="Full or partial refund within the refund window; never more than the original debit.",
)
async def refund_transaction(
    transaction_id: int,
    request: RefundRequest,
    _: Account = Depends(require_admin),
    services: MarketplaceServices = Depends(get_services),
):
    result = await services.transactions.refund_transaction(
        transaction_id, credits=request.credits, reason=request.reason
    )
    return result_response(result)
