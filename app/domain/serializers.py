"""
Plain-dict views of ORM rows, used as ServiceResult.data
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from app.db.models.auto_topup_policy import AutoTopupPolicy
from app.db.models.credit_balance import CreditBalance
from app.db.models.credit_transaction import CreditTransaction
from app.db.models.job_application import JobApplication
from app.db.models.marketplace_job import MarketplaceJob


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def balance_to_dict(balance: CreditBalance) -> dict[str, Any]:
    return {
        "account_id": balance.account_id,
        "current_balance": balance.current_balance,
        "total_purchased": balance.total_purchased,
        "total_used": balance.total_used,
        "total_refunded": balance.total_refunded,
        "last_purchase_at": _plain(balance.last_purchase_at),
        "last_usage_at": _plain(balance.last_usage_at),
    }


def transaction_to_dict(tx: CreditTransaction) -> dict[str, Any]:
    return {
        "id": tx.id,
        "account_id": tx.account_id,
        "type": _plain(tx.transaction_type),
        "usage_type": _plain(tx.usage_type),
        "quantity": tx.quantity,
        "credits": tx.credits,
        "balance_after": tx.balance_after,
        "description": tx.description,
        "reference_id": tx.reference_id,
        "reference_type": tx.reference_type,
        "related_transaction_id": tx.related_transaction_id,
        "status": _plain(tx.status),
        "failure_reason": tx.failure_reason,
        "metadata": tx.metadata_ or {},
        "created_at": _plain(tx.created_at),
        "completed_at": _plain(tx.completed_at),
        "expires_at": _plain(tx.expires_at),
    }


def auto_topup_to_dict(policy: AutoTopupPolicy | None) -> dict[str, Any]:
    if policy is None:
        return {"status": "disabled", "configured": False}
    return {
        "configured": True,
        "status": _plain(policy.status),
        "trigger_balance": policy.trigger_balance,
        "package_type": _plain(policy.package_type),
        "has_payment_method": bool(policy.payment_method_id),
        "failure_count": policy.failure_count,
        "last_triggered_at": _plain(policy.last_triggered_at),
        "last_failure_at": _plain(policy.last_failure_at),
        "last_failure_reason": policy.last_failure_reason,
    }


def job_to_dict(job: MarketplaceJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "client_id": job.client_id,
        "title": job.title,
        "description": job.description,
        "job_type": _plain(job.job_type),
        "location": job.location,
        "urgency_level": _plain(job.urgency_level),
        "estimated_budget": _plain(job.estimated_budget),
        "status": _plain(job.status),
        "status_reason": job.status_reason,
        "date_required": _plain(job.date_required),
        "expires_at": _plain(job.expires_at),
        "application_count": job.application_count,
        "selected_tradie_id": job.selected_tradie_id,
        "selected_application_id": job.selected_application_id,
        "created_at": _plain(job.created_at),
        "completed_at": _plain(job.completed_at),
    }


def application_to_dict(application: JobApplication) -> dict[str, Any]:
    return {
        "id": application.id,
        "marketplace_job_id": application.marketplace_job_id,
        "tradie_id": application.tradie_id,
        "custom_quote": _plain(application.custom_quote),
        "proposed_timeline": application.proposed_timeline,
        "cover_message": application.cover_message,
        "credits_used": application.credits_used,
        "credits_refunded": application.credits_refunded,
        "status": _plain(application.status),
        "status_reason": application.status_reason,
        "created_at": _plain(application.created_at),
        "updated_at": _plain(application.updated_at),
    }
