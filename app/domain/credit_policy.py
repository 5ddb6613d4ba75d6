"""
Credit policy tables: usage costs and caps, credit packages, per-role limits,
auto-topup limits and the marketplace application cost formula.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

from app.db.models.account import AccountRole
from app.db.models.auto_topup_policy import PackageType
from app.db.models.credit_transaction import UsageType
from app.db.models.marketplace_job import JobType, UrgencyLevel


@dataclass(frozen=True)
class UsagePolicy:
    usage_type: UsageType
    name: str
    credits_required: int
    max_per_day: int
    max_per_month: int


USAGE_POLICIES: dict[UsageType, UsagePolicy] = {
    UsageType.JOB_APPLICATION: UsagePolicy(UsageType.JOB_APPLICATION, "Job Application", 1, 20, 100),
    UsageType.PROFILE_BOOST: UsagePolicy(UsageType.PROFILE_BOOST, "Profile Boost", 5, 3, 30),
    UsageType.PREMIUM_JOB_UNLOCK: UsagePolicy(UsageType.PREMIUM_JOB_UNLOCK, "Premium Job Unlock", 3, 10, 50),
    UsageType.DIRECT_MESSAGE: UsagePolicy(UsageType.DIRECT_MESSAGE, "Direct Message", 2, 15, 75),
    UsageType.FEATURED_LISTING: UsagePolicy(UsageType.FEATURED_LISTING, "Featured Listing", 10, 1, 5),
    UsageType.MARKETPLACE_APPLICATION: UsagePolicy(
        UsageType.MARKETPLACE_APPLICATION, "Marketplace Application", 2, 15, 75
    ),
}


def get_usage_policy(usage_type: UsageType | str) -> UsagePolicy:
    return USAGE_POLICIES[UsageType(usage_type)]


@dataclass(frozen=True)
class CreditPackage:
    package_type: PackageType
    name: str
    credits: int
    bonus_credits: int
    price: Decimal  # AUD
    validity_days: int | None = None
    is_default: bool = False

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus_credits

    @property
    def price_cents(self) -> int:
        return int((self.price * 100).to_integral_value())


CREDIT_PACKAGES: dict[PackageType, CreditPackage] = {
    PackageType.STARTER: CreditPackage(PackageType.STARTER, "Starter Pack", 10, 0, Decimal("9.99")),
    PackageType.STANDARD: CreditPackage(
        PackageType.STANDARD, "Standard Pack", 25, 5, Decimal("19.99"), is_default=True
    ),
    PackageType.PREMIUM: CreditPackage(PackageType.PREMIUM, "Premium Pack", 50, 15, Decimal("34.99")),
    PackageType.ENTERPRISE: CreditPackage(
        PackageType.ENTERPRISE, "Enterprise Pack", 100, 30, Decimal("59.99"), validity_days=90
    ),
}


def get_package(package_type: PackageType | str) -> CreditPackage:
    return CREDIT_PACKAGES[PackageType(package_type)]


@dataclass(frozen=True)
class RoleLimits:
    low_balance_threshold: int
    critical_balance_threshold: int
    max_balance: int
    max_daily_purchase: Decimal
    max_monthly_purchase: Decimal


_CLIENT_LIMITS = RoleLimits(5, 2, 200, Decimal("100"), Decimal("500"))
_TRADIE_LIMITS = RoleLimits(10, 3, 500, Decimal("200"), Decimal("1000"))
_ENTERPRISE_LIMITS = RoleLimits(25, 10, 1000, Decimal("500"), Decimal("2500"))

ROLE_LIMITS: dict[AccountRole, RoleLimits] = {
    AccountRole.CLIENT: _CLIENT_LIMITS,
    AccountRole.TRADIE: _TRADIE_LIMITS,
    AccountRole.ENTERPRISE: _ENTERPRISE_LIMITS,
}


def get_role_limits(role: AccountRole | str | None) -> RoleLimits:
    try:
        return ROLE_LIMITS.get(AccountRole(role), _TRADIE_LIMITS)
    except ValueError:
        return _TRADIE_LIMITS


# Auto-topup
AUTO_TOPUP_MIN_TRIGGER = 0
AUTO_TOPUP_MAX_TRIGGER = 50
AUTO_TOPUP_DEFAULT_TRIGGER = 5
AUTO_TOPUP_DEFAULT_PACKAGE = PackageType.STANDARD
AUTO_TOPUP_MAX_FAILURES = 3
AUTO_TOPUP_COOLDOWN = timedelta(hours=1)

# Per usage operation
MIN_CREDITS_PER_TRANSACTION = 1
MAX_CREDITS_PER_TRANSACTION = 50

# Marketplace application cost
BASE_APPLICATION_COST = 2

URGENCY_MULTIPLIERS: dict[UrgencyLevel, float] = {
    UrgencyLevel.LOW: 1.0,
    UrgencyLevel.MEDIUM: 1.2,
    UrgencyLevel.HIGH: 1.5,
    UrgencyLevel.URGENT: 2.0,
}

JOB_TYPE_MULTIPLIERS: dict[JobType, float] = {
    JobType.ELECTRICAL: 1.5,
    JobType.PLUMBING: 1.5,
    JobType.ROOFING: 1.3,
    JobType.HVAC: 1.3,
    JobType.CARPENTRY: 1.2,
    JobType.PAINTING: 1.0,
    JobType.LANDSCAPING: 1.0,
    JobType.HANDYMAN: 1.0,
    JobType.GENERAL: 1.0,
    JobType.CLEANING: 0.8,
}


def application_credit_cost(urgency: UrgencyLevel | str, job_type: JobType | str) -> int:
    """ceil(base * urgency * job type), e.g. urgent electrical -> ceil(2 * 2.0 * 1.5) = 6"""
    urgency_multiplier = URGENCY_MULTIPLIERS.get(UrgencyLevel(urgency), 1.0)
    type_multiplier = JOB_TYPE_MULTIPLIERS.get(JobType(job_type), 1.0)
    # strip float noise such as 3.0000000000000004 before ceil
    return math.ceil(round(BASE_APPLICATION_COST * urgency_multiplier * type_multiplier, 6))


def completion_bonus_credits(estimated_budget: Decimal | int | None) -> int:
    """One bonus credit per $100 of budget"""
    if not estimated_budget:
        return 0
    return int(Decimal(estimated_budget) // 100)


# Usage windows

def _to_naive_utc(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def usage_window_bounds(now_utc: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """
    Start of the current calendar day and calendar month in ``tz``, both as
    naive UTC datetimes comparable with created_at columns.
    """
    aware_now = now_utc.replace(tzinfo=timezone.utc) if now_utc.tzinfo is None else now_utc
    local_now = aware_now.astimezone(tz)
    day_start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    month_start = day_start.replace(day=1)
    return _to_naive_utc(day_start), _to_naive_utc(month_start)


def previous_month_bounds(now_utc: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """[start, end) of the previous calendar month in ``tz`` as naive UTC"""
    _, this_month_start = usage_window_bounds(now_utc, tz)
    local_this_month = this_month_start.replace(tzinfo=timezone.utc).astimezone(tz)
    local_previous = (local_this_month - timedelta(days=1)).replace(
        day=1, hour=0, minute=0, second=0, microsecond=0
    )
    return _to_naive_utc(local_previous), this_month_start
