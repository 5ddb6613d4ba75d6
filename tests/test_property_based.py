"""
Property-based tests with hypothesis for the credit rules.

Invariants checked:
1. Application cost: bounded, integer, monotone in urgency
2. Balance alerts: one alert per threshold crossing over random balance walks
3. Ledger arithmetic: the balance always reconciles with its lifetime totals
4. Usage windows: bounds always bracket the moment they were computed for
5. Outbox backoff: monotone and capped
"""
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from hypothesis import given, settings as h_settings
from hypothesis.strategies import (
    composite,
    datetimes,
    integers,
    lists,
    sampled_from,
    tuples,
)

from app.db.models.credit_balance import CreditBalance
from app.db.models.credit_transaction import TransactionType
from app.db.models.marketplace_job import JobType, UrgencyLevel
from app.domain.credit_policy import (
    application_credit_cost,
    get_role_limits,
    usage_window_bounds,
)
from app.domain.services.balance_alert_service import decide_alert
from app.domain.services.credit_ledger import CreditLedger
from app.domain.services.notification_service import NotificationKind
from app.domain.services.outbox_service import _calculate_backoff_seconds
from app.core.validation import TextSanitizer, mask_secret

SYDNEY = ZoneInfo("Australia/Sydney")
URGENCY_ORDER = [UrgencyLevel.LOW, UrgencyLevel.MEDIUM, UrgencyLevel.HIGH, UrgencyLevel.URGENT]


# ============================================================================
# Strategies
# ============================================================================

BALANCES = integers(min_value=0, max_value=60)
BALANCE_WALKS = lists(BALANCES, min_size=1, max_size=30)

LEDGER_STEPS = lists(
    tuples(
        sampled_from([TransactionType.PURCHASE, TransactionType.BONUS, TransactionType.REFUND,
                      TransactionType.USAGE, TransactionType.EXPIRY]),
        integers(min_value=1, max_value=50),
    ),
    max_size=40,
)

MOMENTS = datetimes(min_value=datetime(2020, 1, 1), max_value=datetime(2035, 12, 31))


@composite
def fresh_balance(draw):
    start = draw(BALANCES)
    return CreditBalance(
        account_id=1,
        current_balance=start,
        total_purchased=start,
        total_used=0,
        total_refunded=0,
        low_balance_alerted=False,
        critical_balance_alerted=False,
    )


# ============================================================================
# Application cost
# ============================================================================


class TestApplicationCostProperties:

    @pytest.mark.unit
    @given(urgency=sampled_from(list(UrgencyLevel)), job_type=sampled_from(list(JobType)))
    def test_cost_is_bounded_integer(self, urgency, job_type):
        cost = application_credit_cost(urgency, job_type)
        assert isinstance(cost, int)
        assert 2 <= cost <= 6

    @pytest.mark.unit
    @given(job_type=sampled_from(list(JobType)))
    def test_cost_never_drops_with_urgency(self, job_type):
        costs = [application_credit_cost(u, job_type) for u in URGENCY_ORDER]
        assert costs == sorted(costs)


# ============================================================================
# Balance alerts
# ============================================================================


class TestBalanceAlertProperties:

    @pytest.mark.unit
    @given(balance=fresh_balance(), walk=BALANCE_WALKS, role=sampled_from(["client", "tradie", "enterprise"]))
    @h_settings(max_examples=200)
    def test_one_alert_per_crossing(self, balance, walk, role):
        limits = get_role_limits(role)
        last_alert = None

        for current in walk:
            balance.current_balance = current
            kind = decide_alert(balance, limits)

            if kind is not None:
                # the same alert again needs a recovery above the low threshold in between
                assert kind != last_alert
                last_alert = kind
            if current > limits.low_balance_threshold:
                last_alert = None
                assert not balance.low_balance_alerted
                assert not balance.critical_balance_alerted

            # critical implies low
            if balance.critical_balance_alerted:
                assert balance.low_balance_alerted

    @pytest.mark.unit
    @given(current=integers(min_value=0, max_value=3))
    def test_critical_for_any_fresh_balance_at_or_under_threshold(self, current):
        balance = CreditBalance(
            account_id=1, current_balance=current, low_balance_alerted=False, critical_balance_alerted=False
        )
        assert decide_alert(balance, get_role_limits("tradie")) == NotificationKind.CRITICAL_BALANCE


# ============================================================================
# Ledger arithmetic
# ============================================================================


class TestLedgerArithmeticProperties:

    @pytest.mark.unit
    @given(steps=LEDGER_STEPS)
    def test_balance_reconciles_with_totals(self, steps):
        ledger = CreditLedger(db=None, business_tz=SYDNEY)
        balance = CreditBalance(
            account_id=1, current_balance=0, total_purchased=0, total_used=0, total_refunded=0
        )
        now = datetime(2026, 3, 1)

        for tx_type, credits in steps:
            # debits never exceed the balance
            if tx_type in (TransactionType.USAGE, TransactionType.EXPIRY):
                credits = min(credits, balance.current_balance)
                if credits == 0:
                    continue
            ledger._apply_to_balance(balance, tx_type, credits, now)

            assert balance.current_balance >= 0
            assert balance.is_reconciled


# ============================================================================
# Usage windows
# ============================================================================


class TestUsageWindowProperties:

    @pytest.mark.unit
    @given(moment=MOMENTS)
    def test_bounds_bracket_the_moment(self, moment):
        day_start, month_start = usage_window_bounds(moment, SYDNEY)

        assert month_start <= day_start <= moment
        # a local day is 23 to 25 hours long
        assert moment - day_start < timedelta(hours=25)
        assert moment - month_start < timedelta(days=32)

    @pytest.mark.unit
    @given(moment=MOMENTS)
    def test_day_start_is_local_midnight(self, moment):
        day_start, _ = usage_window_bounds(moment, SYDNEY)
        local = day_start.replace(tzinfo=timezone.utc).astimezone(SYDNEY)
        assert (local.hour, local.minute, local.second) == (0, 0, 0)


# ============================================================================
# Outbox backoff & masking
# ============================================================================


class TestMiscProperties:

    @pytest.mark.unit
    @given(retry=integers(min_value=0, max_value=10_000))
    def test_backoff_is_monotone_and_capped(self, retry):
        current = _calculate_backoff_seconds(retry, base_seconds=30, max_backoff_seconds=3600)
        following = _calculate_backoff_seconds(retry + 1, base_seconds=30, max_backoff_seconds=3600)
        assert 30 <= current <= following <= 3600

    @pytest.mark.unit
    @given(value=lists(sampled_from("abcdef0123456789_"), min_size=5, max_size=40).map("".join))
    def test_mask_secret_keeps_only_the_tail(self, value):
        masked = mask_secret(value)
        assert masked == "****" + value[-4:]

    @pytest.mark.unit
    @given(value=lists(sampled_from("ab \x00c"), max_size=300).map("".join))
    def test_sanitize_respects_max_length(self, value):
        cleaned = TextSanitizer.sanitize(value, max_length=100)
        assert len(cleaned) <= 100
        assert "\x00" not in cleaned
        assert "  " not in cleaned
