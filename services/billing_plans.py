"""
Billing plan catalog - fixed reference data, not loaded from configuration
"""
import calendar
from datetime import datetime
from typing import Dict, List, Optional

from models.billing import BillingPlan, BillingPlanCatalog

CURRENCY = "USD"

PLAN_INTERVAL_MONTHS: Dict[BillingPlan, int] = {
    BillingPlan.FREE: 0,
    BillingPlan.MONTH: 1,
    BillingPlan.SIX_MONTHS: 6,
    BillingPlan.YEAR: 12,
}

PLANS: List[BillingPlanCatalog] = [
    BillingPlanCatalog(
        plan=BillingPlan.FREE,
        amount_cents=0,
        currency=CURRENCY,
        interval_months=PLAN_INTERVAL_MONTHS[BillingPlan.FREE],
        display_name="Free",
        features=["Basic daily quest", "Personal progress"],
    ),
    BillingPlanCatalog(
        plan=BillingPlan.MONTH,
        amount_cents=999,
        currency=CURRENCY,
        interval_months=PLAN_INTERVAL_MONTHS[BillingPlan.MONTH],
        display_name="Monthly",
        features=["Everything in Free", "Advanced statistics"],
    ),
    BillingPlanCatalog(
        plan=BillingPlan.SIX_MONTHS,
        amount_cents=4999,
        currency=CURRENCY,
        interval_months=PLAN_INTERVAL_MONTHS[BillingPlan.SIX_MONTHS],
        display_name="Six months",
        features=["Everything in Monthly", "Priority support"],
    ),
    BillingPlanCatalog(
        plan=BillingPlan.YEAR,
        amount_cents=8999,
        currency=CURRENCY,
        interval_months=PLAN_INTERVAL_MONTHS[BillingPlan.YEAR],
        display_name="Yearly",
        features=["Everything in Six months", "Preferred pricing"],
    ),
]


def add_months(moment: datetime, months: int) -> Optional[datetime]:
    """
    Shift a timestamp by whole calendar months.

    The day of month is clamped to the last day of the target month,
    so Jan 31 + 1 month lands on Feb 28 (or 29).

    Returns None for a non-positive interval (FREE has no billing period).
    """
    if months <= 0:
        return None
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def period_end_for(plan: BillingPlan, start: datetime) -> Optional[datetime]:
    return add_months(start, PLAN_INTERVAL_MONTHS[plan])
