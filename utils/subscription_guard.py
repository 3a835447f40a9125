"""
Feature gate for premium routes: blocks users whose subscription is canceled.
"""
import logging

from fastapi import Depends

from auth import get_current_user
from models.billing import BillingStatus, BillingSubscriptionRecord
from services.billing_service import BillingService, get_billing_service
from utils.errors import AppError

logger = logging.getLogger(__name__)

# PAST_DUE stays enabled until lazy expiry flips it to CANCELED
ENABLED_STATUSES = {BillingStatus.ACTIVE, BillingStatus.PAST_DUE}


async def require_active_subscription(
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
) -> BillingSubscriptionRecord:
    """
    Dependency that returns the caller's subscription when it is usable
    and raises subscription_inactive (402) otherwise.
    """
    record = await billing_service.get_subscription_record(current_user["user_id"])
    if record.status not in ENABLED_STATUSES:
        logger.info(f"Blocked user {record.user_id}: subscription is {record.status.value}")
        raise AppError(402, "subscription_inactive", "Active subscription required")
    return record
