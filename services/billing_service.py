"""
Billing Service - subscription state machine, plan catalog and provider plumbing
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Union

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings, STORE_DATABASE
from crud.billing_subscription import (
    BillingSubscriptionRepository,
    InMemoryBillingSubscriptionRepository,
    SqlBillingSubscriptionRepository,
)
from database import get_db
from models.billing import (
    BillingPlan,
    BillingStatus,
    BillingSubscriptionRecord,
    CheckoutSessionResult,
    PlansResponse,
    PortalSessionResult,
    SubscriptionResponse,
    SubscriptionView,
    SyncSubscriptionResult,
    WebhookEventResult,
)
from services.billing_plans import PLANS, period_end_for
from services.billing_providers import BillingProvider, get_billing_provider
from utils.errors import AppError, invalid_plan_selection
from utils.stripe_signature import verify_stripe_signature

logger = logging.getLogger(__name__)

GRACE_PERIOD = timedelta(days=7)

# Subscriptions are managed in-house; the processor only feeds webhooks
INTERNAL_PROVIDER = "internal"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _invalid_payload(message: str) -> AppError:
    return AppError(400, "invalid_payload", message)


def _validate_event(event: Any) -> None:
    """Reject events whose type, data, object or metadata have the wrong shape."""
    if not isinstance(event, dict):
        raise _invalid_payload("Webhook payload must be a JSON object")
    if not isinstance(event.get("type"), str) or not event["type"]:
        raise _invalid_payload("Webhook event is missing a type")

    data = event.get("data")
    if data is None:
        return
    if not isinstance(data, dict):
        raise _invalid_payload("Webhook event data must be an object")
    obj = data.get("object")
    if obj is None:
        return
    if not isinstance(obj, dict):
        raise _invalid_payload("Webhook event data.object must be an object")
    metadata = obj.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        raise _invalid_payload("Webhook event metadata must be an object")


class BillingService:
    """
    Service class for per-user billing subscriptions.

    State lives behind an injected repository (get/save per user id). Grace
    expiry for PAST_DUE records is evaluated lazily whenever a record is
    read, there is no background sweep.
    """

    def __init__(
        self,
        repository: BillingSubscriptionRepository,
        provider: Optional[BillingProvider] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the billing service.

        Args:
            repository: Subscription repository (in-memory or SQL)
            provider: Billing provider; resolved from settings on first use when omitted
            clock: Returns the current aware UTC datetime
        """
        self.repository = repository
        self.clock = clock
        self._provider = provider

    @property
    def provider(self) -> BillingProvider:
        if self._provider is None:
            self._provider = get_billing_provider(clock=self.clock)
        return self._provider

    # ------------------------------------------------------------------
    # Record bookkeeping
    # ------------------------------------------------------------------

    async def _save(self, user_id: str, now: datetime, **changes: Any) -> BillingSubscriptionRecord:
        current = await self.repository.get_or_create(user_id, now)
        updated = current.model_copy(update={**changes, "user_id": user_id, "updated_at": now})
        return await self.repository.save(updated)

    async def _normalize_grace_period(
        self, record: BillingSubscriptionRecord, now: datetime
    ) -> BillingSubscriptionRecord:
        if record.status != BillingStatus.PAST_DUE or record.grace_period_ends_at is None:
            return record
        if record.grace_period_ends_at > now:
            return record

        logger.info(f"Grace period expired for user {record.user_id}, canceling subscription")
        return await self._save(
            record.user_id,
            now,
            status=BillingStatus.CANCELED,
            canceled_at=now,
            cancel_at_period_end=False,
            grace_period_ends_at=None,
        )

    async def _activate_plan(
        self,
        user_id: str,
        plan: BillingPlan,
        status: BillingStatus = BillingStatus.ACTIVE,
    ) -> BillingSubscriptionRecord:
        now = self.clock()
        is_past_due = status == BillingStatus.PAST_DUE
        return await self._save(
            user_id,
            now,
            plan=plan,
            status=status,
            current_period_start=None if plan == BillingPlan.FREE else now,
            current_period_end=period_end_for(plan, now),
            cancel_at_period_end=False,
            canceled_at=now if status == BillingStatus.CANCELED else None,
            past_due_marked_at=now if is_past_due else None,
            grace_period_ends_at=now + GRACE_PERIOD if is_past_due else None,
        )

    async def _build_response(self, record: BillingSubscriptionRecord) -> SubscriptionResponse:
        normalized = await self._normalize_grace_period(record, self.clock())
        return SubscriptionResponse(
            provider=INTERNAL_PROVIDER,
            subscription=SubscriptionView(**normalized.model_dump(exclude={"user_id"})),
        )

    async def get_subscription_record(self, user_id: str) -> BillingSubscriptionRecord:
        """Current record with lazy grace expiry applied (created on first access)."""
        now = self.clock()
        record = await self.repository.get_or_create(user_id, now)
        return await self._normalize_grace_period(record, now)

    # ------------------------------------------------------------------
    # State machine operations
    # ------------------------------------------------------------------

    def list_billing_plans(self) -> PlansResponse:
        return PlansResponse(provider=INTERNAL_PROVIDER, plans=PLANS)

    async def get_user_billing_subscription(self, user_id: str) -> SubscriptionResponse:
        record = await self.repository.get_or_create(user_id, self.clock())
        return await self._build_response(record)

    async def subscribe_user(self, user_id: str, plan: Union[BillingPlan, str]) -> SubscriptionResponse:
        """
        Subscribe a user to a paid plan; acts as a plan change when already subscribed.

        Raises:
            AppError(invalid_plan_selection): plan is FREE
        """
        plan = BillingPlan(plan)
        if plan == BillingPlan.FREE:
            raise invalid_plan_selection()

        record = await self._activate_plan(user_id, plan, BillingStatus.ACTIVE)
        logger.info(f"User {user_id} subscribed to {plan.value}")
        return await self._build_response(record)

    async def change_user_plan(
        self,
        user_id: str,
        plan: Union[BillingPlan, str],
        status: Optional[Union[BillingStatus, str]] = None,
    ) -> SubscriptionResponse:
        """
        Switch plan unconditionally. An explicit status is applied as given;
        PAST_DUE starts the 7 day grace period.
        """
        plan = BillingPlan(plan)
        status = BillingStatus(status) if status is not None else BillingStatus.ACTIVE

        record = await self._activate_plan(user_id, plan, status)
        logger.info(f"User {user_id} moved to {plan.value} ({status.value})")
        return await self._build_response(record)

    async def cancel_user_subscription(self, user_id: str, reason: Optional[str] = None) -> SubscriptionResponse:
        """Cancel immediately, whatever the current state. The reason is only logged."""
        now = self.clock()
        record = await self._save(
            user_id,
            now,
            status=BillingStatus.CANCELED,
            cancel_at_period_end=False,
            canceled_at=now,
            past_due_marked_at=None,
            grace_period_ends_at=None,
        )
        logger.info(f"User {user_id} canceled subscription (reason: {reason or 'n/a'})")
        return await self._build_response(record)

    async def reactivate_user_subscription(
        self, user_id: str, plan: Optional[Union[BillingPlan, str]] = None
    ) -> SubscriptionResponse:
        """
        Back to ACTIVE on the given plan, else the plan held before
        cancellation (MONTH when that was FREE).
        """
        current = await self.repository.get_or_create(user_id, self.clock())
        if plan is not None:
            target = BillingPlan(plan)
        elif current.plan == BillingPlan.FREE:
            target = BillingPlan.MONTH
        else:
            target = current.plan

        record = await self._activate_plan(user_id, target, BillingStatus.ACTIVE)
        logger.info(f"User {user_id} reactivated on {target.value}")
        return await self._build_response(record)

    # ------------------------------------------------------------------
    # Provider plumbing
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self,
        user_id: str,
        plan: Union[BillingPlan, str],
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutSessionResult:
        plan = BillingPlan(plan)
        if plan == BillingPlan.FREE:
            raise invalid_plan_selection()
        return await self.provider.create_checkout_session(
            user_id, plan, success_url=success_url, cancel_url=cancel_url
        )

    async def create_portal_session(self, user_id: str, return_url: Optional[str] = None) -> PortalSessionResult:
        return await self.provider.create_portal_session(user_id, return_url=return_url)

    async def sync_subscription(
        self,
        user_id: str,
        external_customer_id: Optional[str] = None,
        external_subscription_id: Optional[str] = None,
    ) -> SyncSubscriptionResult:
        return await self.provider.sync_subscription(
            user_id,
            external_customer_id=external_customer_id,
            external_subscription_id=external_subscription_id,
        )

    async def handle_webhook_event(
        self, signature: Optional[str], payload: Union[bytes, str]
    ) -> WebhookEventResult:
        """
        Verify, acknowledge and apply a processor webhook.

        Events are only applied when STRIPE_WEBHOOK_SECRET is configured and
        the signature checks out. Without a secret the event is acknowledged
        and left unapplied.

        Args:
            signature: Stripe-Signature header value
            payload: Raw request body

        Returns:
            WebhookEventResult; applied is True when the event changed a subscription

        Raises:
            AppError(invalid_signature): signature rejected
            AppError(invalid_payload): body is not a well-formed JSON event
        """
        try:
            payload_text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError:
            raise AppError(400, "invalid_payload", "Webhook payload must be UTF-8 JSON")

        secret = settings.stripe_webhook_secret
        if secret:
            verify_stripe_signature(
                payload_text,
                signature,
                secret,
                tolerance=settings.stripe_webhook_tolerance_seconds,
                now=self.clock().timestamp(),
            )

        try:
            event = json.loads(payload_text)
        except json.JSONDecodeError:
            raise AppError(400, "invalid_payload", "Webhook payload must be a JSON object")
        _validate_event(event)

        result = await self.provider.handle_webhook_event(event)
        if not secret:
            logger.warning(
                f"STRIPE_WEBHOOK_SECRET is not set, webhook event {event['type']} acknowledged but not applied"
            )
            return result

        applied = await self.apply_webhook_event(event)
        return result.model_copy(update={"applied": applied})

    async def apply_webhook_event(self, event: Dict[str, Any]) -> bool:
        """
        Map a recognised processor event onto a state transition.

        Returns:
            True if a transition ran, False for unknown types or events
            without a user id

        Raises:
            AppError(invalid_payload): malformed event structure
        """
        _validate_event(event)
        event_type = event["type"]
        payload = (event.get("data") or {}).get("object") or {}
        metadata = payload.get("metadata") or {}
        user_id = metadata.get("user_id") or payload.get("client_reference_id")

        handler = {
            "checkout.session.completed": self._on_checkout_completed,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_failed": self._on_payment_failed,
            "customer.subscription.deleted": self._on_subscription_deleted,
        }.get(event_type)

        if handler is None:
            logger.info(f"Ignoring webhook event type {event_type}")
            return False
        if not isinstance(user_id, str) or not user_id:
            logger.warning(f"Webhook event {event_type} carries no user id, skipping")
            return False

        return await handler(user_id, metadata)

    async def _on_checkout_completed(self, user_id: str, metadata: Dict[str, Any]) -> bool:
        try:
            plan = BillingPlan(metadata.get("plan"))
        except ValueError:
            logger.warning(f"Checkout for user {user_id} has no usable plan in metadata")
            return False
        if plan == BillingPlan.FREE:
            return False
        await self.subscribe_user(user_id, plan)
        return True

    async def _on_invoice_paid(self, user_id: str, metadata: Dict[str, Any]) -> bool:
        record = await self.get_subscription_record(user_id)
        if record.status == BillingStatus.ACTIVE:
            return False
        await self.reactivate_user_subscription(user_id)
        return True

    async def _on_payment_failed(self, user_id: str, metadata: Dict[str, Any]) -> bool:
        record = await self.get_subscription_record(user_id)
        if record.status == BillingStatus.PAST_DUE:
            return False
        await self.change_user_plan(user_id, record.plan, BillingStatus.PAST_DUE)
        return True

    async def _on_subscription_deleted(self, user_id: str, metadata: Dict[str, Any]) -> bool:
        await self.cancel_user_subscription(user_id, reason="processor subscription deleted")
        return True


# ----------------------------------------------------------------------
# FastAPI dependencies
# ----------------------------------------------------------------------

# Created empty at import; cleared only by tests
memory_repository = InMemoryBillingSubscriptionRepository()


async def get_billing_repository(db: AsyncSession = Depends(get_db)) -> BillingSubscriptionRepository:
    """Repository selected by BILLING_STORE (memory or database)."""
    if settings.billing_store == STORE_DATABASE:
        return SqlBillingSubscriptionRepository(db)
    return memory_repository


async def get_billing_service(
    repository: BillingSubscriptionRepository = Depends(get_billing_repository),
) -> BillingService:
    return BillingService(repository)
