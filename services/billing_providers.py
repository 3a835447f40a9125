"""
Billing providers - checkout, portal, webhook acknowledgement and sync.

MockBillingProvider backs local and test environments.
StripeBillingProvider is a placeholder until the processor integration ships;
every call fails with provider_not_ready (501).
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from config.settings import settings, PROVIDER_MOCK, PROVIDER_STRIPE
from models.billing import (
    BillingPlan,
    CheckoutSessionResult,
    PortalSessionResult,
    SyncSubscriptionResult,
    WebhookEventResult,
)
from utils.errors import invalid_operation, provider_not_ready

logger = logging.getLogger(__name__)

DEFAULT_MOCK_CHECKOUT_URL = "https://mock-billing.local/checkout/session"
DEFAULT_MOCK_PORTAL_URL = "https://mock-billing.local/portal/session"
MOCK_WEBHOOK_EVENT_TYPE = "mock.billing.event"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingProvider(ABC):
    name: str

    @abstractmethod
    async def create_checkout_session(
        self,
        user_id: str,
        plan: BillingPlan,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutSessionResult:
        ...

    @abstractmethod
    async def create_portal_session(self, user_id: str, return_url: Optional[str] = None) -> PortalSessionResult:
        ...

    @abstractmethod
    async def handle_webhook_event(self, event: Dict[str, Any]) -> WebhookEventResult:
        ...

    @abstractmethod
    async def sync_subscription(
        self,
        user_id: str,
        external_customer_id: Optional[str] = None,
        external_subscription_id: Optional[str] = None,
    ) -> SyncSubscriptionResult:
        ...


class MockBillingProvider(BillingProvider):
    """
    Synthesizes checkout/portal URLs and session ids; never fails.
    Session ids are mock_<kind>_<user id>_<epoch ms> from the injected clock.
    """

    name = PROVIDER_MOCK

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self.clock = clock

    def _mock_id(self, prefix: str, user_id: str) -> str:
        epoch_ms = int(self.clock().timestamp() * 1000)
        return f"{prefix}_{user_id}_{epoch_ms}"

    async def create_checkout_session(self, user_id, plan, success_url=None, cancel_url=None):
        checkout_url = settings.billing_mock_checkout_url or f"{DEFAULT_MOCK_CHECKOUT_URL}?plan={plan.value}"
        return CheckoutSessionResult(
            provider=self.name,
            checkout_url=checkout_url,
            session_id=self._mock_id("mock_checkout", user_id),
        )

    async def create_portal_session(self, user_id, return_url=None):
        return PortalSessionResult(
            provider=self.name,
            portal_url=settings.billing_mock_portal_url or DEFAULT_MOCK_PORTAL_URL,
            session_id=self._mock_id("mock_portal", user_id),
        )

    async def handle_webhook_event(self, event):
        return WebhookEventResult(
            provider=self.name,
            received=True,
            event_type=event.get("type") or MOCK_WEBHOOK_EVENT_TYPE,
        )

    async def sync_subscription(self, user_id, external_customer_id=None, external_subscription_id=None):
        return SyncSubscriptionResult(provider=self.name, synced=True)


class StripeBillingProvider(BillingProvider):
    """Not wired to the payment processor yet."""

    name = PROVIDER_STRIPE

    def _not_ready(self):
        logger.error("Stripe billing provider requested but the integration is not enabled")
        return provider_not_ready(self.name)

    async def create_checkout_session(self, user_id, plan, success_url=None, cancel_url=None):
        raise self._not_ready()

    async def create_portal_session(self, user_id, return_url=None):
        raise self._not_ready()

    async def handle_webhook_event(self, event):
        raise self._not_ready()

    async def sync_subscription(self, user_id, external_customer_id=None, external_subscription_id=None):
        raise self._not_ready()


def get_billing_provider(name: Optional[str] = None, clock: Callable[[], datetime] = _utcnow) -> BillingProvider:
    """
    Select the provider named by BILLING_PROVIDER (or the explicit name).

    Raises:
        AppError(invalid_operation): unknown provider name
    """
    selected = (name or settings.billing_provider or PROVIDER_MOCK).strip().lower()
    if selected == PROVIDER_MOCK:
        return MockBillingProvider(clock=clock)
    if selected == PROVIDER_STRIPE:
        return StripeBillingProvider()
    raise invalid_operation(f"Unknown billing provider '{selected}'")
