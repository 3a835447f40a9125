"""
Billing Router - API endpoints for subscriptions, plans and provider sessions
Webhook is defined FIRST; it is the only unauthenticated write
"""

import logging
from typing import Optional
from fastapi import APIRouter, Request, Depends, Body, Header

from auth import get_current_user
from backend.utils.responses import success_response
from models.billing import (
    CancelRequest,
    ChangePlanRequest,
    CheckoutSessionRequest,
    PortalSessionRequest,
    ReactivateRequest,
    SubscribeRequest,
)
from services.billing_service import BillingService, get_billing_service

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/api/billing", tags=["billing"])


def _url(value) -> Optional[str]:
    return str(value) if value is not None else None


# WEBHOOK ENDPOINT - raw body is required for signature verification
@billing_router.post("/webhook")
async def billing_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    billing_service: BillingService = Depends(get_billing_service),
):
    """
    Handle processor webhook events with signature verification.

    Invalid signatures are rejected with invalid_signature (400) so the
    sender sees the failure; verified events are acknowledged and applied.
    Without a configured secret events are only acknowledged.
    """
    payload = await request.body()
    result = await billing_service.handle_webhook_event(stripe_signature, payload)
    logger.info(f"Webhook {result.event_type} received (applied={result.applied})")
    return success_response(result)


@billing_router.get("/plans")
async def get_billing_plans(
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
):
    """Static plan catalog"""
    return success_response(billing_service.list_billing_plans())


@billing_router.get("/subscription")
async def get_billing_subscription(
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
):
    """Current subscription, created as FREE/ACTIVE on first access"""
    result = await billing_service.get_user_billing_subscription(current_user["user_id"])
    return success_response(result)


@billing_router.post("/subscribe")
async def post_billing_subscribe(
    body: SubscribeRequest,
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
):
    result = await billing_service.subscribe_user(current_user["user_id"], body.plan)
    return success_response(result)


@billing_router.post("/change-plan")
async def post_billing_change_plan(
    body: ChangePlanRequest,
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
):
    result = await billing_service.change_user_plan(current_user["user_id"], body.plan, body.status)
    return success_response(result)


@billing_router.post("/cancel")
async def post_billing_cancel(
    body: Optional[CancelRequest] = Body(default=None),
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
):
    body = body or CancelRequest()
    result = await billing_service.cancel_user_subscription(current_user["user_id"], body.reason)
    return success_response(result)


@billing_router.post("/reactivate")
async def post_billing_reactivate(
    body: Optional[ReactivateRequest] = Body(default=None),
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
):
    body = body or ReactivateRequest()
    result = await billing_service.reactivate_user_subscription(current_user["user_id"], body.plan)
    return success_response(result)


@billing_router.post("/checkout-session")
async def post_billing_checkout_session(
    body: CheckoutSessionRequest,
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
):
    """
    Create a checkout session with the configured provider.

    Returns:
        201 with provider, checkout_url and session_id
    """
    result = await billing_service.create_checkout_session(
        current_user["user_id"],
        body.plan,
        success_url=_url(body.success_url),
        cancel_url=_url(body.cancel_url),
    )
    return success_response(result, status=201)


@billing_router.post("/portal-session")
async def post_billing_portal_session(
    body: Optional[PortalSessionRequest] = Body(default=None),
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
):
    body = body or PortalSessionRequest()
    result = await billing_service.create_portal_session(
        current_user["user_id"],
        return_url=_url(body.return_url),
    )
    return success_response(result, status=201)
