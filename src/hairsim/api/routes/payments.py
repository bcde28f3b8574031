"""Credit purchase API endpoints.

This module implements REST endpoints for buying generation credits:
- GET /api/payment/packages - Credit package catalogue
- POST /api/payment/create-checkout-session - Open a Stripe checkout for a package
- POST /api/payment/verify-payment - Client confirmation after the checkout redirect
- GET /api/payment/history - Caller's recorded checkout sessions
- POST /api/payment/webhook - Stripe event receiver (signature verified)

verify-payment and the webhook both funnel into PaymentReconciler, which
grants the credits of a session exactly once whichever arrives first.
"""

import json
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from hairsim.api.dependencies import (
    get_checkout_service,
    get_current_user_id,
    validate_stripe_webhook_signature,
)
from hairsim.services.exceptions import PaymentError
from hairsim.services.payments.checkout import CheckoutService
from hairsim.services.payments.packages import CREDIT_PACKAGES

logger = structlog.get_logger()
router = APIRouter(prefix="/api/payment", tags=["payment"])


# Request/Response Models


class CreateCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    package_id: str = Field(
        ...,
        alias="packageId",
        description="Credit package identifier (starter, popular, pro, mega)",
        min_length=1,
        max_length=50,
    )


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(
        ...,
        alias="sessionId",
        description="Stripe checkout session id from the success redirect",
        min_length=1,
        max_length=255,
    )


class PaymentHistoryItem(BaseModel):
    """A recorded checkout session as shown to its owner."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    package_id: str = Field(..., alias="packageId")
    credits: int
    amount: float
    currency: str
    status: str = Field(..., description="'completed' once credits were granted, else 'pending'")
    created_at: datetime = Field(..., alias="createdAt")
    processed_at: datetime | None = Field(default=None, alias="processedAt")


@router.get("/packages")
async def list_packages():
    return {"success": True, "data": [p.to_dict() for p in CREDIT_PACKAGES.values()]}


@router.post("/create-checkout-session")
async def create_checkout_session(
    body: CreateCheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    checkout_service: CheckoutService = Depends(get_checkout_service),
):
    """Open a Stripe checkout and record the pending session.

    HTTP Status Codes:
        200: {"success": true, "sessionId": ..., "url": ...}
        400: InvalidPackage
        502: PaymentProcessorError
    """
    checkout = await checkout_service.create_checkout(user_id, body.package_id)
    return {"success": True, "sessionId": checkout.id, "url": checkout.url}


@router.post("/verify-payment")
async def verify_payment(
    body: VerifyPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    checkout_service: CheckoutService = Depends(get_checkout_service),
):
    """Confirm a paid checkout and grant its credits if nobody did yet.

    HTTP Status Codes:
        200: Credits granted, or alreadyProcessed: true with the current balance
        400: PaymentNotCompleted
        403: Forbidden (session belongs to another user)
        404: PaymentSessionNotFound
    """
    result = await checkout_service.verify_payment(user_id, body.session_id)
    response = result.to_dict()
    if result.granted:
        response["message"] = f"Successfully added {result.credits_added} credits!"
    else:
        response["message"] = "Credits already added"
    return response


@router.get("/history")
async def get_payment_history(
    user_id: str = Depends(get_current_user_id),
    limit: int = Query(default=50, ge=1, le=100),
    checkout_service: CheckoutService = Depends(get_checkout_service),
):
    sessions = await checkout_service.history(user_id, limit=limit)
    items = [
        PaymentHistoryItem(
            session_id=s.session_id,
            package_id=s.package_id,
            credits=s.credits_granted,
            amount=s.amount_cents / 100,
            currency=s.currency,
            status="completed" if s.is_processed else "pending",
            created_at=s.created_at,
            processed_at=s.processed_at,
        ).model_dump(mode="json", by_alias=True)
        for s in sessions
    ]
    return {"success": True, "data": items}


@router.post("/webhook")
async def receive_stripe_webhook(
    raw_body: bytes = Depends(validate_stripe_webhook_signature),
    checkout_service: CheckoutService = Depends(get_checkout_service),
):
    """Receive Stripe events.

    HTTP Status Codes:
        200: {"received": true} for handled and ignored event types
        400: Malformed payload or a payment error for the referenced session
        401: Missing or invalid Stripe-Signature (raised by the dependency)
    """
    try:
        event = json.loads(raw_body)
    except json.JSONDecodeError as e:
        logger.error("payment.webhook_invalid_json", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid JSON payload: {str(e)}",
        )

    if not isinstance(event, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid event")

    logger.info("payment.webhook_received", event_id=event.get("id"), event_type=event.get("type"))

    try:
        result = await checkout_service.handle_webhook_event(event)
    except PaymentError as e:
        logger.error("payment.webhook_rejected", event_id=event.get("id"), error=e.kind)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Webhook Error: {e.message}"
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.error("payment.webhook_malformed", event_id=event.get("id"), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Webhook Error: {str(e)}"
        )

    response: dict = {"received": True}
    if result is not None:
        response["granted"] = result.granted
        if result.already_processed:
            response["alreadyProcessed"] = True
    return response
